"""
Command-line interface for browserqa.

Runs tests, logs accounts into provider profiles, manages AI drafts and
generation jobs, and inspects configuration. Team state is read from and
written to the JSON state directory.
"""

import argparse
import asyncio
import getpass
import json
import sys
from pathlib import Path
from typing import Any, Callable, Coroutine, List, Optional

from . import __version__
from .browser.models import QASettings, normalize_settings
from .core.config import Config
from .core.exceptions import BrowserQAError
from .core.logging_config import setup_logging
from .execution.models import EventType, ExecuteTestsRequest, ExecutionEvent, generate_id
from .service import QAService
from .state.store import JsonFileStateStore

DEFAULT_TEAM = "default"

_EVENT_ICONS = {
    EventType.TEST_START: "▶️ ",
    EventType.TASK_CREATED: "🧩",
    EventType.LIVE_URL: "📺",
    EventType.PROGRESS: "⏳",
    EventType.TEST_COMPLETE: "✅",
    EventType.TEST_ERROR: "❌",
    EventType.SUMMARY: "📊",
}


def _load_config(args: argparse.Namespace) -> Config:
    config = Config.from_file(args.config) if args.config else Config.from_env()
    if getattr(args, "state_dir", None):
        config.state_dir = Path(args.state_dir)
    if args.verbose:
        config.log_level = "DEBUG"
    return config


def _build_service(config: Config) -> QAService:
    return QAService(config, store=JsonFileStateStore.from_config(config))


def _actor(args: argparse.Namespace) -> str:
    return args.actor or getpass.getuser()


def _settings(provider: Optional[str]) -> Optional[QASettings]:
    if not provider:
        return None
    return normalize_settings(QASettings(browser_provider=provider))


def _run_async(
    args: argparse.Namespace,
    coro_factory: Callable[[QAService], Coroutine[Any, Any, int]],
) -> int:
    """Build the service, run ``coro_factory`` and map errors to exit codes."""
    try:
        config = _load_config(args)
        setup_logging(config, generate_id())
        service = _build_service(config)
        return asyncio.run(coro_factory(service))
    except BrowserQAError as e:
        print(f"❌ {e.message}")
        for violation in getattr(e, "violations", []) or []:
            print(f"   • {violation}")
        if args.verbose:
            print(json.dumps(e.to_dict(), indent=2, default=str))
        return 1
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted")
        return 130


def _print_event(event: ExecutionEvent, as_json: bool) -> None:
    if as_json:
        print(json.dumps(event.to_dict(), default=str))
        return

    payload = event.to_dict()
    data = payload["data"]
    icon = _EVENT_ICONS.get(event.type, "•")
    test_id = event.test_case_id or ""

    if event.type == EventType.TEST_START:
        print(f"{icon} {data.get('title', test_id)}")
    elif event.type == EventType.LIVE_URL:
        print(f"{icon} {test_id}: live view {data.get('url')}")
    elif event.type == EventType.PROGRESS:
        print(f"{icon} {test_id}: step {data.get('step')}/{data.get('total')}")
    elif event.type in (EventType.TEST_COMPLETE, EventType.TEST_ERROR):
        result = data.get("result") or {}
        status = str(result.get("status", "")).upper()
        if status != "PASSED":
            icon = "⏭️ " if status == "SKIPPED" else "❌"
        detail = result.get("reason") or result.get("error") or ""
        print(f"{icon} {test_id}: {status} {detail}".rstrip())
    elif event.type == EventType.SUMMARY:
        print(
            f"{icon} Run {data.get('run_id')}: {data.get('passed')} passed, "
            f"{data.get('failed')} failed, {data.get('skipped')} skipped "
            f"in {data.get('duration', 0):.1f}s"
        )


def cmd_run(args: argparse.Namespace) -> int:
    """Run test cases of a project."""

    async def run(service: QAService) -> int:
        state = await service.store.load_state(args.team)
        project = state.require_project(args.project)
        test_cases = list(state.test_cases.get(project.id, []))

        if args.group:
            wanted = args.group.strip().lower()
            group = next(
                (g for g in state.test_groups.get(project.id, []) if g.name.strip().lower() == wanted),
                None,
            )
            if group is None:
                print(f"❌ Group not found: {args.group}")
                return 1
            ids = set(group.test_case_ids)
            test_cases = [tc for tc in test_cases if tc.id in ids]
        if args.test:
            ids = set(args.test)
            test_cases = [tc for tc in test_cases if tc.id in ids]

        if not test_cases:
            print("❌ No test cases selected")
            return 1

        print(f"🚀 Running {len(test_cases)} test(s) against {project.website_url}")
        request = ExecuteTestsRequest(
            test_cases=test_cases,
            website_url=project.website_url,
            parallel_limit=args.parallel or service.config.default_parallel_limit,
            settings=_settings(args.provider),
        )
        stream = await service.execute_tests(args.team, _actor(args), request)
        async for event in stream:
            _print_event(event, args.json)

        summary = stream.summary
        return 0 if summary is not None and summary.failed == 0 else 1

    return _run_async(args, run)


def cmd_login(args: argparse.Namespace) -> int:
    """Log an account into a persisted provider profile."""

    async def run(service: QAService) -> int:
        state = await service.store.load_state(args.team)
        project = state.require_project(args.project)
        print(f"🔐 Logging in account {args.account}...")
        profile = await service.login_account(
            args.team,
            _actor(args),
            {
                "project_id": project.id,
                "account_id": args.account,
                "website_url": args.website_url or project.website_url,
                "settings": _settings(args.provider),
            },
        )
        print(f"✅ Profile ready: {profile.profile_id}")
        return 0

    return _run_async(args, run)


def cmd_delete_profile(args: argparse.Namespace) -> int:
    """Delete a provider profile."""

    async def run(service: QAService) -> int:
        await service.delete_profile(
            args.team,
            _actor(args),
            {
                "profile_id": args.profile_id,
                "account_id": args.account,
                "settings": _settings(args.provider),
            },
        )
        print(f"🗑️  Deleted profile {args.profile_id}")
        return 0

    return _run_async(args, run)


def cmd_drafts(args: argparse.Namespace) -> int:
    """List, publish, discard, or acknowledge AI drafts."""

    async def run(service: QAService) -> int:
        actor = _actor(args)
        if args.drafts_command == "list":
            status = await service.generation_status(args.team, actor, args.project)
            if args.json:
                print(status.model_dump_json(indent=2))
                return 0
            flag = "🆕 " if status.notification.has_unseen_drafts else ""
            print(f"{flag}{len(status.drafts)} draft(s) awaiting review")
            for draft in status.drafts:
                note = f" ({draft.duplicate_reason})" if draft.duplicate_reason else ""
                print(f"  • {draft.id}  {draft.title}{note}")
            return 0

        if args.drafts_command == "publish":
            response = await service.publish_drafts(
                args.team,
                actor,
                {"project_id": args.project, "draft_ids": args.ids, "group_name": args.group},
            )
            print(
                f"✅ Published {response.published_count} test(s), "
                f"skipped {response.skipped_duplicates} duplicate(s)"
            )
            if response.group_id:
                print(f"📁 Group: {response.group_id}")
            return 0

        if args.drafts_command == "discard":
            response = await service.discard_drafts(
                args.team, actor, {"project_id": args.project, "draft_ids": args.ids}
            )
            print(f"🗑️  {len(response.drafts)} draft(s) remain")
            return 0

        await service.mark_drafts_seen(args.team, actor, args.project)
        print("👀 Drafts marked as seen")
        return 0

    return _run_async(args, run)


def cmd_generate(args: argparse.Namespace) -> int:
    """Queue an AI generation job and run it."""

    async def run(service: QAService) -> int:
        actor = _actor(args)
        job = await service.queue_generation(
            args.team,
            actor,
            {
                "project_id": args.project,
                "prompt": args.prompt,
                "group_name": args.group,
                "user_account_id": args.account,
                "settings": _settings(args.provider),
                "ai_model": args.model,
            },
        )
        print(f"🤖 Queued job {job.id}")
        if args.no_wait:
            return 0

        await service.process_queued_jobs(args.team, actor, job.id)
        status = await service.generation_status(args.team, actor, args.project)
        finished = next((j for j in status.jobs if j.id == job.id), None)
        if finished is None or finished.status != "completed":
            error = finished.error if finished else "job disappeared"
            print(f"❌ Generation failed: {error}")
            return 1

        print(
            f"✅ {finished.draft_count} draft(s) created, "
            f"{finished.duplicate_count} duplicate(s) skipped"
        )
        return 0

    return _run_async(args, run)


def cmd_config(args: argparse.Namespace) -> int:
    """Show or validate configuration."""
    try:
        config = _load_config(args)
        if args.config_command == "validate":
            config.validate()
            print("✅ Configuration is valid")
            return 0

        print(json.dumps(config.to_dict(), indent=2))
        return 0
    except BrowserQAError as e:
        print(f"❌ {e.message}")
        for violation in getattr(e, "violations", []) or []:
            print(f"   • {violation}")
        return 1


def create_main_parser() -> argparse.ArgumentParser:
    """Create main CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="browserqa",
        description="browserqa - natural-language browser tests on remote automation agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  browserqa run --project my-app --parallel 3
  browserqa generate --project my-app --prompt "Cover the checkout flow"
  browserqa drafts list --project my-app
  browserqa drafts publish --project my-app --ids d1 d2 --group Checkout
  browserqa config validate
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument("--state-dir", help="Directory holding team state files")
    parser.add_argument("--team", default=DEFAULT_TEAM, help="Team id (default: %(default)s)")
    parser.add_argument("--actor", help="Acting user id (default: current OS user)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run test cases of a project")
    run_parser.add_argument("--project", required=True, help="Project id")
    run_parser.add_argument("--test", nargs="+", help="Only run these test case ids")
    run_parser.add_argument("--group", help="Only run tests of this group")
    run_parser.add_argument("--parallel", type=int, help="Concurrent tests (1-10)")
    run_parser.add_argument("--provider", help="Browser provider id")
    run_parser.add_argument("--json", action="store_true", help="Print events as JSON lines")
    run_parser.set_defaults(func=cmd_run)

    login_parser = subparsers.add_parser("login", help="Log an account into a provider profile")
    login_parser.add_argument("--project", required=True, help="Project id")
    login_parser.add_argument("--account", required=True, help="User account id")
    login_parser.add_argument("--website-url", help="Login page (default: project URL)")
    login_parser.add_argument("--provider", help="Browser provider id")
    login_parser.set_defaults(func=cmd_login)

    delete_parser = subparsers.add_parser("delete-profile", help="Delete a provider profile")
    delete_parser.add_argument("--profile-id", required=True, help="Provider profile id")
    delete_parser.add_argument("--account", help="Account to clear the profile from")
    delete_parser.add_argument("--provider", help="Browser provider id")
    delete_parser.set_defaults(func=cmd_delete_profile)

    drafts_parser = subparsers.add_parser("drafts", help="Review AI-generated drafts")
    drafts_sub = drafts_parser.add_subparsers(dest="drafts_command", required=True)
    list_parser = drafts_sub.add_parser("list", help="List active drafts")
    list_parser.add_argument("--project", required=True, help="Project id")
    list_parser.add_argument("--json", action="store_true", help="Print as JSON")
    publish_parser = drafts_sub.add_parser("publish", help="Publish drafts as test cases")
    publish_parser.add_argument("--project", required=True, help="Project id")
    publish_parser.add_argument("--ids", nargs="+", required=True, help="Draft ids")
    publish_parser.add_argument("--group", help="Group to add the new tests to")
    discard_parser = drafts_sub.add_parser("discard", help="Discard drafts")
    discard_parser.add_argument("--project", required=True, help="Project id")
    discard_parser.add_argument("--ids", nargs="+", required=True, help="Draft ids")
    seen_parser = drafts_sub.add_parser("seen", help="Mark drafts as seen")
    seen_parser.add_argument("--project", required=True, help="Project id")
    drafts_parser.set_defaults(func=cmd_drafts)

    generate_parser = subparsers.add_parser("generate", help="Generate draft tests with AI")
    generate_parser.add_argument("--project", required=True, help="Project id")
    generate_parser.add_argument("--prompt", required=True, help="What to cover")
    generate_parser.add_argument("--group", help="Group name for the drafts")
    generate_parser.add_argument("--account", help="Account id, '__any__', or 'none'")
    generate_parser.add_argument("--provider", help="Browser provider id")
    generate_parser.add_argument("--model", help="Text generation model id")
    generate_parser.add_argument("--no-wait", action="store_true", help="Only queue the job")
    generate_parser.set_defaults(func=cmd_generate)

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Show effective configuration")
    config_sub.add_parser("validate", help="Validate configuration")
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_main_parser()

    if args is None:
        args = sys.argv[1:]

    parsed_args = parser.parse_args(args)

    if not hasattr(parsed_args, "func"):
        parser.print_help()
        return 1

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
