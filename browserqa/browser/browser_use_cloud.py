"""
Browser Use Cloud provider (v2 REST API).
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..core.exceptions import ProviderError
from .base import (
    BrowserProvider,
    DEFAULT_MAX_STEPS,
    LOGIN_MAX_STEPS,
    build_execution_task,
    build_login_task,
    error_result,
)
from .http import ProviderHTTPClient
from .models import (
    AuthSessionInput,
    AuthSessionResult,
    BrowserExecutionInput,
    BrowserExecutionResult,
    BrowserProviderId,
    ExecutionStatus,
    ProviderCallbacks,
    QASettings,
)
from .verdict import VERDICT_JSON_SCHEMA, parse_verdict

logger = logging.getLogger(__name__)

BROWSER_USE_API_BASE = "https://api.browser-use.com/api/v2"
DEFAULT_BROWSER_USE_MODEL = "browser-use-llm"
TERMINAL_TASK_STATUSES = {"finished", "stopped"}

_MODEL_ALIASES = {
    "browser_use_1.0": "browser-use-llm",
    "browser-use-1.0": "browser-use-llm",
    "bu-1-0": "browser-use-llm",
    "browser_use_llm": "browser-use-llm",
    "browser_use_2.0": "browser-use-2.0",
    "browser-use-2.0": "browser-use-2.0",
    "bu-2-0": "browser-use-2.0",
}

_OUTPUT_FILE_SCORES = [
    (re.compile(r"\.(mp4|webm|mov)$", re.IGNORECASE), 3),
    (re.compile(r"\.gif$", re.IGNORECASE), 2),
    (re.compile(r"\.(png|jpg|jpeg|webp)$", re.IGNORECASE), 1),
]


def normalize_browser_use_model(model_id: Optional[str]) -> str:
    raw = (model_id or "").strip()
    if not raw:
        return DEFAULT_BROWSER_USE_MODEL
    return _MODEL_ALIASES.get(raw.lower(), raw)


def rank_output_files(output_files: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Order output files by usefulness as a recording: video, gif, image, other."""

    def score(entry: Dict[str, Any]) -> int:
        name = str(entry.get("fileName") or "")
        for pattern, value in _OUTPUT_FILE_SCORES:
            if pattern.search(name):
                return value
        return 0

    return sorted(output_files or [], key=score, reverse=True)


def is_profile_not_found(error: Exception) -> bool:
    return "Profile not found" in str(error)


class BrowserUseCloudProvider(BrowserProvider):
    """Runs tasks on Browser Use Cloud sessions, optionally bound to a profile."""

    provider_id = BrowserProviderId.BROWSER_USE_CLOUD.value
    display_name = "BrowserUse Cloud"
    api_key_env = "BROWSER_USE_API_KEY"

    def _default_client(self, api_key: str) -> ProviderHTTPClient:
        return ProviderHTTPClient(
            self.provider_id,
            BROWSER_USE_API_BASE,
            headers={"X-Browser-Use-API-Key": api_key},
        )

    def _config_api_key(self) -> Optional[str]:
        return self.config.browser_use_api_key

    def _settings_api_key(self, settings: QASettings) -> Optional[str]:
        return settings.provider_api_keys.browser_use_cloud

    def resolve_model(self, settings: QASettings) -> str:
        return normalize_browser_use_model(
            (settings.browser_use_cloud_model or "").strip() or self.config.browser_use_cloud_model
        )

    async def create_session(
        self,
        client: ProviderHTTPClient,
        settings: QASettings,
        profile_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if profile_id:
            body["profileId"] = profile_id
        if settings.proxy_enabled and settings.proxy_country:
            body["proxyCountryCode"] = settings.proxy_country
        session = await client.request("POST", "/sessions", body) or {}
        if not session.get("id"):
            raise ProviderError("BrowserUse Cloud did not return a session id.", provider=self.provider_id)
        return session

    async def create_profile(self, client: ProviderHTTPClient, email: str) -> str:
        profile = await client.request("POST", "/profiles", {"name": f"qa-{email}"}) or {}
        if not profile.get("id"):
            raise ProviderError("BrowserUse Cloud did not return a profile id.", provider=self.provider_id)
        return profile["id"]

    async def run_task(
        self,
        client: ProviderHTTPClient,
        task: str,
        session_id: str,
        llm: str,
        max_steps: int,
        callbacks: Optional[ProviderCallbacks] = None,
    ) -> Dict[str, Any]:
        created = await client.request(
            "POST",
            "/tasks",
            {
                "task": task,
                "sessionId": session_id,
                "llm": llm,
                "maxSteps": max_steps,
                "structuredOutput": json.dumps(VERDICT_JSON_SCHEMA),
            },
        ) or {}
        task_id = created.get("id")
        if not task_id:
            raise ProviderError("BrowserUse Cloud did not return a task id.", provider=self.provider_id)

        if callbacks is not None:
            await callbacks.task_created(task_id, session_id)

        async def report_progress(view: Dict[str, Any]) -> None:
            steps = view.get("steps")
            if callbacks is not None and isinstance(steps, list) and steps:
                await callbacks.progress(len(steps), max_steps)

        view = await self.poll_until_finished(
            lambda: client.request("GET", f"/tasks/{task_id}"),
            lambda payload: payload.get("status") in TERMINAL_TASK_STATUSES,
            task_id,
            on_timeout=lambda: client.request(
                "PATCH", f"/tasks/{task_id}", {"action": "stop_task_and_session"}
            ),
            on_update=report_progress,
        )
        view.setdefault("id", task_id)
        return view

    async def share_url(self, client: ProviderHTTPClient, session_id: str) -> Optional[str]:
        """Create, or fetch the already-created, public share link of a session."""
        try:
            share = await client.request("POST", f"/sessions/{session_id}/public-share") or {}
            if share.get("shareUrl"):
                return share["shareUrl"]
        except ProviderError:
            pass

        try:
            share = await client.request("GET", f"/sessions/{session_id}/public-share") or {}
            return share.get("shareUrl")
        except ProviderError:
            return None

    async def output_file_url(self, client: ProviderHTTPClient, task: Dict[str, Any]) -> Optional[str]:
        for entry in rank_output_files(task.get("outputFiles")):
            try:
                output = await client.request(
                    "GET", f"/files/tasks/{task['id']}/output-files/{entry.get('id')}"
                ) or {}
            except ProviderError:
                continue
            if output.get("downloadUrl"):
                return output["downloadUrl"]
        return None

    async def execute_test(
        self,
        execution: BrowserExecutionInput,
        callbacks: Optional[ProviderCallbacks] = None,
    ) -> BrowserExecutionResult:
        callbacks = callbacks or ProviderCallbacks()
        settings = execution.settings
        api_key = self.resolve_api_key(settings)
        if not api_key:
            return error_result(self.missing_key_message())

        client = self._client_factory(api_key)
        session_id: Optional[str] = None
        requested_profile_id = execution.credentials.profile_id if execution.credentials else None

        try:
            try:
                session = await self.create_session(client, settings, requested_profile_id)
            except ProviderError as e:
                if not (requested_profile_id and is_profile_not_found(e)):
                    raise
                logger.info(
                    f"Profile {requested_profile_id} not found, continuing without it",
                    extra={"metadata": {"provider": self.provider_id}},
                )
                session = await self.create_session(client, settings)
            session_id = session["id"]
            live_url = session.get("liveUrl") or None

            if live_url:
                await callbacks.live_url(live_url, None)

            task = await self.run_task(
                client,
                build_execution_task(execution.url, execution.task),
                session_id,
                self.resolve_model(settings),
                execution.max_steps or self.config.default_max_steps or DEFAULT_MAX_STEPS,
                callbacks,
            )
            verdict = parse_verdict(task.get("output"))
            recording_url = session.get("publicShareUrl") or await self.share_url(client, session_id)
            if not recording_url:
                recording_url = await self.output_file_url(client, task)

            if verdict is None:
                return error_result(
                    "BrowserUse Cloud did not return a valid structured verdict payload.",
                    live_url=live_url,
                    recording_url=recording_url,
                    raw_provider_data=task,
                )

            return BrowserExecutionResult(
                status=ExecutionStatus.COMPLETED if verdict.success else ExecutionStatus.FAILED,
                verdict=verdict,
                live_url=live_url,
                recording_url=recording_url,
                raw_provider_data=task,
            )
        except Exception as e:
            logger.warning(
                f"BrowserUse Cloud execution failed: {e}",
                extra={"metadata": {"provider": self.provider_id, "session_id": session_id}},
            )
            return error_result(str(e))
        finally:
            if session_id:
                await self.best_effort(
                    lambda: client.request("PATCH", f"/sessions/{session_id}", {"action": "stop"}),
                    f"stop session {session_id}",
                )
            await client.close()

    async def login_with_profile(self, auth: AuthSessionInput) -> AuthSessionResult:
        settings = auth.settings
        api_key = self.resolve_api_key(settings)
        if not api_key:
            return AuthSessionResult(success=False, error=self.missing_key_message())

        client = self._client_factory(api_key)
        profile_id = auth.existing_profile_id
        created_profile_id: Optional[str] = None
        session_id: Optional[str] = None

        try:
            if not profile_id:
                profile_id = await self.create_profile(client, auth.email)
                created_profile_id = profile_id

            try:
                session = await self.create_session(client, settings, profile_id)
            except ProviderError as e:
                # Profile ids are provider-scoped; retry once with a fresh profile
                if not (profile_id and is_profile_not_found(e)):
                    raise
                profile_id = await self.create_profile(client, auth.email)
                created_profile_id = profile_id
                session = await self.create_session(client, settings, profile_id)
            session_id = session["id"]

            task = await self.run_task(
                client,
                build_login_task(auth.website_url, auth.email, auth.password),
                session_id,
                self.resolve_model(settings),
                LOGIN_MAX_STEPS,
            )
            verdict = parse_verdict(task.get("output"))

            if verdict is None or not verdict.success:
                if created_profile_id:
                    await self.best_effort(
                        lambda: client.request("DELETE", f"/profiles/{created_profile_id}"),
                        f"delete profile {created_profile_id}",
                    )
                return AuthSessionResult(
                    success=False,
                    error=(verdict.reason if verdict else None) or "Login did not succeed.",
                )

            return AuthSessionResult(success=True, profile_id=profile_id)
        except Exception as e:
            logger.warning(
                f"BrowserUse Cloud login failed: {e}",
                extra={"metadata": {"provider": self.provider_id}},
            )
            if created_profile_id:
                await self.best_effort(
                    lambda: client.request("DELETE", f"/profiles/{created_profile_id}"),
                    f"delete profile {created_profile_id}",
                )
            return AuthSessionResult(success=False, error=str(e))
        finally:
            if session_id:
                await self.best_effort(
                    lambda: client.request("DELETE", f"/sessions/{session_id}"),
                    f"delete session {session_id}",
                )
            await client.close()

    async def delete_profile_with_key(self, api_key: str, profile_id: str) -> None:
        client = self._client_factory(api_key)
        try:
            await client.request("DELETE", f"/profiles/{profile_id}")
        finally:
            await client.close()
