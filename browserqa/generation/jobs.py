"""
Background AI test-generation jobs.

A job explores the project's site with a browser provider, asks the text
collaborator to turn the findings into tests, deduplicates them against
existing coverage, and stores the survivors as drafts. Job state is
persisted after each step so status polls can follow along.
"""

import asyncio
from datetime import timedelta
from typing import Any, List, Optional

from ..browser.base import BrowserProvider
from ..browser.models import (
    BrowserExecutionInput,
    ExecutionCredentials,
    ExecutionStatus,
    ProviderApiKeys,
    ProviderCallbacks,
    QASettings,
    normalize_settings,
)
from ..browser.registry import ProviderRegistry
from ..core.config import Config
from ..core.exceptions import BrowserQAError, ModelError, NotFoundError
from ..core.logging_config import get_logger, log_performance
from ..execution.account_lock import AccountLock, get_account_lock
from ..execution.models import ANY_ACCOUNT, utc_now
from ..state.models import QAState, UserAccount
from ..state.store import StateStore
from .dedup import dedupe_candidates
from .drafts import has_unseen
from .models import (
    AiGenerationJob,
    DraftNotification,
    DraftStatus,
    GeneratedTest,
    GeneratedTestDraft,
    JobStatus,
    QueueGenerationRequest,
)
from .text_client import MAX_GENERATED_TESTS, GenerationContext, TestSuggester

MAX_JOBS_PER_PROJECT = 30
BURST_SIZE = 2

CHECKING_MESSAGE = (
    "AI is now checking your app to determine best test cases. "
    "You can check progress on the Execution tab."
)
SYNTHESIZING_MESSAGE = "Exploration complete. Synthesizing draft tests."
COMPLETED_MESSAGE = "Exploration complete. Draft test cases are ready for review."

NO_ACCOUNT_ERROR = "No available user account could be allocated."
ACCOUNT_BUSY_ERROR = "Assigned account is busy and could not be allocated in time."
NO_VERDICT_ERROR = "Browser exploration failed without a verdict."


def build_exploration_task(
    prompt: str,
    website_url: str,
    group_name: Optional[str] = None,
    credentials: Optional[ExecutionCredentials] = None,
) -> str:
    """Compose the exploration goal handed to the browser agent."""
    task = "You are exploring a web application to design production QA test coverage.\n"
    task += f"Primary user request: {prompt}\n"
    task += f"Target URL: {website_url}\n"
    if group_name:
        task += f"Focus area/group: {group_name}\n"

    if credentials is not None and credentials.profile_id:
        task += "Use the existing authenticated profile/session for this account.\n"
        task += "Only perform a manual login if the app clearly requires it.\n"
        task += f"Fallback credentials:\n- Email: {credentials.email}\n- Password: {credentials.password}\n"
    elif credentials is not None:
        task += f"Log in before exploration using:\n- Email: {credentials.email}\n- Password: {credentials.password}\n"

    if credentials is not None and credentials.metadata:
        info = ", ".join(f"{k}={v}" for k, v in credentials.metadata.items())
        task += f"Account metadata: {info}\n"

    task += "\nExplore key pages and flows related to the request. Identify:\n"
    task += (
        "1) Main happy-path workflows\n2) Important validation/error states\n"
        "3) Edge cases and permissions\n4) Data integrity checks users rely on\n"
    )
    task += "\nReturn JSON only with this exact shape:\n"
    task += "{\n"
    task += '  "success": true,\n'
    task += '  "reason": "short summary of what you explored",\n'
    task += '  "extractedData": {\n'
    task += '    "visitedAreas": ["..."],\n'
    task += '    "criticalFlows": ["..."],\n'
    task += '    "risks": ["..."],\n'
    task += '    "notes": "important findings"\n'
    task += "  }\n"
    task += "}\n"
    return task


def _find_job(state: QAState, project_id: str, job_id: str) -> Optional[AiGenerationJob]:
    for job in state.ai_generation_jobs.get(project_id, []):
        if job.id == job_id:
            return job
    return None


class GenerationJobRunner:
    """Queues, claims, and runs generation jobs against a state store."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        providers: Optional[ProviderRegistry] = None,
        account_lock: Optional[AccountLock] = None,
        suggester: Optional[TestSuggester] = None,
    ):
        self.config = config
        self.store = store
        self.providers = providers or ProviderRegistry(config)
        self.account_lock = account_lock or get_account_lock()
        self.suggester = suggester
        self.logger = get_logger(__name__)

    async def queue_generation(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: QueueGenerationRequest,
        default_settings: Optional[QASettings] = None,
    ) -> AiGenerationJob:
        """Create a queued job. Only the newest jobs of a project are kept."""
        async with self.store.transaction(team_id, actor_id) as state:
            state.require_project(request.project_id)

            settings = normalize_settings(request.settings or default_settings or state.settings)
            snapshot = settings.model_copy(update={"provider_api_keys": ProviderApiKeys()})
            job = AiGenerationJob(
                project_id=request.project_id,
                prompt=request.prompt,
                group_name=request.group_name,
                user_account_id=request.user_account_id,
                browser_provider=settings.browser_provider,
                settings_snapshot=snapshot,
                ai_model=request.ai_model or settings.ai_model,
            )

            jobs = state.ai_generation_jobs.get(request.project_id, [])
            state.ai_generation_jobs[request.project_id] = [job, *jobs][:MAX_JOBS_PER_PROJECT]
            state.ai_draft_notifications.setdefault(request.project_id, DraftNotification())
            state.touch()

        self.logger.info(
            "Queued generation job",
            extra={"metadata": {"project_id": job.project_id, "job_id": job.id}},
        )
        return job

    async def claim_next_job(
        self,
        team_id: str,
        actor_id: Optional[str],
        target_job_id: Optional[str] = None,
    ) -> Optional[AiGenerationJob]:
        """
        Mark the oldest runnable job as running and return a copy of it.

        Runnable means queued, or running with a ``started_at`` older than the
        stale threshold (its worker is presumed dead).
        """
        async with self.store.transaction(team_id, actor_id) as state:
            now = utc_now()
            stale_after = timedelta(seconds=self.config.stale_job_seconds)
            chosen: Optional[AiGenerationJob] = None

            for jobs in state.ai_generation_jobs.values():
                for job in jobs:
                    if target_job_id and job.id != target_job_id:
                        continue
                    is_queued = job.status == JobStatus.QUEUED
                    is_stale = (
                        job.status == JobStatus.RUNNING
                        and job.started_at is not None
                        and now - job.started_at > stale_after
                    )
                    if not (is_queued or is_stale):
                        continue
                    if chosen is None or job.created_at < chosen.created_at:
                        chosen = job

            if chosen is None:
                return None

            chosen.status = JobStatus.RUNNING
            chosen.started_at = chosen.started_at or now
            chosen.error = None
            chosen.progress_message = CHECKING_MESSAGE
            state.touch()
            return chosen.model_copy(deep=True)

    async def update_job(
        self,
        team_id: str,
        actor_id: Optional[str],
        project_id: str,
        job_id: str,
        **updates: Any,
    ) -> None:
        async with self.store.transaction(team_id, actor_id) as state:
            job = _find_job(state, project_id, job_id)
            if job is None:
                return
            for key, value in updates.items():
                setattr(job, key, value)
            state.touch()

    async def fail_job(
        self,
        team_id: str,
        actor_id: Optional[str],
        project_id: str,
        job_id: str,
        message: str,
    ) -> None:
        self.logger.warning(
            f"Generation job failed: {message}",
            extra={"job_id": job_id, "metadata": {"project_id": project_id}},
        )
        await self.update_job(
            team_id,
            actor_id,
            project_id,
            job_id,
            status=JobStatus.FAILED,
            completed_at=utc_now(),
            error=message,
            progress_message=None,
            streaming_url=None,
        )

    async def complete_job_with_drafts(
        self,
        team_id: str,
        actor_id: Optional[str],
        project_id: str,
        job_id: str,
        drafts: List[GeneratedTestDraft],
    ) -> None:
        async with self.store.transaction(team_id, actor_id) as state:
            state.ai_drafts.setdefault(project_id, []).extend(drafts)

            current = state.ai_draft_notifications.get(project_id) or DraftNotification()
            state.ai_draft_notifications[project_id] = DraftNotification(
                has_unseen_drafts=current.has_unseen_drafts
                or has_unseen(drafts, None),
                last_seen_at=current.last_seen_at,
            )

            job = _find_job(state, project_id, job_id)
            if job is not None:
                job.status = JobStatus.COMPLETED
                job.completed_at = utc_now()
                job.streaming_url = None
                job.progress_message = COMPLETED_MESSAGE
                job.draft_count = sum(1 for d in drafts if d.status == DraftStatus.DRAFT)
                job.duplicate_count = sum(
                    1 for d in drafts if d.status == DraftStatus.DUPLICATE_SKIPPED
                )
            state.touch()

    async def _wait_for_specific_account(self, account_id: str) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.account_wait_timeout
        while True:
            if self.account_lock.try_acquire(account_id):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.config.account_poll_interval)

    async def _wait_for_any_account(self, account_ids: List[str], seed: int) -> Optional[str]:
        unique_ids = list(dict.fromkeys(account_ids))
        if not unique_ids:
            return None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.account_wait_timeout
        cursor = abs(seed) % len(unique_ids)

        while True:
            for offset in range(len(unique_ids)):
                account_id = unique_ids[(cursor + offset) % len(unique_ids)]
                if self.account_lock.try_acquire(account_id):
                    return account_id
            if loop.time() >= deadline:
                return None
            cursor = (cursor + 1) % len(unique_ids)
            await asyncio.sleep(self.config.account_poll_interval)

    async def _acquire_account(
        self, job: AiGenerationJob, accounts: List[UserAccount], provider_id: str
    ) -> Optional[UserAccount]:
        """Claim the job's account. Returns None when the job runs without one."""
        if not job.user_account_id:
            return None

        if job.user_account_id == ANY_ACCOUNT:
            preferred = [a.id for a in accounts if a.profile_id_for(provider_id)]
            ordered = preferred + [a.id for a in accounts]
            seed = int(job.created_at.timestamp() * 1000)
            account_id = await self._wait_for_any_account(ordered, seed)
            if account_id is None:
                raise NotFoundError(NO_ACCOUNT_ERROR, resource_type="user_account")
            return next(a for a in accounts if a.id == account_id)

        account = next((a for a in accounts if a.id == job.user_account_id), None)
        if account is None:
            raise NotFoundError(
                f"Assigned account '{job.user_account_id}' was not found.",
                resource_type="user_account",
                resource_id=job.user_account_id,
            )
        if not await self._wait_for_specific_account(account.id):
            raise BrowserQAError(ACCOUNT_BUSY_ERROR, "ACCOUNT_BUSY", {"account_id": account.id})
        return account

    async def run_claimed_job(
        self,
        team_id: str,
        actor_id: Optional[str],
        job: AiGenerationJob,
        api_keys: Optional[ProviderApiKeys] = None,
    ) -> None:
        """
        Run one claimed job to completion.

        Any failure marks the job failed with the error message. The job's
        account is always released.
        """
        started = asyncio.get_running_loop().time()
        state = await self.store.load_state(team_id)
        project = state.get_project(job.project_id)
        if project is None:
            await self.fail_job(team_id, actor_id, job.project_id, job.id, "Project not found.")
            return

        update = {"browser_provider": job.browser_provider}
        if api_keys is not None:
            update["provider_api_keys"] = api_keys
        settings = normalize_settings(job.settings_snapshot.model_copy(update=update))
        provider = self.providers.get(settings.browser_provider)
        accounts = state.user_accounts.get(job.project_id, [])

        locked_account_id: Optional[str] = None
        try:
            account = await self._acquire_account(job, accounts, provider.provider_id)
            locked_account_id = account.id if account else None
            credentials = account.credentials_for(provider.provider_id) if account else None

            await self.update_job(
                team_id, actor_id, job.project_id, job.id, progress_message=CHECKING_MESSAGE
            )
            execution = await self._explore(
                team_id, actor_id, job, provider, project.website_url, settings, credentials
            )

            await self.update_job(
                team_id,
                actor_id,
                job.project_id,
                job.id,
                progress_message=SYNTHESIZING_MESSAGE,
                streaming_url=None,
                recording_url=execution.recording_url or job.recording_url,
            )

            if self.suggester is None:
                raise ModelError("OPENROUTER_API_KEY not configured.", task_type="suggest_tests")

            suggestions = await self.suggester.suggest_tests(
                GenerationContext(
                    project_name=project.name,
                    website_url=project.website_url,
                    prompt=job.prompt,
                    exploration_summary=execution.verdict.reason,
                    exploration_data=execution.verdict.extracted_data or {},
                    group_name=job.group_name,
                    ai_model=job.ai_model,
                )
            )
            drafts = await self._build_drafts(team_id, job, suggestions[:MAX_GENERATED_TESTS])
            await self.complete_job_with_drafts(
                team_id, actor_id, job.project_id, job.id, drafts
            )

            log_performance(
                self.logger,
                "generation_job",
                asyncio.get_running_loop().time() - started,
                job_id=job.id,
                drafts=len(drafts),
            )
        except Exception as e:
            message = str(e) or "Failed to generate test drafts."
            await self.fail_job(team_id, actor_id, job.project_id, job.id, message)
        finally:
            self.account_lock.release(locked_account_id)

    async def _explore(
        self,
        team_id: str,
        actor_id: Optional[str],
        job: AiGenerationJob,
        provider: BrowserProvider,
        website_url: str,
        settings: QASettings,
        credentials: Optional[ExecutionCredentials],
    ):
        async def on_live_url(live_url: str, recording_url: Optional[str]) -> None:
            await self.update_job(
                team_id,
                actor_id,
                job.project_id,
                job.id,
                streaming_url=live_url,
                recording_url=recording_url,
            )

        async def on_task_created(task_id: str, session_id: str) -> None:
            await self.update_job(
                team_id, actor_id, job.project_id, job.id, progress_message=CHECKING_MESSAGE
            )

        execution = await provider.execute_test(
            BrowserExecutionInput(
                url=website_url,
                task=build_exploration_task(job.prompt, website_url, job.group_name, credentials),
                settings=settings,
                credentials=credentials,
            ),
            ProviderCallbacks(on_live_url=on_live_url, on_task_created=on_task_created),
        )

        if execution.status == ExecutionStatus.ERROR or execution.verdict is None:
            raise BrowserQAError(execution.error or NO_VERDICT_ERROR, "EXPLORATION_FAILED")
        return execution

    async def _build_drafts(
        self, team_id: str, job: AiGenerationJob, suggestions: List[GeneratedTest]
    ) -> List[GeneratedTestDraft]:
        latest = await self.store.load_state(team_id)
        outcomes = dedupe_candidates(
            suggestions,
            latest.test_cases.get(job.project_id, []),
            latest.ai_drafts.get(job.project_id, []),
        )

        now = utc_now()
        return [
            GeneratedTestDraft(
                project_id=job.project_id,
                job_id=job.id,
                title=outcome.candidate.title,
                description=outcome.candidate.description,
                expected_outcome=outcome.candidate.expected_outcome,
                user_account_id=job.user_account_id,
                group_name=job.group_name,
                status=outcome.status,
                duplicate_of_test_case_id=outcome.duplicate_of_test_case_id,
                duplicate_reason=outcome.duplicate_reason,
                created_at=now + timedelta(milliseconds=index),
            )
            for index, outcome in enumerate(outcomes)
        ]

    async def process_queued_jobs(
        self,
        team_id: str,
        actor_id: Optional[str],
        target_job_id: Optional[str] = None,
        api_keys: Optional[ProviderApiKeys] = None,
    ) -> int:
        """Run one targeted job, or a short burst of queued jobs. Returns how many ran."""
        max_jobs = 1 if target_job_id else BURST_SIZE
        processed = 0
        for _ in range(max_jobs):
            job = await self.claim_next_job(team_id, actor_id, target_job_id)
            if job is None:
                break
            await self.run_claimed_job(team_id, actor_id, job, api_keys)
            processed += 1
        return processed
