"""
External interface of browserqa.

:class:`QAService` is what a web layer or the CLI talks to. Each operation
checks the caller's rate budget, validates its payload, loads the team
state, delegates to the component that owns the behaviour, and persists
the result.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .browser.models import (
    AuthSessionInput,
    ProviderApiKeys,
    QASettings,
    normalize_settings,
)
from .browser.registry import ProviderRegistry
from .core.config import Config
from .core.exceptions import BrowserQAError, NotFoundError, ValidationError
from .core.logging_config import get_logger
from .core.rate_limiter import RateLimitRule, SlidingWindowRateLimiter, get_rate_limiter
from .execution.account_lock import AccountLock, get_account_lock
from .execution.models import (
    BatchSummary,
    EventType,
    ExecuteTestsRequest,
    ExecutionEvent,
    TestCase,
    TestCaseStatus,
    TestStatus,
    utc_now,
)
from .execution.orchestrator import ExecutionOrchestrator
from .execution.runs import ExecutionRun, RunRegistry
from .execution.summaries import FallbackSummarizer, Summarizer
from .generation.drafts import DraftLifecycle
from .generation.jobs import GenerationJobRunner
from .generation.models import (
    AiGenerationJob,
    DiscardDraftsRequest,
    DraftNotification,
    GeneratedTestDraft,
    GroupRunStatus,
    PublishDraftsRequest,
    QueueGenerationRequest,
    TestGroup,
)
from .generation.text_client import OpenAITextClient, TestSuggester
from .state.models import ProfileStatus, ProviderProfile, QAState
from .state.store import InMemoryStateStore, StateStore

RATE_LIMITS: Dict[str, RateLimitRule] = {
    "execute-tests": RateLimitRule(20),
    "generate-tests:post": RateLimitRule(20),
    "generate-tests:get": RateLimitRule(120),
    "generate-tests:publish": RateLimitRule(40),
    "generate-tests:discard": RateLimitRule(60),
    "auth-session:post": RateLimitRule(40),
    "auth-session:delete": RateLimitRule(40),
}

LOGIN_FAILED_ERROR = "Login did not succeed. The agent could not confirm a successful login."

ModelT = TypeVar("ModelT", bound=BaseModel)


class PublishDraftsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    published_count: int
    skipped_duplicates: int
    group_id: Optional[str] = None
    drafts: List[GeneratedTestDraft]
    notification: DraftNotification
    test_cases: List[TestCase]
    groups: List[TestGroup]
    jobs: List[AiGenerationJob]


class DiscardDraftsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    drafts: List[GeneratedTestDraft]
    notification: DraftNotification
    jobs: List[AiGenerationJob]


class GenerationStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jobs: List[AiGenerationJob]
    drafts: List[GeneratedTestDraft]
    notification: DraftNotification


class LoginAccountRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    website_url: str = Field(..., min_length=1)
    profile_id: Optional[str] = None
    settings: Optional[QASettings] = None


class DeleteProfileRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile_id: str = Field(..., min_length=1)
    settings: Optional[QASettings] = None
    project_id: Optional[str] = None
    account_id: Optional[str] = None


@dataclass
class ExecutionStream:
    """Events of one run; iterate it to drive the run."""

    run_id: str
    events: Optional[AsyncIterator[ExecutionEvent]] = None
    summary: Optional[BatchSummary] = field(default=None)

    def __aiter__(self) -> AsyncIterator[ExecutionEvent]:
        return self.events

    async def aclose(self) -> None:
        await self.events.aclose()


def _validate(model: Type[ModelT], payload: Union[ModelT, Dict[str, Any]]) -> ModelT:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        violations = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__}", validation_type=model.__name__, violations=violations
        ) from e


def _sorted_jobs(state: QAState, project_id: str) -> List[AiGenerationJob]:
    return sorted(
        state.ai_generation_jobs.get(project_id, []), key=lambda j: j.created_at, reverse=True
    )


class QAService:
    """Team-scoped operations over shared QA state."""

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[StateStore] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        account_lock: Optional[AccountLock] = None,
        providers: Optional[ProviderRegistry] = None,
        summarizer: Optional[Summarizer] = None,
        suggester: Optional[TestSuggester] = None,
        runs: Optional[RunRegistry] = None,
    ):
        """
        Wire the service.

        When no text collaborators are given and an AI key is configured,
        one :class:`OpenAITextClient` serves as both summarizer and suggester.
        Without a key, summaries fall back to deterministic text and
        generation jobs fail with a configuration message.
        """
        self.config = config or Config()
        self.store = store or InMemoryStateStore()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.account_lock = account_lock or get_account_lock()
        self.providers = providers or ProviderRegistry(self.config)

        if self.config.ai_api_key and (summarizer is None or suggester is None):
            text_client = OpenAITextClient(self.config)
            summarizer = summarizer or text_client
            suggester = suggester or text_client

        self.summarizer = summarizer or FallbackSummarizer()
        self.suggester = suggester
        self.runs = runs or RunRegistry()

        self.orchestrator = ExecutionOrchestrator(
            self.config, self.providers, self.account_lock, self.summarizer, self.runs
        )
        self.drafts = DraftLifecycle()
        self.jobs = GenerationJobRunner(
            self.config, self.store, self.providers, self.account_lock, self.suggester
        )
        self.logger = get_logger(__name__)

    def _enforce(self, operation: str, actor_id: Optional[str]) -> None:
        rule = RATE_LIMITS[operation]
        self.rate_limiter.enforce_rule(f"{operation}:{actor_id or 'anonymous'}", rule)

    # Drafts

    async def publish_drafts(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: Union[PublishDraftsRequest, Dict[str, Any]],
        actor_name: Optional[str] = None,
    ) -> PublishDraftsResponse:
        self._enforce("generate-tests:publish", actor_id)
        request = _validate(PublishDraftsRequest, request)

        async with self.store.transaction(team_id, actor_id) as state:
            outcome = self.drafts.publish_drafts(
                state,
                request.project_id,
                request.draft_ids,
                request.group_name,
                actor_id=actor_id,
                actor_name=actor_name,
            )
            return PublishDraftsResponse(
                published_count=outcome.published_count,
                skipped_duplicates=outcome.skipped_duplicates,
                group_id=outcome.group_id,
                drafts=self.drafts.active_drafts(state, request.project_id),
                notification=state.ai_draft_notifications[request.project_id],
                test_cases=list(state.test_cases.get(request.project_id, [])),
                groups=list(state.test_groups.get(request.project_id, [])),
                jobs=_sorted_jobs(state, request.project_id),
            )

    async def discard_drafts(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: Union[DiscardDraftsRequest, Dict[str, Any]],
    ) -> DiscardDraftsResponse:
        self._enforce("generate-tests:discard", actor_id)
        request = _validate(DiscardDraftsRequest, request)

        async with self.store.transaction(team_id, actor_id) as state:
            self.drafts.discard_drafts(state, request.project_id, request.draft_ids)
            return DiscardDraftsResponse(
                drafts=self.drafts.active_drafts(state, request.project_id),
                notification=state.ai_draft_notifications[request.project_id],
                jobs=_sorted_jobs(state, request.project_id),
            )

    async def mark_drafts_seen(
        self, team_id: str, actor_id: Optional[str], project_id: str
    ) -> DraftNotification:
        async with self.store.transaction(team_id, actor_id) as state:
            state.require_project(project_id)
            return self.drafts.mark_seen(state, project_id)

    # Generation

    async def queue_generation(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: Union[QueueGenerationRequest, Dict[str, Any]],
    ) -> AiGenerationJob:
        self._enforce("generate-tests:post", actor_id)
        request = _validate(QueueGenerationRequest, request)
        return await self.jobs.queue_generation(team_id, actor_id, request)

    async def process_queued_jobs(
        self,
        team_id: str,
        actor_id: Optional[str],
        target_job_id: Optional[str] = None,
        api_keys: Optional[ProviderApiKeys] = None,
    ) -> int:
        return await self.jobs.process_queued_jobs(team_id, actor_id, target_job_id, api_keys)

    async def generation_status(
        self, team_id: str, actor_id: Optional[str], project_id: str
    ) -> GenerationStatusResponse:
        self._enforce("generate-tests:get", actor_id)
        if not project_id:
            raise ValidationError("projectId is required", validation_type="generation_status")

        state = await self.store.load_state(team_id)
        return GenerationStatusResponse(
            jobs=_sorted_jobs(state, project_id),
            drafts=self.drafts.active_drafts(state, project_id),
            notification=self.drafts.compute_notification(state, project_id),
        )

    # Execution

    async def execute_tests(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: Union[ExecuteTestsRequest, Dict[str, Any]],
    ) -> ExecutionStream:
        """
        Start a run and return its event stream.

        The rate budget and the payload are checked before anything runs.
        Results are written back to the team state once the stream ends with
        its summary event.
        """
        self._enforce("execute-tests", actor_id)
        request = _validate(ExecuteTestsRequest, request)

        state = await self.store.load_state(team_id)
        settings = normalize_settings(request.settings or state.settings)
        request = request.model_copy(update={"settings": settings})

        provider = self.providers.get(settings.browser_provider)
        accounts = state.account_map(
            (tc.project_id for tc in request.test_cases), provider.provider_id
        )

        run = self.orchestrator.create_run(request)
        stream = ExecutionStream(run_id=run.run_id, events=None)
        stream.events = self._stream(team_id, actor_id, request, accounts, run, stream)
        return stream

    async def _stream(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: ExecuteTestsRequest,
        accounts: Dict[str, Any],
        run: ExecutionRun,
        stream: ExecutionStream,
    ) -> AsyncIterator[ExecutionEvent]:
        async for event in self.orchestrator.execute_batch(request, accounts, run):
            if event.type == EventType.SUMMARY:
                stream.summary = run.summary
                await self._persist_results(team_id, actor_id, request, run.summary)
            yield event

    async def _persist_results(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: ExecuteTestsRequest,
        summary: Optional[BatchSummary],
    ) -> None:
        if summary is None:
            return

        results = {r.test_case_id: r for r in summary.results}
        finished_at = utc_now()

        async with self.store.transaction(team_id, actor_id) as state:
            touched_projects = set()
            for project_id, test_cases in state.test_cases.items():
                for test_case in test_cases:
                    result = results.get(test_case.id)
                    if result is None:
                        continue
                    touched_projects.add(project_id)
                    test_case.last_run_result = result
                    if result.status == TestStatus.PASSED:
                        test_case.status = TestCaseStatus.PASSED
                    elif result.status in (TestStatus.FAILED, TestStatus.ERROR):
                        test_case.status = TestCaseStatus.FAILED

            for project_id in touched_projects:
                project = state.get_project(project_id)
                if project is not None:
                    project.last_run_status = "failed" if summary.failed else "passed"
                    project.last_run_at = finished_at

                for group in state.test_groups.get(project_id, []):
                    group_results = [results[i] for i in group.test_case_ids if i in results]
                    if not group_results:
                        continue
                    group.last_run_at = finished_at
                    group.last_run_status = (
                        GroupRunStatus.FAILED
                        if any(r.is_failure for r in group_results)
                        else GroupRunStatus.PASSED
                    )
            state.touch()

    def stop_run(self, run_id: str) -> bool:
        if not self.runs.stop(run_id):
            raise NotFoundError("Run not found.", resource_type="run", resource_id=run_id)
        return True

    def skip_test(self, run_id: str, test_case_id: str) -> bool:
        run = self.runs.get(run_id)
        if run is None:
            raise NotFoundError("Run not found.", resource_type="run", resource_id=run_id)
        return run.skip(test_case_id)

    def run_status(self, run_id: str) -> Dict[str, Any]:
        run = self.runs.get(run_id)
        if run is None:
            raise NotFoundError("Run not found.", resource_type="run", resource_id=run_id)
        return run.to_dict()

    # Provider profiles

    async def login_account(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: Union[LoginAccountRequest, Dict[str, Any]],
    ) -> ProviderProfile:
        """
        Log an account into a persisted provider profile.

        The account is locked for the duration of the login so no test run
        uses it concurrently. On success the profile is stored on the account.
        """
        self._enforce("auth-session:post", actor_id)
        request = _validate(LoginAccountRequest, request)

        state = await self.store.load_state(team_id)
        account = next(
            (a for a in state.user_accounts.get(request.project_id, []) if a.id == request.account_id),
            None,
        )
        if account is None:
            raise NotFoundError(
                "Account not found for this project.",
                resource_type="user_account",
                resource_id=request.account_id,
            )

        settings = normalize_settings(request.settings or state.settings)
        provider = self.providers.get(settings.browser_provider)

        if not self.account_lock.try_acquire(account.id):
            raise BrowserQAError(
                "Account is in use by a running test.", "ACCOUNT_BUSY", {"account_id": account.id}
            )
        try:
            result = await provider.login_with_profile(
                AuthSessionInput(
                    email=account.email,
                    password=account.password,
                    website_url=request.website_url,
                    existing_profile_id=request.profile_id or account.profile_id_for(provider.provider_id),
                    settings=settings,
                )
            )
        finally:
            self.account_lock.release(account.id)

        if not result.success:
            raise BrowserQAError(
                result.error or LOGIN_FAILED_ERROR,
                "LOGIN_FAILED",
                {"account_id": account.id, "provider": provider.provider_id},
            )

        profile = ProviderProfile(
            profile_id=result.profile_id,
            status=ProfileStatus.AUTHENTICATED,
            last_authenticated_at=utc_now(),
        )
        async with self.store.transaction(team_id, actor_id) as latest:
            stored = latest.find_account(account.id)
            if stored is not None:
                stored.provider_profiles.set(provider.provider_id, profile)
                latest.touch()

        self.logger.info(
            "Account logged in",
            extra={"provider": provider.provider_id, "account_id": account.id},
        )
        return profile

    async def delete_profile(
        self,
        team_id: str,
        actor_id: Optional[str],
        request: Union[DeleteProfileRequest, Dict[str, Any]],
    ) -> None:
        """Delete a provider profile and clear it from the owning account."""
        self._enforce("auth-session:delete", actor_id)
        request = _validate(DeleteProfileRequest, request)

        state = await self.store.load_state(team_id)
        settings = normalize_settings(request.settings or state.settings)
        provider = self.providers.get(settings.browser_provider)
        await provider.delete_profile(request.profile_id, settings)

        if request.account_id:
            async with self.store.transaction(team_id, actor_id) as latest:
                account = latest.find_account(request.account_id)
                if account is not None and account.profile_id_for(provider.provider_id) == request.profile_id:
                    account.provider_profiles.set(provider.provider_id, None)
                    latest.touch()
