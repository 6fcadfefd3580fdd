"""
Batch test execution with account-aware scheduling.

Runs a set of test cases through one browser provider with a bounded number
of concurrent remote sessions. Free slots are refilled as soon as a test
settles. Tests bound to a shared account only start after claiming the
account, and defer while another test holds it. Progress is streamed as an
ordered event sequence that ends with a summary event.
"""

import asyncio
import time
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from ..browser.models import (
    BrowserExecutionInput,
    ExecutionCredentials,
    ExecutionStatus,
    ProviderCallbacks,
    QASettings,
    normalize_settings,
)
from ..browser.base import BrowserProvider
from ..browser.registry import ProviderRegistry
from ..core.config import Config
from ..core.logging_config import get_logger, log_performance
from .account_lock import AccountLock, get_account_lock
from .models import (
    ANY_ACCOUNT,
    BatchStatus,
    BatchSummary,
    EventType,
    ExecuteTestsRequest,
    ExecutionEvent,
    TestCase,
    TestResult,
    TestStatus,
    normalize_account_ref,
    utc_now,
)
from .runs import ExecutionRun, RunRegistry, generate_run_id, skipped_result
from .summaries import FallbackSummarizer, Summarizer

NO_VERDICT_ERROR = "Browser provider returned no verdict."
NO_ACCOUNTS_ERROR = "No available user accounts were eligible for this provider."
ACCOUNT_BUSY_ERROR = "Assigned account is busy and could not be allocated in time."


def build_goal_from_test_case(
    test_case: TestCase,
    credentials: Optional[ExecutionCredentials] = None,
) -> str:
    """Compose the natural-language task handed to the browser agent."""
    goal = (
        "IMPORTANT: If at any point in the test you see a screen that has an error "
        "message, stop immediately. You must fail the test and detail what happened "
        "and where the error appeared.\n\n"
    )

    if credentials is not None:
        if credentials.profile_id:
            goal += "IMPORTANT: Reuse the existing authenticated browser profile/session for this account.\n"
            goal += "Only log in manually if the app clearly shows you are signed out or blocked at a login screen.\n"
            goal += "Fallback credentials (use only if login is required):\n"
        else:
            goal += "IMPORTANT: Before performing the test, you must first log in to the application.\n"
            goal += "Use these credentials to log in:\n"
        goal += f"- Email: {credentials.email}\n"
        goal += f"- Password: {credentials.password}\n"

        if credentials.metadata:
            info = ", ".join(f"{k}={v}" for k, v in credentials.metadata.items())
            goal += f"- Account info: {info}\n"
        goal += "\nAfter confirming authentication state, proceed with the following test:\n\n"

    goal += test_case.description
    goal += f"\n\nExpected outcome: {test_case.expected_outcome or 'Test should complete successfully'}"
    goal += (
        "\n\nAfter completing the steps, verify that the expected outcome is met. "
        "Return ONLY a valid JSON object with this exact shape:\n"
        '{ "success": true/false, "reason": "explanation", "extractedData": {} }\n'
        "Do not include any extra text before or after the JSON."
    )
    return goal


class _AnyAccountPicker:
    """Round-robin claim over free accounts, preferring ones with a saved profile."""

    def __init__(self, accounts: Mapping[str, ExecutionCredentials], lock: AccountLock):
        self.lock = lock
        self.all_ids = list(accounts)
        self.preferred_ids = [aid for aid, creds in accounts.items() if creds.profile_id]
        self._cursors = {"preferred": 0, "fallback": 0}

    def _claim_from(self, pool: List[str], name: str) -> Optional[str]:
        if not pool:
            return None
        start = self._cursors[name]
        for offset in range(len(pool)):
            index = (start + offset) % len(pool)
            if self.lock.try_acquire(pool[index]):
                self._cursors[name] = (index + 1) % len(pool)
                return pool[index]
        return None

    def claim(self) -> Optional[str]:
        return self._claim_from(self.preferred_ids, "preferred") or self._claim_from(
            self.all_ids, "fallback"
        )


class ExecutionOrchestrator:
    """
    Drives streamed batch execution.

    Handles slot filling under the parallel limit, account claiming and
    release, per-test result mapping, skip and stop requests, and the final
    summary with per-test explanations.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        providers: Optional[ProviderRegistry] = None,
        account_lock: Optional[AccountLock] = None,
        summarizer: Optional[Summarizer] = None,
        runs: Optional[RunRegistry] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: browserqa configuration
            providers: Provider registry used to resolve settings.browser_provider
            account_lock: Shared account lock; defaults to the process-wide lock
            summarizer: Explanation collaborator; defaults to FallbackSummarizer
            runs: Registry of active runs for status and stop requests
        """
        self.config = config or Config()
        self.providers = providers or ProviderRegistry(self.config)
        self.account_lock = account_lock or get_account_lock()
        self.summarizer = summarizer or FallbackSummarizer()
        self.runs = runs or RunRegistry()
        self.logger = get_logger(__name__)

    def create_run(self, request: ExecuteTestsRequest) -> ExecutionRun:
        run = ExecutionRun(
            request.run_id or generate_run_id(),
            [tc.id for tc in request.test_cases],
            request.parallel_limit,
        )
        self.runs.register(run)
        return run

    async def execute_batch(
        self,
        request: ExecuteTestsRequest,
        accounts: Optional[Mapping[str, ExecutionCredentials]] = None,
        run: Optional[ExecutionRun] = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Run ``request`` and yield its events in order, ending with the summary.

        Closing the iterator early stops the run.

        Args:
            request: Tests, target URL, parallel limit, and settings
            accounts: Credentials by account id for account-bound tests
            run: Pre-registered run, when the caller needs the id up front
        """
        run = run or self.create_run(request)
        driver = asyncio.create_task(self._drive(run, request, dict(accounts or {})))

        try:
            while True:
                event = await run.next_event()
                yield event
                if event.type == EventType.SUMMARY:
                    break
            await driver
        finally:
            if not driver.done():
                run.cancel()
                await asyncio.gather(driver, return_exceptions=True)
            self.runs.unregister(run.run_id)

    async def run_batch(
        self,
        request: ExecuteTestsRequest,
        accounts: Optional[Mapping[str, ExecutionCredentials]] = None,
    ) -> BatchSummary:
        """Run ``request`` to completion without a streaming consumer."""
        run = self.create_run(request)
        async for _ in self.execute_batch(request, accounts, run):
            pass
        return run.summary

    async def _drive(
        self,
        run: ExecutionRun,
        request: ExecuteTestsRequest,
        accounts: Dict[str, ExecutionCredentials],
    ) -> None:
        loop = asyncio.get_running_loop()
        start_time = time.time()
        settings = normalize_settings(request.settings)
        provider = self.providers.get(settings.browser_provider)
        picker = _AnyAccountPicker(accounts, self.account_lock)
        limit = request.parallel_limit

        pending: List[TestCase] = list(request.test_cases)
        in_flight: Dict[asyncio.Task, TestCase] = {}
        cancel_waiter = asyncio.ensure_future(run.wait_cancelled())
        blocked_since: Optional[float] = None

        run.status = BatchStatus.RUNNING
        run.logger.info(
            f"Starting run with {len(pending)} tests",
            extra={
                "metadata": {
                    "provider": provider.provider_id,
                    "parallel_limit": limit,
                    "website_url": request.website_url,
                }
            },
        )

        def start(test_case: TestCase, account_id: Optional[str]) -> None:
            credentials = accounts.get(account_id) if account_id else None
            run.in_flight.add(test_case.id)
            task = asyncio.create_task(
                self._run_test(run, provider, request, settings, test_case, account_id, credentials)
            )
            in_flight[task] = test_case

        def settle_without_running(test_case: TestCase, result: TestResult) -> None:
            if not run.record(result):
                return
            event_type = EventType.TEST_ERROR if result.status == TestStatus.ERROR else EventType.TEST_COMPLETE
            data = {"result": result}
            if result.error:
                data["error"] = result.error
            run.emit(ExecutionEvent(type=event_type, test_case_id=test_case.id, data=data))

        try:
            while pending or in_flight:
                if run.cancelled:
                    for test_case in pending:
                        settle_without_running(
                            test_case, skipped_result(test_case.id, "Run stopped before this test started.")
                        )
                    pending = []
                    for task in in_flight:
                        task.cancel()
                else:
                    deferred: List[TestCase] = []
                    for test_case in pending:
                        if test_case.id in run.skip_requested:
                            settle_without_running(test_case, skipped_result(test_case.id, "Skipped by user."))
                            continue
                        if len(in_flight) >= limit:
                            deferred.append(test_case)
                            continue

                        account_ref = normalize_account_ref(test_case.user_account_id)
                        if account_ref is None:
                            start(test_case, None)
                        elif account_ref == ANY_ACCOUNT:
                            if not accounts:
                                settle_without_running(
                                    test_case, self._error_result(test_case.id, NO_ACCOUNTS_ERROR)
                                )
                                continue
                            account_id = picker.claim()
                            if account_id is None:
                                deferred.append(test_case)
                                continue
                            start(test_case, account_id)
                        elif account_ref not in accounts:
                            settle_without_running(
                                test_case,
                                self._error_result(
                                    test_case.id,
                                    f"Assigned account '{account_ref}' was not found in shared team state.",
                                    account_ref,
                                ),
                            )
                        elif self.account_lock.try_acquire(account_ref):
                            start(test_case, account_ref)
                        else:
                            deferred.append(test_case)
                    pending = deferred

                if not in_flight:
                    if not pending:
                        break
                    # Every pending test waits on an account held outside this run
                    now = loop.time()
                    if blocked_since is None:
                        blocked_since = now
                    if now - blocked_since >= self.config.account_wait_timeout:
                        for test_case in pending:
                            settle_without_running(
                                test_case,
                                self._error_result(
                                    test_case.id,
                                    ACCOUNT_BUSY_ERROR,
                                    normalize_account_ref(test_case.user_account_id),
                                ),
                            )
                        pending = []
                        break
                    await asyncio.sleep(self.config.account_poll_interval)
                    continue

                blocked_since = None
                waiters = set(in_flight)
                if not run.cancelled:
                    waiters.add(cancel_waiter)
                await asyncio.wait(
                    waiters,
                    timeout=self.config.account_poll_interval if pending else None,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in [t for t in in_flight if t.done()]:
                    test_case = in_flight.pop(task)
                    run.in_flight.discard(test_case.id)
        except Exception as e:
            run.logger.exception(f"Scheduler failed: {e}")
            for test_case in pending:
                settle_without_running(test_case, self._error_result(test_case.id, f"Scheduler failed: {e}"))
        finally:
            cancel_waiter.cancel()
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        await self._summarize_results(run, request)

        results = [run.results[tc.id] for tc in request.test_cases if tc.id in run.results]
        duration = time.time() - start_time
        summary = BatchSummary.from_results(run.run_id, results, duration, cancelled=run.cancelled)
        run.summary = summary
        run.status = summary.status

        log_performance(
            run.logger,
            "batch_execution",
            duration,
            total=summary.total,
            passed=summary.passed,
            failed=summary.failed,
            skipped=summary.skipped,
        )
        run.emit(
            ExecutionEvent(
                type=EventType.SUMMARY,
                data={
                    "run_id": run.run_id,
                    "status": summary.status.value,
                    "total": summary.total,
                    "passed": summary.passed,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "duration": summary.duration,
                    "results": results,
                },
            )
        )

    async def _run_test(
        self,
        run: ExecutionRun,
        provider: BrowserProvider,
        request: ExecuteTestsRequest,
        settings: QASettings,
        test_case: TestCase,
        account_id: Optional[str],
        credentials: Optional[ExecutionCredentials],
    ) -> None:
        try:
            result = await self.execute_test_case(
                run, provider, request.website_url, settings, test_case, credentials, account_id
            )
        except asyncio.CancelledError:
            result = skipped_result(test_case.id, "Run stopped while this test was running.", account_id)
            if run.record(result):
                run.emit(
                    ExecutionEvent(
                        type=EventType.TEST_COMPLETE, test_case_id=test_case.id, data={"result": result}
                    )
                )
            return
        finally:
            self.account_lock.release(account_id)

        run.record(result)

    async def execute_test_case(
        self,
        run: ExecutionRun,
        provider: BrowserProvider,
        website_url: str,
        settings: QASettings,
        test_case: TestCase,
        credentials: Optional[ExecutionCredentials] = None,
        account_id: Optional[str] = None,
    ) -> TestResult:
        """
        Execute one test case and emit its events.

        Provider failures and unexpected exceptions become ``error`` results;
        a verdict becomes ``passed`` or ``failed``.
        """
        test_case_id = test_case.id
        started_at = utc_now()
        start = time.time()
        current: Dict[str, Any] = {"live_url": None, "recording_url": None, "step": None, "total": None}

        start_data: Dict[str, Any] = {"title": test_case.title}
        if account_id:
            start_data["resolved_user_account_id"] = account_id
        run.emit(ExecutionEvent(type=EventType.TEST_START, test_case_id=test_case_id, data=start_data))

        async def on_live_url(live_url: str, recording_url: Optional[str]) -> None:
            current["live_url"] = live_url
            current["recording_url"] = recording_url
            data = {"url": live_url}
            if recording_url:
                data["recording_url"] = recording_url
            run.emit(ExecutionEvent(type=EventType.LIVE_URL, test_case_id=test_case_id, data=data))

        async def on_task_created(task_id: str, session_id: str) -> None:
            run.emit(
                ExecutionEvent(
                    type=EventType.TASK_CREATED,
                    test_case_id=test_case_id,
                    data={
                        "task_id": task_id,
                        "session_id": session_id,
                        "resolved_user_account_id": account_id,
                    },
                )
            )

        async def on_progress(step: int, total: int) -> None:
            current["step"], current["total"] = step, total
            run.emit(
                ExecutionEvent(
                    type=EventType.PROGRESS,
                    test_case_id=test_case_id,
                    data={"step": step, "total": total},
                )
            )

        try:
            execution = await provider.execute_test(
                BrowserExecutionInput(
                    url=website_url,
                    task=build_goal_from_test_case(test_case, credentials),
                    expected_outcome=test_case.expected_outcome or None,
                    settings=settings,
                    credentials=credentials,
                ),
                ProviderCallbacks(
                    on_live_url=on_live_url,
                    on_task_created=on_task_created,
                    on_progress=on_progress,
                ),
            )

            error: Optional[str] = None
            extracted_data = None
            if execution.status == ExecutionStatus.ERROR:
                status = TestStatus.ERROR
                error = execution.error or "Browser provider execution failed."
                reason = error
            elif execution.verdict is None:
                status = TestStatus.ERROR
                error = NO_VERDICT_ERROR
                reason = error
            else:
                status = TestStatus.PASSED if execution.verdict.success else TestStatus.FAILED
                reason = execution.verdict.reason
                extracted_data = execution.verdict.extracted_data

            if isinstance(execution.raw_provider_data, dict):
                extracted_data = {**(extracted_data or {}), "provider": execution.raw_provider_data}

            result = TestResult(
                test_case_id=test_case_id,
                resolved_user_account_id=account_id,
                status=status,
                started_at=started_at,
                completed_at=utc_now(),
                duration=time.time() - start,
                current_step=current["step"],
                total_steps=current["total"],
                streaming_url=execution.live_url or current["live_url"],
                recording_url=execution.recording_url or current["recording_url"],
                error=error,
                reason=reason,
                extracted_data=extracted_data,
            )
        except Exception as e:
            run.logger.error(
                f"Test {test_case_id} raised during execution: {e}",
                extra={"metadata": {"test_case_id": test_case_id, "provider": provider.provider_id}},
            )
            result = TestResult(
                test_case_id=test_case_id,
                resolved_user_account_id=account_id,
                status=TestStatus.ERROR,
                started_at=started_at,
                completed_at=utc_now(),
                duration=time.time() - start,
                current_step=current["step"],
                total_steps=current["total"],
                streaming_url=current["live_url"],
                recording_url=current["recording_url"],
                error=str(e) or e.__class__.__name__,
                reason=str(e) or e.__class__.__name__,
            )

        if result.status == TestStatus.ERROR:
            run.emit(
                ExecutionEvent(
                    type=EventType.TEST_ERROR,
                    test_case_id=test_case_id,
                    data={"error": result.error or "Unknown provider error", "result": result},
                )
            )
        else:
            run.emit(
                ExecutionEvent(type=EventType.TEST_COMPLETE, test_case_id=test_case_id, data={"result": result})
            )

        run.logger.info(
            f"Test {test_case_id} finished with status {result.status}",
            extra={
                "metadata": {
                    "test_case_id": test_case_id,
                    "status": result.status,
                    "duration": result.duration,
                    "account_id": account_id,
                }
            },
        )
        return result

    async def _summarize_results(self, run: ExecutionRun, request: ExecuteTestsRequest) -> None:
        """Attach an explanation to every executed (non-skipped) result."""
        by_id = {tc.id: tc for tc in request.test_cases}
        semaphore = asyncio.Semaphore(max(1, request.parallel_limit))

        async def summarize(result: TestResult) -> None:
            test_case = by_id.get(result.test_case_id)
            if test_case is None:
                return
            async with semaphore:
                try:
                    result.summary = await self.summarizer.summarize(test_case, result)
                except Exception as e:
                    run.logger.warning(
                        f"Summary generation failed for {result.test_case_id}: {e}",
                        extra={"metadata": {"test_case_id": result.test_case_id}},
                    )
                    result.summary = result.reason or result.error or "No summary available."

        targets = [r for r in run.results.values() if r.status != TestStatus.SKIPPED]
        if targets:
            await asyncio.gather(*(summarize(r) for r in targets))

    @staticmethod
    def _error_result(
        test_case_id: str,
        message: str,
        resolved_user_account_id: Optional[str] = None,
    ) -> TestResult:
        now = utc_now()
        return TestResult(
            test_case_id=test_case_id,
            resolved_user_account_id=resolved_user_account_id,
            status=TestStatus.ERROR,
            started_at=now,
            completed_at=now,
            duration=0.0,
            error=message,
            reason=message,
        )
