"""
Unit tests for streamed batch execution.

Tests slot filling under the parallel limit, shared-account exclusion,
result mapping, and skip and stop requests.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import failed_result
from browserqa.browser.models import BrowserExecutionResult, ExecutionCredentials, ExecutionStatus
from browserqa.execution.models import ANY_ACCOUNT, BatchStatus, EventType, ExecuteTestsRequest
from browserqa.execution.orchestrator import (
    ACCOUNT_BUSY_ERROR,
    NO_ACCOUNTS_ERROR,
    NO_VERDICT_ERROR,
    ExecutionOrchestrator,
    build_goal_from_test_case,
)


@pytest.fixture
def orchestrator(config, providers, account_lock):
    return ExecutionOrchestrator(config, providers, account_lock)


@pytest.fixture
def credentials(accounts, fake_provider):
    return {a.id: a.credentials_for(fake_provider.provider_id) for a in accounts}


def _request(test_cases, parallel_limit=3):
    return ExecuteTestsRequest(
        test_cases=test_cases,
        website_url="https://shop.example",
        parallel_limit=parallel_limit,
    )


async def _collect(orchestrator, request, accounts=None, run=None):
    return [event async for event in orchestrator.execute_batch(request, accounts, run)]


def _results(events):
    summary = events[-1]
    assert summary.type == EventType.SUMMARY
    return {r.test_case_id: r for r in summary.data["results"]}


class TestBuildGoal:
    """Test cases for the agent goal text."""

    def test_goal_without_credentials(self, make_test_case):
        """Test that the goal carries the description, expected outcome, and verdict shape."""
        goal = build_goal_from_test_case(make_test_case("Search"))

        assert "Check Search" in goal
        assert "Expected outcome: Search works" in goal
        assert '"success": true/false' in goal
        assert "Email:" not in goal

    def test_goal_with_login_credentials(self, make_test_case):
        """Test that accounts without a profile are told to log in first."""
        creds = ExecutionCredentials(email="a@x.io", password="pw", metadata={"role": "admin"})

        goal = build_goal_from_test_case(make_test_case("Search"), creds)

        assert "you must first log in" in goal
        assert "- Email: a@x.io" in goal
        assert "- Account info: role=admin" in goal

    def test_goal_with_profile(self, make_test_case):
        """Test that accounts with a profile reuse the session."""
        creds = ExecutionCredentials(email="a@x.io", password="pw", profile_id="prof-1")

        goal = build_goal_from_test_case(make_test_case("Search"), creds)

        assert "Reuse the existing authenticated browser profile" in goal


class TestExecuteBatch:
    """Test cases for ExecutionOrchestrator.execute_batch."""

    @pytest.mark.asyncio
    async def test_event_sequence(self, orchestrator, make_test_case):
        """Test the per-test events and the final summary."""
        tc = make_test_case("Search")

        events = await _collect(orchestrator, _request([tc]))

        types = [e.type for e in events]
        assert types == [
            EventType.TEST_START,
            EventType.TASK_CREATED,
            EventType.LIVE_URL,
            EventType.PROGRESS,
            EventType.TEST_COMPLETE,
            EventType.SUMMARY,
        ]
        assert events[0].data["title"] == "Search"
        assert events[2].data["url"] == "https://live.example/session-1"
        assert events[3].data == {"step": 1, "total": 50}

        summary = events[-1].data
        assert summary["status"] == BatchStatus.COMPLETED.value
        assert (summary["total"], summary["passed"], summary["failed"], summary["skipped"]) == (1, 1, 0, 0)

        result = _results(events)[tc.id]
        assert result.status == "passed"
        assert result.reason == "Everything worked."
        assert result.streaming_url == "https://live.example/session-1"
        assert (result.current_step, result.total_steps) == (1, 50)
        assert result.summary.startswith("• Ran 'Search'")

    @pytest.mark.asyncio
    async def test_parallel_limit(self, orchestrator, fake_provider, make_test_case):
        """Test that no more than the limit run at once and free slots are refilled."""
        fake_provider.delay = 0.02
        tests = [make_test_case(f"T{i}") for i in range(5)]

        events = await _collect(orchestrator, _request(tests, parallel_limit=2))

        assert fake_provider.max_active == 2
        assert len(fake_provider.executions) == 5
        assert events[-1].data["passed"] == 5

    @pytest.mark.asyncio
    async def test_shared_account_never_overlaps(
        self, orchestrator, fake_provider, account_lock, credentials, make_test_case
    ):
        """Test that tests bound to one account run one at a time."""
        fake_provider.delay = 0.01
        tests = [make_test_case(f"T{i}", account="acct-1") for i in range(5)]

        events = await _collect(orchestrator, _request(tests, parallel_limit=2), credentials)

        assert fake_provider.account_overlaps == 0
        assert fake_provider.max_active == 1
        results = _results(events)
        assert all(r.status == "passed" for r in results.values())
        assert {r.resolved_user_account_id for r in results.values()} == {"acct-1"}
        assert account_lock.held() == set()

    @pytest.mark.asyncio
    async def test_two_of_five_share_an_account(
        self, orchestrator, fake_provider, account_lock, credentials, make_test_case
    ):
        """Test that a shared account is serialised while other tests fill the slots."""
        fake_provider.delay = 0.02
        tests = [
            make_test_case("T0", account="acct-1"),
            make_test_case("T1", account="acct-1"),
            make_test_case("T2"),
            make_test_case("T3"),
            make_test_case("T4"),
        ]

        events = await _collect(orchestrator, _request(tests, parallel_limit=2), credentials)

        assert fake_provider.max_active == 2
        assert fake_provider.account_overlaps == 0
        assert len(fake_provider.executions) == 5
        results = _results(events)
        assert all(r.status == "passed" for r in results.values())
        assert results["tc-t0"].resolved_user_account_id == "acct-1"
        assert results["tc-t1"].resolved_user_account_id == "acct-1"
        assert account_lock.held() == set()

    @pytest.mark.asyncio
    async def test_mixed_accounts_run_in_parallel(
        self, orchestrator, fake_provider, credentials, make_test_case
    ):
        """Test that different accounts and account-free tests share the slots."""
        fake_provider.delay = 0.02
        tests = [
            make_test_case("A", account="acct-1"),
            make_test_case("B", account="acct-2"),
            make_test_case("C"),
        ]

        await _collect(orchestrator, _request(tests, parallel_limit=3), credentials)

        assert fake_provider.max_active == 3
        assert fake_provider.account_overlaps == 0

    @pytest.mark.asyncio
    async def test_any_account_picks_free_accounts(
        self, orchestrator, fake_provider, credentials, make_test_case
    ):
        """Test that __any__ tests claim distinct free accounts, preferring saved profiles."""
        fake_provider.delay = 0.02
        credentials["acct-2"] = credentials["acct-2"].model_copy(update={"profile_id": "prof-2"})
        tests = [make_test_case(f"T{i}", account=ANY_ACCOUNT) for i in range(3)]

        events = await _collect(orchestrator, _request(tests, parallel_limit=3), credentials)

        assert fake_provider.account_overlaps == 0
        assert fake_provider.max_active == 2
        assert fake_provider.executions[0].credentials.profile_id == "prof-2"
        assert {r.resolved_user_account_id for r in _results(events).values()} <= {"acct-1", "acct-2"}

    @pytest.mark.asyncio
    async def test_any_account_without_accounts(self, orchestrator, fake_provider, make_test_case):
        """Test that __any__ with no accounts is an error result."""
        tc = make_test_case("Search", account=ANY_ACCOUNT)

        events = await _collect(orchestrator, _request([tc]))

        result = _results(events)[tc.id]
        assert result.status == "error"
        assert result.error == NO_ACCOUNTS_ERROR
        assert fake_provider.executions == []
        assert events[0].type == EventType.TEST_ERROR

    @pytest.mark.asyncio
    async def test_unknown_account(self, orchestrator, credentials, make_test_case):
        """Test that a missing assigned account is an error result."""
        tc = make_test_case("Search", account="ghost")

        events = await _collect(orchestrator, _request([tc]), credentials)

        result = _results(events)[tc.id]
        assert result.status == "error"
        assert result.error == "Assigned account 'ghost' was not found in shared team state."
        assert result.resolved_user_account_id == "ghost"

    @pytest.mark.asyncio
    async def test_account_held_elsewhere_times_out(
        self, config, orchestrator, account_lock, credentials, make_test_case
    ):
        """Test that an account held outside the run eventually errors the test."""
        config.account_wait_timeout = 0.05
        account_lock.try_acquire("acct-1")
        tc = make_test_case("Search", account="acct-1")

        events = await _collect(orchestrator, _request([tc]), credentials)

        result = _results(events)[tc.id]
        assert result.status == "error"
        assert result.error == ACCOUNT_BUSY_ERROR
        assert account_lock.is_in_use("acct-1")

    @pytest.mark.asyncio
    async def test_provider_exception_becomes_error(
        self, orchestrator, fake_provider, account_lock, credentials, make_test_case
    ):
        """Test that a raising provider yields an error result and releases the account."""
        fake_provider.outcomes["Check Broken"] = RuntimeError("session crashed")
        broken = make_test_case("Broken", account="acct-1")
        fine = make_test_case("Fine")

        events = await _collect(orchestrator, _request([broken, fine]), credentials)

        results = _results(events)
        assert results[broken.id].status == "error"
        assert results[broken.id].error == "session crashed"
        assert results[fine.id].status == "passed"
        assert events[-1].data["status"] == BatchStatus.PARTIALLY_FAILED.value
        assert account_lock.held() == set()
        error_events = [e for e in events if e.type == EventType.TEST_ERROR]
        assert error_events[0].data["error"] == "session crashed"

    @pytest.mark.asyncio
    async def test_result_mapping(self, orchestrator, fake_provider, make_test_case):
        """Test failed verdicts, provider errors, and missing verdicts."""
        fake_provider.outcomes["Check Fails"] = failed_result("Total was wrong")
        fake_provider.outcomes["Check Errors"] = BrowserExecutionResult(
            status=ExecutionStatus.ERROR, error="API key invalid"
        )
        fake_provider.outcomes["Check Silent"] = BrowserExecutionResult(status=ExecutionStatus.COMPLETED)
        tests = [make_test_case("Fails"), make_test_case("Errors"), make_test_case("Silent")]

        events = await _collect(orchestrator, _request(tests))

        results = _results(events)
        assert results["tc-fails"].status == "failed"
        assert results["tc-fails"].reason == "Total was wrong"
        assert results["tc-errors"].status == "error"
        assert results["tc-errors"].error == "API key invalid"
        assert results["tc-silent"].error == NO_VERDICT_ERROR
        assert events[-1].data["failed"] == 3

    @pytest.mark.asyncio
    async def test_summarizer_failure_falls_back(self, config, providers, account_lock, make_test_case):
        """Test that a failing summarizer leaves the verdict reason as the summary."""
        summarizer = AsyncMock()
        summarizer.summarize.side_effect = RuntimeError("model down")
        orchestrator = ExecutionOrchestrator(config, providers, account_lock, summarizer)
        tc = make_test_case("Search")

        events = await _collect(orchestrator, _request([tc]))

        assert _results(events)[tc.id].summary == "Everything worked."


class TestSkipAndStop:
    """Test cases for skip and stop requests."""

    @pytest.mark.asyncio
    async def test_skip_before_start(self, orchestrator, fake_provider, make_test_case):
        """Test that a test skipped before it starts is never run."""
        first, second = make_test_case("First"), make_test_case("Second")
        request = _request([first, second], parallel_limit=1)
        run = orchestrator.create_run(request)

        assert run.skip(second.id) is True
        events = await _collect(orchestrator, request, run=run)

        results = _results(events)
        assert results[second.id].status == "skipped"
        assert results[second.id].reason == "Skipped by user."
        assert len(fake_provider.executions) == 1
        assert events[-1].data["skipped"] == 1

    @pytest.mark.asyncio
    async def test_skip_while_running(self, orchestrator, fake_provider, make_test_case):
        """Test that a running test is reported skipped and its later events are dropped."""
        first, second = make_test_case("First"), make_test_case("Second")
        request = _request([first, second], parallel_limit=1)
        run = orchestrator.create_run(request)
        fake_provider.release.clear()

        events = []
        async for event in orchestrator.execute_batch(request, None, run):
            events.append(event)
            if event.type == EventType.TEST_START and event.test_case_id == first.id:
                assert run.skip(first.id) is True
                fake_provider.release.set()

        results = _results(events)
        assert results[first.id].status == "skipped"
        assert results[first.id].reason == "Skipped by user while running."
        assert results[second.id].status == "passed"
        first_completions = [
            e for e in events if e.type == EventType.TEST_COMPLETE and e.test_case_id == first.id
        ]
        assert len(first_completions) == 1
        assert run.skip(first.id) is False

    @pytest.mark.asyncio
    async def test_stop_run(self, orchestrator, fake_provider, account_lock, credentials, make_test_case):
        """Test that stopping cancels in-flight tests and skips pending ones."""
        first = make_test_case("First", account="acct-1")
        second = make_test_case("Second")
        request = _request([first, second], parallel_limit=1)
        run = orchestrator.create_run(request)
        fake_provider.release.clear()

        events = []
        async for event in orchestrator.execute_batch(request, credentials, run):
            events.append(event)
            if event.type == EventType.TEST_START and event.test_case_id == first.id:
                assert orchestrator.runs.stop(run.run_id) is True

        summary = events[-1].data
        assert summary["status"] == BatchStatus.CANCELLED.value
        assert summary["skipped"] == 2
        results = _results(events)
        assert results[first.id].reason == "Run stopped while this test was running."
        assert results[second.id].reason == "Run stopped before this test started."
        assert account_lock.held() == set()
        assert orchestrator.runs.get(run.run_id) is None

    @pytest.mark.asyncio
    async def test_run_batch_returns_summary(self, orchestrator, make_test_case):
        """Test the non-streaming entry point."""
        summary = await orchestrator.run_batch(_request([make_test_case("Search")]))

        assert summary.status == BatchStatus.COMPLETED
        assert summary.passed == 1
        assert summary.success_rate == 100.0
