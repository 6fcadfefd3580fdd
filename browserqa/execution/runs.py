"""
Run tracking for streamed batch executions.

Each batch run gets an id, an append-only event log, and a result table.
The registry lets a separate caller poll a run's status or stop it while
the streaming consumer is still attached.
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from ..core.logging_config import get_logger
from .models import (
    BatchStatus,
    BatchSummary,
    EventType,
    ExecutionEvent,
    TestResult,
    TestStatus,
    utc_now,
)


def generate_run_id() -> str:
    """Date-prefixed id so runs sort chronologically."""
    suffix = uuid.uuid4().hex[:16]
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"{timestamp}-{suffix}"


def skipped_result(
    test_case_id: str,
    reason: str,
    resolved_user_account_id: Optional[str] = None,
) -> TestResult:
    now = utc_now()
    return TestResult(
        test_case_id=test_case_id,
        resolved_user_account_id=resolved_user_account_id,
        status=TestStatus.SKIPPED,
        started_at=now,
        completed_at=now,
        duration=0.0,
        reason=reason,
    )


class ExecutionRun:
    """Mutable state of one batch run."""

    def __init__(self, run_id: str, test_case_ids: List[str], parallel_limit: int):
        self.run_id = run_id
        self.test_case_ids = list(test_case_ids)
        self.parallel_limit = parallel_limit
        self.status = BatchStatus.QUEUED
        self.start_time = time.time()
        self.events: List[ExecutionEvent] = []
        self.results: Dict[str, TestResult] = {}
        self.in_flight: Set[str] = set()
        self.skip_requested: Set[str] = set()
        self.summary: Optional[BatchSummary] = None
        self._silenced: Set[str] = set()
        self._queue: "asyncio.Queue[ExecutionEvent]" = asyncio.Queue()
        self._cancel_event = asyncio.Event()
        self.logger = get_logger(__name__, run_id=run_id)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_finished(self) -> bool:
        return self.summary is not None

    def emit(self, event: ExecutionEvent) -> None:
        """Append an event unless its test was already reported as skipped."""
        if event.test_case_id is not None and event.test_case_id in self._silenced:
            return
        self.events.append(event)
        self._queue.put_nowait(event)

    async def next_event(self) -> ExecutionEvent:
        return await self._queue.get()

    def record(self, result: TestResult) -> bool:
        """Store the first result reported for a test. Later ones are ignored."""
        if result.test_case_id in self.results:
            return False
        self.results[result.test_case_id] = result
        return True

    def skip(self, test_case_id: str) -> bool:
        """
        Mark one test as skipped.

        A test that has not started is never started. A test already in
        flight is reported as skipped right away and its remaining events are
        dropped, while the remote agent is left to finish on its own.
        """
        if test_case_id not in self.test_case_ids or test_case_id in self.results:
            return False

        self.skip_requested.add(test_case_id)
        if test_case_id in self.in_flight:
            result = skipped_result(test_case_id, "Skipped by user while running.")
            self.record(result)
            self.emit(
                ExecutionEvent(
                    type=EventType.TEST_COMPLETE,
                    test_case_id=test_case_id,
                    data={"result": result},
                )
            )
            self._silenced.add(test_case_id)

        self.logger.info(
            f"Skip requested for {test_case_id}",
            extra={"metadata": {"test_case_id": test_case_id, "in_flight": test_case_id in self.in_flight}},
        )
        return True

    def cancel(self) -> None:
        self._cancel_event.set()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    def to_dict(self) -> Dict[str, Any]:
        """Status snapshot for polling callers."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "total": len(self.test_case_ids),
            "completed": len(self.results),
            "in_flight": sorted(self.in_flight),
            "event_count": len(self.events),
            "duration": time.time() - self.start_time,
            "results": [r.model_dump(mode="json") for r in self.results.values()],
        }


class RunRegistry:
    """Active runs of this process, keyed by run id."""

    def __init__(self):
        self._runs: Dict[str, ExecutionRun] = {}
        self.logger = get_logger("browserqa.execution.runs")

    def register(self, run: ExecutionRun) -> None:
        self._runs[run.run_id] = run

    def get(self, run_id: str) -> Optional[ExecutionRun]:
        return self._runs.get(run_id)

    def unregister(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def stop(self, run_id: str) -> bool:
        """Request cancellation of a run. False if the run is unknown."""
        run = self._runs.get(run_id)
        if run is None:
            return False
        run.cancel()
        self.logger.info(f"Stop requested for run {run_id}")
        return True
