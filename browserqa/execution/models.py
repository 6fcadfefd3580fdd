"""
Data models for test execution.

Defines pydantic models for test cases, results, and execution requests,
plus the event and summary records streamed to callers during a run.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..browser.models import QASettings

ANY_ACCOUNT = "__any__"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid.uuid4().hex


def normalize_account_ref(value: Optional[str]) -> Optional[str]:
    """Map the ``none`` sentinel and blanks to None; keep ``__any__`` and real ids."""
    if value is None:
        return None
    value = value.strip()
    if not value or value.lower() == "none":
        return None
    return value


class TestCaseStatus(str, Enum):
    """Lifecycle status stored on a test case."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TestStatus(str, Enum):
    """Status of one execution attempt."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class BatchStatus(str, Enum):
    """Status of a whole run."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    """Event kinds emitted on a run's stream."""

    TEST_START = "test_start"
    TASK_CREATED = "task_created"
    LIVE_URL = "live_url"
    PROGRESS = "progress"
    TEST_COMPLETE = "test_complete"
    TEST_ERROR = "test_error"
    SUMMARY = "summary"


class TestResult(BaseModel):
    """Outcome of one execution attempt."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    id: str = Field(default_factory=generate_id)
    test_case_id: str
    resolved_user_account_id: Optional[str] = None
    status: TestStatus
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    duration: Optional[float] = Field(None, ge=0, description="Seconds")
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    streaming_url: Optional[str] = None
    recording_url: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    summary: Optional[str] = None
    extracted_data: Optional[Dict[str, Any]] = None

    @property
    def is_failure(self) -> bool:
        return self.status in (TestStatus.FAILED, TestStatus.ERROR)


class TestCase(BaseModel):
    """A persisted natural-language test."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    id: str = Field(default_factory=generate_id)
    project_id: Optional[str] = None
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    expected_outcome: str = ""
    user_account_id: Optional[str] = Field(
        None, description="None, '__any__', or a specific account id"
    )
    status: TestCaseStatus = TestCaseStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    created_by_user_id: Optional[str] = None
    created_by_name: Optional[str] = None
    last_run_result: Optional[TestResult] = None

    @field_validator("user_account_id")
    @classmethod
    def validate_user_account_id(cls, v: Optional[str]) -> Optional[str]:
        return normalize_account_ref(v)


class ExecuteTestsRequest(BaseModel):
    """Request to run a batch of tests against one site."""

    model_config = ConfigDict(extra="forbid")

    test_cases: List[TestCase] = Field(..., min_length=1)
    website_url: str = Field(..., min_length=1)
    parallel_limit: int = Field(3, description="Clamped to 1-10")
    run_id: Optional[str] = None
    settings: Optional[QASettings] = None
    ai_model: Optional[str] = None

    @field_validator("parallel_limit", mode="before")
    @classmethod
    def clamp_parallel_limit(cls, v: Any) -> int:
        try:
            value = int(v)
        except (TypeError, ValueError):
            value = 3
        return max(1, min(10, value))


@dataclass
class ExecutionEvent:
    """One entry of a run's ordered, append-only event stream."""

    type: EventType
    test_case_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.test_case_id is not None:
            payload["test_case_id"] = self.test_case_id
        data = {}
        for key, value in self.data.items():
            if isinstance(value, BaseModel):
                data[key] = value.model_dump(mode="json")
            elif isinstance(value, list):
                data[key] = [
                    item.model_dump(mode="json") if isinstance(item, BaseModel) else item
                    for item in value
                ]
            else:
                data[key] = value
        payload["data"] = data
        return payload


@dataclass
class BatchSummary:
    """Aggregate outcome of a run."""

    run_id: str
    status: BatchStatus
    total: int
    passed: int
    failed: int
    skipped: int
    duration: float
    results: List[TestResult] = field(default_factory=list)

    @classmethod
    def from_results(
        cls,
        run_id: str,
        results: List[TestResult],
        duration: float,
        cancelled: bool = False,
    ) -> "BatchSummary":
        passed = sum(1 for r in results if r.status == TestStatus.PASSED)
        failed = sum(1 for r in results if r.status in (TestStatus.FAILED, TestStatus.ERROR))
        skipped = sum(1 for r in results if r.status == TestStatus.SKIPPED)

        if cancelled:
            status = BatchStatus.CANCELLED
        elif failed:
            status = BatchStatus.PARTIALLY_FAILED
        else:
            status = BatchStatus.COMPLETED

        return cls(
            run_id=run_id,
            status=status,
            total=len(results),
            passed=passed,
            failed=failed,
            skipped=skipped,
            duration=duration,
            results=list(results),
        )

    @property
    def success_rate(self) -> float:
        executed = self.total - self.skipped
        if executed == 0:
            return 0.0
        return (self.passed / executed) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration": self.duration,
            "success_rate": self.success_rate,
            "results": [r.model_dump(mode="json") for r in self.results],
        }
