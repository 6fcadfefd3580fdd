"""Batch execution: scheduling, account locking, run tracking, and summaries."""

from .account_lock import AccountLock, get_account_lock
from .models import (
    ANY_ACCOUNT,
    BatchStatus,
    BatchSummary,
    EventType,
    ExecuteTestsRequest,
    ExecutionEvent,
    TestCase,
    TestCaseStatus,
    TestResult,
    TestStatus,
)
from .orchestrator import ExecutionOrchestrator, build_goal_from_test_case
from .runs import ExecutionRun, RunRegistry, generate_run_id
from .summaries import FallbackSummarizer, Summarizer

__all__ = [
    "AccountLock",
    "get_account_lock",
    "ANY_ACCOUNT",
    "BatchStatus",
    "BatchSummary",
    "EventType",
    "ExecuteTestsRequest",
    "ExecutionEvent",
    "TestCase",
    "TestCaseStatus",
    "TestResult",
    "TestStatus",
    "ExecutionOrchestrator",
    "build_goal_from_test_case",
    "ExecutionRun",
    "RunRegistry",
    "generate_run_id",
    "FallbackSummarizer",
    "Summarizer",
]
