"""
Data models for AI-generated test drafts and generation jobs.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..browser.models import QASettings
from ..execution.models import TestCase, generate_id, normalize_account_ref, utc_now


class DraftStatus(str, Enum):
    """Draft lifecycle. Only DRAFT may transition, and only once."""

    DRAFT = "draft"
    PUBLISHED = "published"
    DISCARDED = "discarded"
    DUPLICATE_SKIPPED = "duplicate_skipped"


class JobStatus(str, Enum):
    """Generation job lifecycle."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GroupRunStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    RUNNING = "running"
    NEVER_RUN = "never_run"


class GeneratedTest(BaseModel):
    """A test suggested by the text-generation collaborator."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    expected_outcome: str = Field("", alias="expectedOutcome")


class GeneratedTestDraft(BaseModel):
    """A suggested test awaiting review."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    id: str = Field(default_factory=generate_id)
    project_id: str
    job_id: Optional[str] = None
    title: str
    description: str
    expected_outcome: str = ""
    user_account_id: Optional[str] = None
    group_name: Optional[str] = None
    status: DraftStatus = DraftStatus.DRAFT
    duplicate_of_test_case_id: Optional[str] = None
    duplicate_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    published_at: Optional[datetime] = None
    published_test_case_id: Optional[str] = None
    discarded_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == DraftStatus.DRAFT


class AiGenerationJob(BaseModel):
    """Metadata of one generation request."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    id: str = Field(default_factory=generate_id)
    project_id: str
    prompt: str
    group_name: Optional[str] = None
    user_account_id: Optional[str] = None
    browser_provider: str
    settings_snapshot: QASettings = Field(default_factory=QASettings)
    ai_model: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    progress_message: Optional[str] = None
    streaming_url: Optional[str] = None
    recording_url: Optional[str] = None
    draft_count: int = 0
    duplicate_count: int = 0


class TestGroup(BaseModel):
    """Named, ordered collection of test cases in a project."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    id: str = Field(default_factory=generate_id)
    project_id: str
    name: str
    test_case_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_run_at: Optional[datetime] = None
    last_run_status: GroupRunStatus = GroupRunStatus.NEVER_RUN


class DraftNotification(BaseModel):
    """Per-project unseen-drafts flag."""

    model_config = ConfigDict(extra="forbid")

    has_unseen_drafts: bool = False
    last_seen_at: Optional[datetime] = None


def _clean_group_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    if not v:
        return None
    if len(v) > 120:
        raise ValueError("group name must be at most 120 characters")
    return v


class PublishDraftsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str = Field(..., min_length=1)
    draft_ids: List[str] = Field(..., min_length=1)
    group_name: Optional[str] = None

    @field_validator("group_name")
    @classmethod
    def validate_group_name(cls, v: Optional[str]) -> Optional[str]:
        return _clean_group_name(v)


class DiscardDraftsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str = Field(..., min_length=1)
    draft_ids: List[str] = Field(..., min_length=1)


class QueueGenerationRequest(BaseModel):
    """Kick off a generation job for one project."""

    model_config = ConfigDict(extra="forbid")

    project_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1, max_length=8000)
    group_name: Optional[str] = None
    user_account_id: Optional[str] = None
    settings: Optional[QASettings] = None
    ai_model: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("group_name")
    @classmethod
    def validate_group_name(cls, v: Optional[str]) -> Optional[str]:
        return _clean_group_name(v)

    @field_validator("user_account_id")
    @classmethod
    def validate_user_account_id(cls, v: Optional[str]) -> Optional[str]:
        return normalize_account_ref(v)


@dataclass
class DedupeOutcome:
    """Classification of one generated candidate against existing coverage."""

    candidate: GeneratedTest
    status: DraftStatus
    duplicate_of_test_case_id: Optional[str] = None
    duplicate_reason: Optional[str] = None


@dataclass
class PublishOutcome:
    """Result of a publish pass over one project's drafts."""

    published_count: int
    skipped_duplicates: int
    group_id: Optional[str]
    published_test_cases: List[TestCase]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "published_count": self.published_count,
            "skipped_duplicates": self.skipped_duplicates,
            "group_id": self.group_id,
            "published_test_case_ids": [tc.id for tc in self.published_test_cases],
        }
