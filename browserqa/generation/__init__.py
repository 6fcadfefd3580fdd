"""
AI test generation: draft records and deduplication.

The lifecycle and job modules depend on team state, so they are imported
from their own modules (``browserqa.generation.drafts``,
``browserqa.generation.jobs``) rather than re-exported here.
"""

from .dedup import build_signature, dedupe_candidates, jaccard_similarity, normalize_text
from .models import (
    AiGenerationJob,
    DraftNotification,
    DraftStatus,
    GeneratedTest,
    GeneratedTestDraft,
    JobStatus,
    TestGroup,
)

__all__ = [
    "build_signature",
    "dedupe_candidates",
    "jaccard_similarity",
    "normalize_text",
    "AiGenerationJob",
    "DraftNotification",
    "DraftStatus",
    "GeneratedTest",
    "GeneratedTestDraft",
    "JobStatus",
    "TestGroup",
]
