"""
Signature and similarity checks for generated tests.

A signature is the normalised ``title|description|expected_outcome``
fingerprint used to detect exact duplicates. Near duplicates are detected
with token Jaccard similarity against existing test cases.
"""

import re
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from ..core.logging_config import get_logger
from .models import DedupeOutcome, DraftStatus, GeneratedTest, GeneratedTestDraft

logger = get_logger(__name__)

NEAR_DUPLICATE_THRESHOLD = 0.88
OVERLAP_THRESHOLD = 0.72

EXACT_DUPLICATE_REASON = "Exact duplicate of an existing or already-generated test."

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


class Signable(Protocol):
    title: str
    description: str
    expected_outcome: str


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, replace punctuation with spaces, and collapse whitespace."""
    text = (text or "").lower()
    text = _NON_ALNUM.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def build_signature(item: Signable) -> str:
    return "|".join(
        normalize_text(value)
        for value in (item.title, item.description, item.expected_outcome)
    )


def tokenize(text: str) -> Set[str]:
    return {token for token in normalize_text(text).split(" ") if token}


def _token_set(item: Signable) -> Set[str]:
    return tokenize(f"{item.title} {item.description} {item.expected_outcome}")


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    return intersection / union if union else 0.0


def _best_match(
    tokens: Set[str], existing: Dict[str, Set[str]]
) -> Tuple[Optional[str], float]:
    best_id: Optional[str] = None
    best_score = 0.0
    for test_id, token_set in existing.items():
        score = jaccard_similarity(tokens, token_set)
        if score > best_score:
            best_id, best_score = test_id, score
    return best_id, best_score


def dedupe_candidates(
    candidates: Iterable[GeneratedTest],
    existing_tests: Iterable[Signable],
    existing_drafts: Iterable[GeneratedTestDraft] = (),
) -> List[DedupeOutcome]:
    """
    Classify generated candidates against existing coverage.

    Exact signature matches against existing tests, active drafts, or an
    earlier candidate of the same batch are skipped. Candidates whose
    tokens overlap an existing test by at least 88% are skipped as near
    duplicates; at least 72% is kept as a draft with an overlap note.
    """
    signatures: Dict[str, str] = {}
    token_sets: Dict[str, Set[str]] = {}

    for test in existing_tests:
        signatures[build_signature(test)] = test.id
        token_sets[test.id] = _token_set(test)

    for draft in existing_drafts:
        if not draft.is_active:
            continue
        signatures.setdefault(build_signature(draft), draft.id)

    accepted: Set[str] = set()
    outcomes: List[DedupeOutcome] = []

    for candidate in candidates:
        signature = build_signature(candidate)
        if signature in signatures or signature in accepted:
            outcomes.append(
                DedupeOutcome(
                    candidate=candidate,
                    status=DraftStatus.DUPLICATE_SKIPPED,
                    duplicate_of_test_case_id=signatures.get(signature),
                    duplicate_reason=EXACT_DUPLICATE_REASON,
                )
            )
            continue

        best_id, score = _best_match(_token_set(candidate), token_sets)
        percent = round(score * 100)

        if score >= NEAR_DUPLICATE_THRESHOLD:
            outcomes.append(
                DedupeOutcome(
                    candidate=candidate,
                    status=DraftStatus.DUPLICATE_SKIPPED,
                    duplicate_of_test_case_id=best_id,
                    duplicate_reason=f"Near-duplicate of existing coverage ({percent}% similarity).",
                )
            )
            continue

        if score >= OVERLAP_THRESHOLD:
            outcome = DedupeOutcome(
                candidate=candidate,
                status=DraftStatus.DRAFT,
                duplicate_of_test_case_id=best_id,
                duplicate_reason=f"Potential overlap detected ({percent}% similarity).",
            )
        else:
            outcome = DedupeOutcome(candidate=candidate, status=DraftStatus.DRAFT)

        accepted.add(signature)
        outcomes.append(outcome)

    skipped = sum(1 for o in outcomes if o.status == DraftStatus.DUPLICATE_SKIPPED)
    logger.debug(
        "Deduplicated generated tests",
        extra={"metadata": {"candidates": len(outcomes), "duplicates": skipped}},
    )
    return outcomes
