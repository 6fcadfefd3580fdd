"""
Draft lifecycle: publication, discard, and the unseen-drafts flag.

Every operation mutates a loaded :class:`QAState` in place; persisting it
is the caller's job. Only drafts in status ``draft`` ever transition, so
repeating a publish or discard is a no-op.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..core.logging_config import get_logger
from ..execution.models import TestCase, TestCaseStatus, utc_now
from ..state.models import QAState
from .dedup import build_signature
from .models import (
    DraftNotification,
    DraftStatus,
    GeneratedTestDraft,
    GroupRunStatus,
    PublishOutcome,
    TestGroup,
)

PUBLISH_DUPLICATE_REASON = "Duplicate skipped at publish time."


def has_unseen(drafts: List[GeneratedTestDraft], last_seen_at: Optional[datetime]) -> bool:
    """True when an active draft exists that was created after ``last_seen_at``."""
    for draft in drafts:
        if not draft.is_active:
            continue
        if last_seen_at is None or draft.created_at > last_seen_at:
            return True
    return False


class DraftLifecycle:
    """Publishes and discards AI-generated drafts for one team's state."""

    def __init__(self):
        self.logger = get_logger(__name__)

    def active_drafts(self, state: QAState, project_id: str) -> List[GeneratedTestDraft]:
        return [d for d in state.ai_drafts.get(project_id, []) if d.is_active]

    def compute_notification(self, state: QAState, project_id: str) -> DraftNotification:
        current = state.ai_draft_notifications.get(project_id) or DraftNotification()
        return DraftNotification(
            has_unseen_drafts=has_unseen(state.ai_drafts.get(project_id, []), current.last_seen_at),
            last_seen_at=current.last_seen_at,
        )

    def refresh_notification(self, state: QAState, project_id: str) -> DraftNotification:
        notification = self.compute_notification(state, project_id)
        state.ai_draft_notifications[project_id] = notification
        return notification

    def mark_seen(
        self, state: QAState, project_id: str, seen_at: Optional[datetime] = None
    ) -> DraftNotification:
        notification = DraftNotification(
            has_unseen_drafts=False, last_seen_at=seen_at or utc_now()
        )
        state.ai_draft_notifications[project_id] = notification
        state.touch()
        return notification

    def publish_drafts(
        self,
        state: QAState,
        project_id: str,
        draft_ids: List[str],
        group_name: Optional[str] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> PublishOutcome:
        """
        Turn selected drafts into test cases.

        The first draft with a given signature is published; later drafts
        with the same signature, or drafts matching an existing test, become
        ``duplicate_skipped``. Drafts not in status ``draft`` are ignored.

        Args:
            state: Team state to mutate
            project_id: Project the drafts belong to
            draft_ids: Drafts to publish
            group_name: Optional group to append new tests to
            actor_id: User recorded as the creator of new tests
            actor_name: Display name recorded with new tests

        Returns:
            PublishOutcome with counts, the group id, and the new tests
        """
        state.require_project(project_id)

        wanted = set(draft_ids)
        drafts = state.ai_drafts.get(project_id, [])
        selected = [d for d in drafts if d.id in wanted and d.is_active]

        existing_tests = state.test_cases.setdefault(project_id, [])
        seen: Dict[str, str] = {build_signature(tc): tc.id for tc in existing_tests}

        now = utc_now()
        new_tests: List[TestCase] = []

        for draft in selected:
            signature = build_signature(draft)
            if signature in seen:
                draft.status = DraftStatus.DUPLICATE_SKIPPED
                draft.duplicate_of_test_case_id = draft.duplicate_of_test_case_id or seen[signature]
                draft.duplicate_reason = draft.duplicate_reason or PUBLISH_DUPLICATE_REASON
                continue

            test_case = TestCase(
                project_id=project_id,
                title=draft.title,
                description=draft.description,
                expected_outcome=draft.expected_outcome,
                user_account_id=draft.user_account_id,
                status=TestCaseStatus.PENDING,
                created_at=now + timedelta(milliseconds=len(new_tests)),
                created_by_user_id=actor_id,
                created_by_name=actor_name,
            )
            seen[signature] = test_case.id
            new_tests.append(test_case)

            draft.status = DraftStatus.PUBLISHED
            draft.published_at = now
            draft.published_test_case_id = test_case.id

        existing_tests.extend(new_tests)

        group_id = None
        if group_name and new_tests:
            group_id = self._add_to_group(state, project_id, group_name, new_tests, now)

        project = state.require_project(project_id)
        project.test_count = len(existing_tests)

        self.refresh_notification(state, project_id)
        state.touch()

        outcome = PublishOutcome(
            published_count=len(new_tests),
            skipped_duplicates=len(selected) - len(new_tests),
            group_id=group_id,
            published_test_cases=new_tests,
        )
        self.logger.info(
            f"Published {outcome.published_count} draft(s)",
            extra={
                "metadata": {
                    "project_id": project_id,
                    "requested": len(wanted),
                    "skipped_duplicates": outcome.skipped_duplicates,
                    "group_id": group_id,
                }
            },
        )
        return outcome

    def _add_to_group(
        self,
        state: QAState,
        project_id: str,
        group_name: str,
        new_tests: List[TestCase],
        created_at: datetime,
    ) -> str:
        groups = state.test_groups.setdefault(project_id, [])
        wanted = group_name.strip().lower()
        new_ids = [tc.id for tc in new_tests]

        for group in groups:
            if group.name.strip().lower() == wanted:
                group.test_case_ids.extend(new_ids)
                return group.id

        group = TestGroup(
            project_id=project_id,
            name=group_name.strip(),
            test_case_ids=new_ids,
            created_at=created_at,
            last_run_status=GroupRunStatus.NEVER_RUN,
        )
        groups.append(group)
        return group.id

    def discard_drafts(
        self, state: QAState, project_id: str, draft_ids: List[str]
    ) -> List[GeneratedTestDraft]:
        """Mark selected active drafts as discarded. Returns the drafts changed."""
        state.require_project(project_id)

        wanted = set(draft_ids)
        now = utc_now()
        discarded = []
        for draft in state.ai_drafts.get(project_id, []):
            if draft.id in wanted and draft.is_active:
                draft.status = DraftStatus.DISCARDED
                draft.discarded_at = now
                discarded.append(draft)

        self.refresh_notification(state, project_id)
        state.touch()

        self.logger.info(
            f"Discarded {len(discarded)} draft(s)",
            extra={"metadata": {"project_id": project_id, "requested": len(wanted)}},
        )
        return discarded
