"""
Shared team state: projects, tests, accounts, and the AI draft pipeline.

All collections except projects are keyed by project id.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..browser.models import (
    BrowserProviderId,
    ExecutionCredentials,
    ProviderApiKeys,
    QASettings,
)
from ..core.exceptions import NotFoundError
from ..execution.models import TestCase, generate_id, utc_now
from ..generation.models import (
    AiGenerationJob,
    DraftNotification,
    GeneratedTestDraft,
    TestGroup,
)


class ProfileStatus(str, Enum):
    NONE = "none"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class ProviderProfile(BaseModel):
    """A persisted browser identity on one provider."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    profile_id: Optional[str] = None
    status: ProfileStatus = ProfileStatus.NONE
    last_authenticated_at: Optional[datetime] = None


class ProviderProfiles(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hyperbrowser: Optional[ProviderProfile] = None
    browser_use_cloud: Optional[ProviderProfile] = None

    @staticmethod
    def slot_for(provider_id: str) -> str:
        """Hyperbrowser variants share one profile namespace."""
        if provider_id == BrowserProviderId.BROWSER_USE_CLOUD.value:
            return "browser_use_cloud"
        return "hyperbrowser"

    def get(self, provider_id: str) -> Optional[ProviderProfile]:
        return getattr(self, self.slot_for(provider_id))

    def set(self, provider_id: str, profile: Optional[ProviderProfile]) -> None:
        setattr(self, self.slot_for(provider_id), profile)


class UserAccount(BaseModel):
    """Shared test credential for a project."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=generate_id)
    project_id: str
    label: str = ""
    email: str
    password: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    provider_profiles: ProviderProfiles = Field(default_factory=ProviderProfiles)

    def profile_id_for(self, provider_id: str) -> Optional[str]:
        profile = self.provider_profiles.get(provider_id)
        return profile.profile_id if profile else None

    def credentials_for(self, provider_id: str) -> ExecutionCredentials:
        return ExecutionCredentials(
            email=self.email,
            password=self.password,
            profile_id=self.profile_id_for(provider_id),
            metadata=dict(self.metadata),
        )


class Project(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=generate_id)
    name: str
    website_url: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    last_run_status: Optional[str] = None
    last_run_at: Optional[datetime] = None
    test_count: int = 0


class QAState(BaseModel):
    """Everything persisted for one team."""

    model_config = ConfigDict(extra="forbid")

    projects: List[Project] = Field(default_factory=list)
    test_cases: Dict[str, List[TestCase]] = Field(default_factory=dict)
    test_groups: Dict[str, List[TestGroup]] = Field(default_factory=dict)
    user_accounts: Dict[str, List[UserAccount]] = Field(default_factory=dict)
    ai_generation_jobs: Dict[str, List[AiGenerationJob]] = Field(default_factory=dict)
    ai_drafts: Dict[str, List[GeneratedTestDraft]] = Field(default_factory=dict)
    ai_draft_notifications: Dict[str, DraftNotification] = Field(default_factory=dict)
    settings: QASettings = Field(default_factory=QASettings)
    last_updated: datetime = Field(default_factory=utc_now)

    def get_project(self, project_id: str) -> Optional[Project]:
        for project in self.projects:
            if project.id == project_id:
                return project
        return None

    def require_project(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise NotFoundError("Project not found.", resource_type="project", resource_id=project_id)
        return project

    def find_account(self, account_id: str) -> Optional[UserAccount]:
        for accounts in self.user_accounts.values():
            for account in accounts:
                if account.id == account_id:
                    return account
        return None

    def account_map(
        self,
        project_ids: Iterable[Optional[str]],
        provider_id: str,
    ) -> Dict[str, ExecutionCredentials]:
        """Credentials of every account in the given projects, for one provider."""
        wanted = {pid for pid in project_ids if pid}
        accounts: Dict[str, ExecutionCredentials] = {}
        for project_id, project_accounts in self.user_accounts.items():
            if wanted and project_id not in wanted:
                continue
            for account in project_accounts:
                accounts[account.id] = account.credentials_for(provider_id)
        return accounts

    def touch(self) -> None:
        self.last_updated = utc_now()

    def sanitized_for_storage(self) -> "QAState":
        """Copy with provider API keys removed from the settings."""
        settings = self.settings.model_copy(update={"provider_api_keys": ProviderApiKeys()})
        return self.model_copy(update={"settings": settings})
