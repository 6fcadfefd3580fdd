"""
Data models shared by every browser automation provider.

All providers accept the same settings shape and return the same
result and verdict shapes, regardless of backend.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BrowserProviderId(str, Enum):
    """Known provider discriminators."""

    HYPERBROWSER_BROWSER_USE = "hyperbrowser-browser-use"
    HYPERBROWSER_HYPERAGENT = "hyperbrowser-hyperagent"
    BROWSER_USE_CLOUD = "browser-use-cloud"


DEFAULT_BROWSER_PROVIDER = BrowserProviderId.HYPERBROWSER_BROWSER_USE.value

ProxyCountry = Literal["US", "GB", "CA", "DE", "FR", "JP", "AU"]


class BrowserProfile(str, Enum):
    """Browser fingerprint profile for remote sessions."""

    STANDARD = "standard"
    STEALTH = "stealth"


class ExecutionStatus(str, Enum):
    """Outcome category of one provider call."""

    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


class ProviderApiKeys(BaseModel):
    """Per-team provider API keys. Empty values fall back to the environment."""

    model_config = ConfigDict(extra="forbid")

    hyperbrowser: Optional[str] = None
    browser_use_cloud: Optional[str] = None


class QASettings(BaseModel):
    """Runtime settings shared by execution, login, and generation."""

    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    ai_model: Optional[str] = Field(None, description="Text generation model id")
    default_timeout: int = Field(300, ge=1, description="Per-test timeout in seconds")
    parallel_limit: int = Field(3, ge=1, le=10, description="Concurrent tests per run")
    browser_profile: BrowserProfile = Field(BrowserProfile.STANDARD)
    proxy_enabled: bool = False
    proxy_country: Optional[ProxyCountry] = None
    hyperbrowser_enabled: bool = True
    browser_provider: str = Field(DEFAULT_BROWSER_PROVIDER)
    hyperbrowser_model: Optional[str] = None
    browser_use_cloud_model: Optional[str] = None
    provider_api_keys: ProviderApiKeys = Field(default_factory=ProviderApiKeys)

    @property
    def uses_browser_use_cloud(self) -> bool:
        return self.browser_provider == BrowserProviderId.BROWSER_USE_CLOUD.value


def normalize_settings(settings: Optional[QASettings]) -> QASettings:
    """
    Resolve the effective provider for ``settings``.

    A blank provider becomes the default, and disabling Hyperbrowser forces
    the Browser Use Cloud backend.
    """
    settings = settings or QASettings()
    provider = (settings.browser_provider or "").strip() or DEFAULT_BROWSER_PROVIDER
    if not settings.hyperbrowser_enabled:
        provider = BrowserProviderId.BROWSER_USE_CLOUD.value
    return settings.model_copy(update={"browser_provider": provider})


class ExecutionCredentials(BaseModel):
    """Login material for an account-bound run."""

    model_config = ConfigDict(extra="forbid")

    email: str
    password: str
    profile_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class BrowserExecutionVerdict(BaseModel):
    """Structured pass/fail judgment extracted from agent output."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    reason: str
    extracted_data: Optional[Dict[str, Any]] = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must be a non-empty string")
        return v


class BrowserExecutionInput(BaseModel):
    """Everything a provider needs to run one task."""

    model_config = ConfigDict(extra="forbid")

    url: str
    task: str
    expected_outcome: Optional[str] = None
    settings: QASettings = Field(default_factory=QASettings)
    credentials: Optional[ExecutionCredentials] = None
    max_steps: Optional[int] = Field(None, ge=1)


class BrowserExecutionResult(BaseModel):
    """Provider outcome. ``error`` status means the automation itself broke."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    status: ExecutionStatus
    verdict: Optional[BrowserExecutionVerdict] = None
    live_url: Optional[str] = None
    recording_url: Optional[str] = None
    error: Optional[str] = None
    raw_provider_data: Optional[Any] = None


class AuthSessionInput(BaseModel):
    """Input for logging an account into a persisted browser profile."""

    model_config = ConfigDict(extra="forbid")

    email: str
    password: str
    website_url: str
    existing_profile_id: Optional[str] = None
    settings: QASettings = Field(default_factory=QASettings)


class AuthSessionResult(BaseModel):
    """Outcome of a profile login."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    profile_id: Optional[str] = None
    error: Optional[str] = None


LiveUrlCallback = Callable[[str, Optional[str]], Awaitable[None]]
TaskCreatedCallback = Callable[[str, str], Awaitable[None]]
ProgressCallback = Callable[[int, int], Awaitable[None]]


@dataclass
class ProviderCallbacks:
    """Optional hooks a provider invokes while a task is in flight."""

    on_live_url: Optional[LiveUrlCallback] = None
    on_task_created: Optional[TaskCreatedCallback] = None
    on_progress: Optional[ProgressCallback] = None

    async def live_url(self, live_url: str, recording_url: Optional[str] = None) -> None:
        if self.on_live_url is not None:
            await self.on_live_url(live_url, recording_url)

    async def task_created(self, task_id: str, session_id: str) -> None:
        if self.on_task_created is not None:
            await self.on_task_created(task_id, session_id)

    async def progress(self, step: int, total: int) -> None:
        if self.on_progress is not None:
            await self.on_progress(step, total)
