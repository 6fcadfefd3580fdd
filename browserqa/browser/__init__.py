"""Browser automation providers, shared models, and verdict parsing."""

from .base import BrowserProvider
from .browser_use_cloud import BrowserUseCloudProvider
from .hyperbrowser import HyperbrowserBrowserUseProvider, HyperbrowserHyperAgentProvider
from .models import (
    AuthSessionInput,
    AuthSessionResult,
    BrowserExecutionInput,
    BrowserExecutionResult,
    BrowserExecutionVerdict,
    BrowserProfile,
    BrowserProviderId,
    DEFAULT_BROWSER_PROVIDER,
    ExecutionCredentials,
    ExecutionStatus,
    ProviderApiKeys,
    ProviderCallbacks,
    QASettings,
    normalize_settings,
)
from .registry import ProviderRegistry
from .verdict import VERDICT_JSON_SCHEMA, extract_json_objects, parse_verdict

__all__ = [
    "BrowserProvider",
    "BrowserUseCloudProvider",
    "HyperbrowserBrowserUseProvider",
    "HyperbrowserHyperAgentProvider",
    "AuthSessionInput",
    "AuthSessionResult",
    "BrowserExecutionInput",
    "BrowserExecutionResult",
    "BrowserExecutionVerdict",
    "BrowserProfile",
    "BrowserProviderId",
    "DEFAULT_BROWSER_PROVIDER",
    "ExecutionCredentials",
    "ExecutionStatus",
    "ProviderApiKeys",
    "ProviderCallbacks",
    "QASettings",
    "normalize_settings",
    "ProviderRegistry",
    "VERDICT_JSON_SCHEMA",
    "extract_json_objects",
    "parse_verdict",
]
