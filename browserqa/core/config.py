"""
Configuration management for browserqa.

Handles environment variables, defaults, optional YAML config files, and
configuration validation for all browserqa components.
"""

import os
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARN", "WARNING", "ERROR"]
VALID_LOG_FORMATS = ["text", "json"]

DEFAULT_HYPERBROWSER_MODEL = "gemini-2.5-flash"
DEFAULT_BROWSER_USE_CLOUD_MODEL = "browser-use-llm"
DEFAULT_AI_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_AI_MODEL = "openai/gpt-4o-mini"


def _env_first(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None


@dataclass
class Config:
    """Configuration class for browserqa with environment variable support."""

    # Environment detection
    ci_mode: bool = field(default=False)

    # Logging configuration
    log_level: str = field(default="INFO")
    log_format: str = field(default="text")

    # Provider credentials; per-team settings take precedence over these
    hyperbrowser_api_key: Optional[str] = field(default=None)
    browser_use_api_key: Optional[str] = field(default=None)
    hyperbrowser_model: Optional[str] = field(default=None)
    browser_use_cloud_model: Optional[str] = field(default=None)

    # Text generation collaborator (OpenAI-compatible endpoint)
    ai_api_key: Optional[str] = field(default=None)
    ai_base_url: str = field(default=DEFAULT_AI_BASE_URL)
    ai_model: str = field(default=DEFAULT_AI_MODEL)

    # Polling and scheduling, in seconds
    provider_poll_interval: float = field(default=2.0)
    provider_poll_timeout: float = field(default=300.0)
    account_poll_interval: float = field(default=0.35)
    account_wait_timeout: float = field(default=600.0)
    stale_job_seconds: float = field(default=600.0)

    # Execution defaults
    default_parallel_limit: int = field(default=3)
    default_max_steps: int = field(default=50)

    # Directory paths
    state_dir: Path = field(default_factory=lambda: Path.cwd() / ".browserqa" / "state")
    logs_dir: Path = field(default_factory=lambda: Path.cwd() / ".browserqa" / "logs")

    def __post_init__(self):
        """Apply environment overrides without clobbering explicit constructor args."""
        if os.getenv("CI", "").lower() == "true" and self.ci_mode is False:
            self.ci_mode = True

        log_env = os.getenv("BROWSERQA_LOG_LEVEL")
        if log_env:
            self.log_level = log_env
        self.log_level = self.log_level.upper()
        if self.log_level == "WARN":
            self.log_level = "WARNING"
        if self.log_level not in VALID_LOG_LEVELS:
            self.log_level = "INFO"

        format_env = os.getenv("BROWSERQA_LOG_FORMAT")
        if format_env:
            self.log_format = format_env.lower()
        elif self.ci_mode and self.log_format == "text":
            self.log_format = "json"

        if not self.hyperbrowser_api_key:
            self.hyperbrowser_api_key = _env_first("HYPERBROWSER_API_KEY")
        if not self.browser_use_api_key:
            self.browser_use_api_key = _env_first("BROWSER_USE_API_KEY")
        if not self.hyperbrowser_model:
            self.hyperbrowser_model = (
                _env_first("HYPERBROWSER_MODEL", "HYPERBROWSER_AGENT_MODEL")
                or DEFAULT_HYPERBROWSER_MODEL
            )
        if not self.browser_use_cloud_model:
            self.browser_use_cloud_model = (
                _env_first("BROWSER_USE_CLOUD_MODEL", "BROWSER_USE_MODEL")
                or DEFAULT_BROWSER_USE_CLOUD_MODEL
            )
        if not self.ai_api_key:
            self.ai_api_key = _env_first("OPENROUTER_API_KEY")

        base_url_env = _env_first("BROWSERQA_AI_BASE_URL")
        if base_url_env:
            self.ai_base_url = base_url_env
        model_env = _env_first("BROWSERQA_AI_MODEL")
        if model_env:
            self.ai_model = model_env

        state_env = _env_first("BROWSERQA_STATE_DIR")
        if state_env:
            self.state_dir = Path(state_env)
        self.state_dir = Path(self.state_dir)
        self.logs_dir = Path(self.logs_dir)

    @property
    def is_ci_mode(self) -> bool:
        """Check if running in CI environment."""
        return self.ci_mode

    @property
    def debug_enabled(self) -> bool:
        """Check if debug logging is enabled."""
        return self.log_level == "DEBUG"

    def get_log_file_path(self) -> Path:
        """Get the main log file path, creating the logs directory."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self.logs_dir / "browserqa.log"

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for logging. Secrets are reported as presence flags."""
        return {
            "ci_mode": self.ci_mode,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "hyperbrowser_api_key_set": bool(self.hyperbrowser_api_key),
            "browser_use_api_key_set": bool(self.browser_use_api_key),
            "ai_api_key_set": bool(self.ai_api_key),
            "hyperbrowser_model": self.hyperbrowser_model,
            "browser_use_cloud_model": self.browser_use_cloud_model,
            "ai_base_url": self.ai_base_url,
            "ai_model": self.ai_model,
            "provider_poll_interval": self.provider_poll_interval,
            "provider_poll_timeout": self.provider_poll_timeout,
            "account_poll_interval": self.account_poll_interval,
            "account_wait_timeout": self.account_wait_timeout,
            "stale_job_seconds": self.stale_job_seconds,
            "default_parallel_limit": self.default_parallel_limit,
            "default_max_steps": self.default_max_steps,
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
        }

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        return cls()

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Config":
        """
        Create configuration from a YAML file.

        Unknown keys are rejected. Environment variables still fill any
        credential the file leaves empty.
        """
        from .exceptions import ValidationError

        config_path = Path(path)
        if not config_path.exists():
            raise ValidationError(
                f"Configuration file not found: {config_path}",
                validation_type="config",
                violations=[f"missing file {config_path}"],
            )

        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValidationError(
                "Configuration file must contain a mapping",
                validation_type="config",
                violations=["top-level value is not a mapping"],
            )

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                validation_type="config",
                violations=[f"unknown key {key}" for key in unknown],
            )

        for key in ("state_dir", "logs_dir"):
            if key in data and data[key] is not None:
                data[key] = Path(data[key])

        return cls(**data)

    def validate(self) -> None:
        """Validate configuration and raise ValidationError if invalid."""
        from .exceptions import ValidationError

        errors = []

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(
                f"Invalid log level: {self.log_level}. Must be one of {VALID_LOG_LEVELS}"
            )

        if self.log_format not in VALID_LOG_FORMATS:
            errors.append(
                f"Invalid log format: {self.log_format}. Must be one of {VALID_LOG_FORMATS}"
            )

        if not 1 <= self.default_parallel_limit <= 10:
            errors.append("default_parallel_limit must be between 1 and 10")

        if self.default_max_steps <= 0:
            errors.append("default_max_steps must be positive")

        for name in (
            "provider_poll_interval",
            "account_poll_interval",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative")

        for name in (
            "provider_poll_timeout",
            "account_wait_timeout",
            "stale_job_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if not self.hyperbrowser_api_key and not self.browser_use_api_key:
            errors.append(
                "No provider API key configured; set HYPERBROWSER_API_KEY or BROWSER_USE_API_KEY"
            )

        if errors:
            message = "Configuration validation failed: " + "; ".join(errors)
            raise ValidationError(
                message,
                validation_type="config",
                violations=errors,
            )
