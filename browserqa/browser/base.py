"""
Provider contract shared by every browser automation backend.

A provider owns remote session creation, task dispatch, and teardown.
``execute_test`` and ``login_with_profile`` never raise for provider-side
failures: they report them in the returned result so a batch keeps going.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from ..core.config import Config
from ..core.exceptions import ConfigurationError, ProviderError
from .http import ProviderHTTPClient
from .models import (
    AuthSessionInput,
    AuthSessionResult,
    BrowserExecutionInput,
    BrowserExecutionResult,
    ExecutionStatus,
    ProviderCallbacks,
    QASettings,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 50
LOGIN_MAX_STEPS = 30
VERIFICATION_MAX_STEPS = 10

VERDICT_INSTRUCTIONS = [
    "Return ONLY a valid JSON object with this exact shape:",
    '{ "success": true/false, "reason": "short factual explanation" }',
    "Do not include any extra text before or after the JSON.",
]

ClientFactory = Callable[[str], ProviderHTTPClient]


def build_execution_task(url: str, task: str) -> str:
    return f"Navigate to {url} and then: {task}"


def build_login_task(website_url: str, email: str, password: str) -> str:
    return "\n".join(
        [
            f"Navigate to {website_url} and log in with these credentials:",
            f"Email: {email}",
            f"Password: {password}",
            "",
            "Perform the login flow and verify the user is logged in.",
            *VERDICT_INSTRUCTIONS,
        ]
    )


def build_verification_task(expected_outcome: Optional[str]) -> str:
    """Follow-up task that only checks the expected outcome on the current page."""
    return "\n".join(
        [
            "Do NOT navigate away from the current page unless necessary for verification.",
            "Verify whether the expected outcome is true right now.",
            "",
            f"Expected outcome: {expected_outcome or 'Test should complete successfully'}",
            "",
            *VERDICT_INSTRUCTIONS,
        ]
    )


def error_result(message: str, **kwargs: Any) -> BrowserExecutionResult:
    return BrowserExecutionResult(status=ExecutionStatus.ERROR, error=message, **kwargs)


class BrowserProvider(ABC):
    """Uniform capability surface over one remote automation backend."""

    provider_id: str = ""
    display_name: str = ""
    api_key_env: str = ""

    def __init__(
        self,
        config: Optional[Config] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config or Config()
        self._client_factory = client_factory or self._default_client

    @abstractmethod
    def _default_client(self, api_key: str) -> ProviderHTTPClient:
        """Create an HTTP client authenticated with ``api_key``."""

    @abstractmethod
    def _config_api_key(self) -> Optional[str]:
        """API key from process configuration, used when settings carry none."""

    @abstractmethod
    def _settings_api_key(self, settings: QASettings) -> Optional[str]:
        """API key stored in per-team settings."""

    @abstractmethod
    async def execute_test(
        self,
        execution: BrowserExecutionInput,
        callbacks: Optional[ProviderCallbacks] = None,
    ) -> BrowserExecutionResult:
        """Run one natural-language task in one fresh remote session."""

    @abstractmethod
    async def login_with_profile(self, auth: AuthSessionInput) -> AuthSessionResult:
        """Log an account in and persist the session into a provider profile."""

    @abstractmethod
    async def delete_profile_with_key(self, api_key: str, profile_id: str) -> None:
        """Delete ``profile_id`` remotely."""

    def resolve_api_key(self, settings: QASettings) -> Optional[str]:
        key = (self._settings_api_key(settings) or "").strip()
        if key:
            return key
        return self._config_api_key() or None

    def missing_key_message(self) -> str:
        return (
            f"{self.display_name} API key is required. "
            f"Add it in Settings or set {self.api_key_env}."
        )

    async def delete_profile(self, profile_id: str, settings: QASettings) -> None:
        """
        Delete a persisted browser profile.

        A profile that is already gone counts as deleted.

        Raises:
            ConfigurationError: If no API key is available
            ProviderError: If the provider rejects the deletion
        """
        api_key = self.resolve_api_key(settings)
        if not api_key:
            raise ConfigurationError(
                self.missing_key_message(),
                provider=self.provider_id,
                setting=self.api_key_env,
            )
        try:
            await self.delete_profile_with_key(api_key, profile_id)
        except ProviderError as e:
            if e.status_code == 404:
                logger.info(
                    f"Profile {profile_id} already deleted",
                    extra={"metadata": {"provider": self.provider_id}},
                )
                return
            raise

    async def best_effort(self, action: Callable[[], Awaitable[Any]], description: str) -> None:
        """Run a cleanup step, logging and swallowing any failure."""
        try:
            await action()
        except Exception as e:
            logger.debug(
                f"Cleanup step failed: {description}",
                extra={"metadata": {"provider": self.provider_id, "error": str(e)}},
            )

    async def poll_until_finished(
        self,
        fetch: Callable[[], Awaitable[Dict[str, Any]]],
        is_finished: Callable[[Dict[str, Any]], bool],
        task_id: str,
        on_timeout: Optional[Callable[[], Awaitable[Any]]] = None,
        on_update: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
    ) -> Dict[str, Any]:
        """
        Poll ``fetch`` until ``is_finished`` accepts the payload.

        Raises:
            ProviderError: If the configured poll timeout elapses first
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        while True:
            payload = await fetch() or {}
            if on_update is not None:
                await on_update(payload)
            if is_finished(payload):
                return payload

            if loop.time() - started > self.config.provider_poll_timeout:
                if on_timeout is not None:
                    await self.best_effort(on_timeout, f"stop timed out task {task_id}")
                raise ProviderError(
                    f"{self.display_name} task {task_id} timed out after "
                    f"{int(self.config.provider_poll_timeout)}s.",
                    provider=self.provider_id,
                )

            await asyncio.sleep(self.config.provider_poll_interval)
