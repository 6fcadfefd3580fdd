"""
Pytest configuration and shared fixtures for browserqa tests.

Provides an isolated configuration, fake provider HTTP clients, a scriptable
fake browser provider, and sample team state.
"""

import asyncio
import os
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import patch

import pytest

from browserqa.browser.base import BrowserProvider
from browserqa.browser.models import (
    AuthSessionInput,
    AuthSessionResult,
    BrowserExecutionInput,
    BrowserExecutionResult,
    BrowserExecutionVerdict,
    BrowserProviderId,
    ExecutionStatus,
    ProviderCallbacks,
    QASettings,
)
from browserqa.browser.registry import ProviderRegistry
from browserqa.core.config import Config
from browserqa.execution.account_lock import AccountLock
from browserqa.execution.models import TestCase
from browserqa.state.models import Project, QAState, UserAccount
from browserqa.state.store import InMemoryStateStore


class FakeHTTPClient:
    """
    Stand-in for ProviderHTTPClient.

    Routes map ``(method, path)`` to a value, a list of values consumed in
    order (the last one repeats), a callable taking the JSON body, or an
    exception to raise. Unrouted calls return None.
    """

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes = dict(routes or {})
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.closed = False

    async def request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append((method, path, json_body))
        handler = self.routes.get((method, path))
        if isinstance(handler, list):
            value = handler.pop(0) if len(handler) > 1 else handler[0]
        elif callable(handler):
            value = handler(json_body)
        else:
            value = handler
        if isinstance(value, Exception):
            raise value
        return value

    async def close(self) -> None:
        self.closed = True

    def called(self, method: str, path: str) -> bool:
        return any(m == method and p == path for m, p, _ in self.calls)

    def body_of(self, method: str, path: str) -> Optional[Dict[str, Any]]:
        for m, p, body in self.calls:
            if m == method and p == path:
                return body
        return None


def passed_result(reason: str = "Everything worked.", **kwargs: Any) -> BrowserExecutionResult:
    return BrowserExecutionResult(
        status=ExecutionStatus.COMPLETED,
        verdict=BrowserExecutionVerdict(success=True, reason=reason),
        **kwargs,
    )


def failed_result(reason: str = "Button was missing.") -> BrowserExecutionResult:
    return BrowserExecutionResult(
        status=ExecutionStatus.FAILED,
        verdict=BrowserExecutionVerdict(success=False, reason=reason),
    )


class FakeProvider(BrowserProvider):
    """
    Scriptable provider that records concurrency.

    ``outcomes`` maps a marker found in the task text to a result or an
    exception; tasks without a marker pass.
    """

    provider_id = BrowserProviderId.HYPERBROWSER_BROWSER_USE.value
    display_name = "Fake"
    api_key_env = "FAKE_API_KEY"

    def __init__(self, config: Optional[Config] = None, delay: float = 0.0):
        super().__init__(config)
        self.delay = delay
        self.outcomes: Dict[str, Any] = {}
        self.executions: List[BrowserExecutionInput] = []
        self.active = 0
        self.max_active = 0
        self.active_by_email: Dict[str, int] = defaultdict(int)
        self.account_overlaps = 0
        self.login_result = AuthSessionResult(success=True, profile_id="profile-new")
        self.logins: List[AuthSessionInput] = []
        self.deleted_profiles: List[str] = []
        self.release = asyncio.Event()
        self.release.set()

    def _default_client(self, api_key: str):
        raise AssertionError("FakeProvider never opens HTTP clients")

    def _config_api_key(self) -> Optional[str]:
        return "fake-key"

    def _settings_api_key(self, settings: QASettings) -> Optional[str]:
        return None

    async def execute_test(
        self,
        execution: BrowserExecutionInput,
        callbacks: Optional[ProviderCallbacks] = None,
    ) -> BrowserExecutionResult:
        callbacks = callbacks or ProviderCallbacks()
        self.executions.append(execution)
        email = execution.credentials.email if execution.credentials else None

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        if email:
            self.active_by_email[email] += 1
            if self.active_by_email[email] > 1:
                self.account_overlaps += 1

        try:
            await callbacks.task_created(f"task-{len(self.executions)}", "session-1")
            await callbacks.live_url("https://live.example/session-1", None)
            await callbacks.progress(1, 50)
            await asyncio.sleep(self.delay)
            await self.release.wait()

            for marker, outcome in self.outcomes.items():
                if marker in execution.task:
                    if isinstance(outcome, Exception):
                        raise outcome
                    return outcome
            return passed_result()
        finally:
            self.active -= 1
            if email:
                self.active_by_email[email] -= 1

    async def login_with_profile(self, auth: AuthSessionInput) -> AuthSessionResult:
        self.logins.append(auth)
        return self.login_result

    async def delete_profile_with_key(self, api_key: str, profile_id: str) -> None:
        self.deleted_profiles.append(profile_id)


@pytest.fixture
def config(tmp_path):
    """Isolated configuration with fast polling and no inherited environment."""
    with patch.dict(os.environ, {}, clear=True):
        yield Config(
            hyperbrowser_api_key="hb-key",
            browser_use_api_key="bu-key",
            provider_poll_interval=0,
            provider_poll_timeout=5,
            account_poll_interval=0.01,
            account_wait_timeout=1.0,
            state_dir=tmp_path / "state",
            logs_dir=tmp_path / "logs",
        )


@pytest.fixture
def fake_client_factory() -> Callable[..., Callable[[str], FakeHTTPClient]]:
    """Build a client factory that hands out one FakeHTTPClient and records the key."""

    def build(client: FakeHTTPClient, keys: Optional[List[str]] = None):
        def factory(api_key: str) -> FakeHTTPClient:
            if keys is not None:
                keys.append(api_key)
            return client

        return factory

    return build


@pytest.fixture
def fake_provider(config):
    return FakeProvider(config)


@pytest.fixture
def providers(config, fake_provider):
    """Registry whose default provider is the fake."""
    registry = ProviderRegistry(config)
    registry.register(fake_provider)
    return registry


@pytest.fixture
def account_lock():
    return AccountLock()


@pytest.fixture
def project():
    return Project(id="proj-1", name="Shop", website_url="https://shop.example")


@pytest.fixture
def accounts():
    return [
        UserAccount(id="acct-1", project_id="proj-1", label="Admin", email="admin@shop.example", password="pw-1"),
        UserAccount(id="acct-2", project_id="proj-1", label="Buyer", email="buyer@shop.example", password="pw-2"),
    ]


@pytest.fixture
def make_test_case():
    """Factory for test cases; the title doubles as a marker in the task text."""

    def build(title: str, account: Optional[str] = None, **kwargs: Any) -> TestCase:
        return TestCase(
            id=kwargs.pop("id", f"tc-{title.lower().replace(' ', '-')}"),
            project_id=kwargs.pop("project_id", "proj-1"),
            title=title,
            description=kwargs.pop("description", f"Check {title}"),
            expected_outcome=kwargs.pop("expected_outcome", f"{title} works"),
            user_account_id=account,
            **kwargs,
        )

    return build


@pytest.fixture
def qa_state(project, accounts):
    return QAState(
        projects=[project],
        user_accounts={project.id: accounts},
    )


@pytest.fixture
def store(qa_state):
    return InMemoryStateStore({"team-1": qa_state})
