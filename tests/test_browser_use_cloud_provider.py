"""
Unit tests for the Browser Use Cloud provider.
"""

import json
from unittest.mock import AsyncMock

import pytest

from conftest import FakeHTTPClient
from browserqa.browser.browser_use_cloud import (
    BrowserUseCloudProvider,
    normalize_browser_use_model,
    rank_output_files,
)
from browserqa.browser.models import (
    AuthSessionInput,
    BrowserExecutionInput,
    ExecutionCredentials,
    ProviderCallbacks,
    QASettings,
)
from browserqa.browser.verdict import VERDICT_JSON_SCHEMA
from browserqa.core.exceptions import ProviderError

PASSING_OUTPUT = '{"success": true, "reason": "Checkout completed"}'


def _execution(**kwargs):
    return BrowserExecutionInput(url="https://shop.example", task="Buy a shoe", **kwargs)


def _task(output, status="finished", steps=2, **extra):
    return {"id": "t-1", "status": status, "output": output, "steps": [{}] * steps, **extra}


@pytest.fixture
def client():
    return FakeHTTPClient(
        {
            ("POST", "/sessions"): {"id": "s-1", "liveUrl": "https://live.example/s-1"},
            ("POST", "/tasks"): {"id": "t-1"},
            ("GET", "/tasks/t-1"): [_task(None, status="started", steps=1), _task(PASSING_OUTPUT)],
            ("POST", "/sessions/s-1/public-share"): {"shareUrl": "https://share.example/s-1"},
        }
    )


class TestHelpers:
    """Test cases for model aliases and output-file ranking."""

    def test_normalize_model(self):
        """Test alias resolution and the default model."""
        assert normalize_browser_use_model(None) == "browser-use-llm"
        assert normalize_browser_use_model("  ") == "browser-use-llm"
        assert normalize_browser_use_model("BU-2-0") == "browser-use-2.0"
        assert normalize_browser_use_model("browser_use_1.0") == "browser-use-llm"
        assert normalize_browser_use_model("gpt-4.1") == "gpt-4.1"

    def test_rank_output_files(self):
        """Test that videos rank above gifs, images, and other files."""
        files = [
            {"id": "1", "fileName": "notes.txt"},
            {"id": "2", "fileName": "shot.PNG"},
            {"id": "3", "fileName": "run.mp4"},
            {"id": "4", "fileName": "anim.gif"},
        ]

        assert [f["id"] for f in rank_output_files(files)] == ["3", "4", "2", "1"]
        assert rank_output_files(None) == []


class TestExecuteTest:
    """Test cases for BrowserUseCloudProvider.execute_test."""

    @pytest.mark.asyncio
    async def test_successful_run(self, config, client, fake_client_factory):
        """Test a passing run with a share link as the recording."""
        keys = []
        provider = BrowserUseCloudProvider(config, fake_client_factory(client, keys))
        callbacks = ProviderCallbacks(
            on_live_url=AsyncMock(), on_task_created=AsyncMock(), on_progress=AsyncMock()
        )

        result = await provider.execute_test(_execution(), callbacks)

        assert result.status == "completed"
        assert result.verdict.reason == "Checkout completed"
        assert result.live_url == "https://live.example/s-1"
        assert result.recording_url == "https://share.example/s-1"
        assert keys == ["bu-key"]

        callbacks.on_live_url.assert_awaited_once_with("https://live.example/s-1", None)
        callbacks.on_task_created.assert_awaited_once_with("t-1", "s-1")
        assert callbacks.on_progress.await_count == 2

        assert client.body_of("POST", "/sessions") == {}
        task_body = client.body_of("POST", "/tasks")
        assert task_body["task"] == "Navigate to https://shop.example and then: Buy a shoe"
        assert task_body["sessionId"] == "s-1"
        assert task_body["llm"] == "browser-use-llm"
        assert task_body["maxSteps"] == 50
        assert json.loads(task_body["structuredOutput"]) == VERDICT_JSON_SCHEMA

        assert client.body_of("PATCH", "/sessions/s-1") == {"action": "stop"}
        assert client.closed

    @pytest.mark.asyncio
    async def test_session_options_and_model(self, config, client, fake_client_factory):
        """Test profile, proxy, and model settings."""
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))
        settings = QASettings(
            browser_provider="browser-use-cloud",
            proxy_enabled=True,
            proxy_country="GB",
            browser_use_cloud_model="bu-2-0",
        )
        creds = ExecutionCredentials(email="a@x.io", password="pw", profile_id="prof-1")

        await provider.execute_test(_execution(settings=settings, credentials=creds))

        assert client.body_of("POST", "/sessions") == {"profileId": "prof-1", "proxyCountryCode": "GB"}
        assert client.body_of("POST", "/tasks")["llm"] == "browser-use-2.0"

    @pytest.mark.asyncio
    async def test_missing_profile_falls_back(self, config, client, fake_client_factory):
        """Test that a stale profile id is dropped and the session retried without it."""

        def create_session(body):
            if body.get("profileId"):
                return ProviderError("browser-use-cloud API 404: Profile not found", status_code=404)
            return {"id": "s-1"}

        client.routes[("POST", "/sessions")] = create_session
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))
        creds = ExecutionCredentials(email="a@x.io", password="pw", profile_id="stale")

        result = await provider.execute_test(_execution(credentials=creds))

        assert result.status == "completed"
        session_bodies = [body for method, path, body in client.calls if (method, path) == ("POST", "/sessions")]
        assert session_bodies == [{"profileId": "stale"}, {}]

    @pytest.mark.asyncio
    async def test_recording_falls_back_to_output_file(self, config, client, fake_client_factory):
        """Test that the best output file is used when no share link exists."""
        client.routes[("POST", "/sessions/s-1/public-share")] = ProviderError("not allowed")
        client.routes[("GET", "/sessions/s-1/public-share")] = {}
        client.routes[("GET", "/tasks/t-1")] = _task(
            PASSING_OUTPUT,
            outputFiles=[{"id": "f-1", "fileName": "shot.png"}, {"id": "f-2", "fileName": "run.mp4"}],
        )
        client.routes[("GET", "/files/tasks/t-1/output-files/f-2")] = {"downloadUrl": "https://dl.example/run.mp4"}
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        result = await provider.execute_test(_execution())

        assert result.recording_url == "https://dl.example/run.mp4"
        assert not client.called("GET", "/files/tasks/t-1/output-files/f-1")

    @pytest.mark.asyncio
    async def test_missing_verdict(self, config, client, fake_client_factory):
        """Test that output without a verdict is an error result."""
        client.routes[("GET", "/tasks/t-1")] = _task("Bought the shoe.")
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        result = await provider.execute_test(_execution())

        assert result.status == "error"
        assert result.error == "BrowserUse Cloud did not return a valid structured verdict payload."
        assert result.recording_url == "https://share.example/s-1"
        assert client.called("PATCH", "/sessions/s-1")

    @pytest.mark.asyncio
    async def test_missing_task_id(self, config, client, fake_client_factory):
        """Test that a task without an id is an error and the session is stopped."""
        client.routes[("POST", "/tasks")] = {}
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        result = await provider.execute_test(_execution())

        assert result.status == "error"
        assert result.error == "BrowserUse Cloud did not return a task id."
        assert client.called("PATCH", "/sessions/s-1")

    @pytest.mark.asyncio
    async def test_missing_api_key(self, config, client, fake_client_factory):
        """Test that a missing key is an error result."""
        config.browser_use_api_key = None
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        result = await provider.execute_test(_execution())

        assert result.status == "error"
        assert "BROWSER_USE_API_KEY" in result.error
        assert client.calls == []


class TestLoginWithProfile:
    """Test cases for BrowserUseCloudProvider.login_with_profile."""

    def _auth(self, **kwargs):
        return AuthSessionInput(
            email="buyer@shop.example", password="pw-2", website_url="https://shop.example", **kwargs
        )

    @pytest.mark.asyncio
    async def test_login_creates_profile(self, config, client, fake_client_factory):
        """Test a successful login into a new profile."""
        client.routes[("POST", "/profiles")] = {"id": "p-9"}
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        result = await provider.login_with_profile(self._auth())

        assert result.success is True
        assert result.profile_id == "p-9"
        assert client.body_of("POST", "/profiles") == {"name": "qa-buyer@shop.example"}
        assert client.body_of("POST", "/sessions") == {"profileId": "p-9"}
        assert client.body_of("POST", "/tasks")["maxSteps"] == 30
        assert client.called("DELETE", "/sessions/s-1")

    @pytest.mark.asyncio
    async def test_failed_login_deletes_created_profile(self, config, client, fake_client_factory):
        """Test that a failed login cleans up the profile it created."""
        client.routes[("POST", "/profiles")] = {"id": "p-9"}
        client.routes[("GET", "/tasks/t-1")] = _task('{"success": false, "reason": "Captcha shown"}')
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        result = await provider.login_with_profile(self._auth())

        assert result.success is False
        assert result.error == "Captcha shown"
        assert client.called("DELETE", "/profiles/p-9")

    @pytest.mark.asyncio
    async def test_stale_profile_is_replaced(self, config, client, fake_client_factory):
        """Test that an unknown existing profile is replaced with a fresh one."""

        def create_session(body):
            if body.get("profileId") == "stale":
                return ProviderError("Profile not found", status_code=404)
            return {"id": "s-1"}

        client.routes[("POST", "/sessions")] = create_session
        client.routes[("POST", "/profiles")] = {"id": "p-new"}
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        result = await provider.login_with_profile(self._auth(existing_profile_id="stale"))

        assert result.success is True
        assert result.profile_id == "p-new"

    @pytest.mark.asyncio
    async def test_delete_profile(self, config, fake_client_factory):
        """Test remote profile deletion."""
        client = FakeHTTPClient()
        provider = BrowserUseCloudProvider(config, fake_client_factory(client))

        await provider.delete_profile("p-1", QASettings())

        assert client.called("DELETE", "/profiles/p-1")
        assert client.closed
