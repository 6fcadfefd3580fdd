"""
Hyperbrowser-backed providers.

Both variants share session and profile management on the Hyperbrowser REST
API and differ only in the agent that runs inside the session: Browser-Use
with a structured output schema, or HyperAgent with a verification follow-up
when its first answer carries no verdict.
"""

import logging
from typing import Any, Dict, Optional

from ..core.exceptions import ProviderError
from .base import (
    BrowserProvider,
    DEFAULT_MAX_STEPS,
    LOGIN_MAX_STEPS,
    VERIFICATION_MAX_STEPS,
    build_execution_task,
    build_login_task,
    build_verification_task,
    error_result,
)
from .http import ProviderHTTPClient
from .models import (
    AuthSessionInput,
    AuthSessionResult,
    BrowserExecutionInput,
    BrowserExecutionResult,
    BrowserProfile,
    BrowserProviderId,
    ExecutionStatus,
    ProviderCallbacks,
    QASettings,
)
from .verdict import VERDICT_JSON_SCHEMA, parse_verdict

logger = logging.getLogger(__name__)

HYPERBROWSER_API_BASE = "https://api.hyperbrowser.ai/api"
TERMINAL_JOB_STATUSES = {"completed", "failed", "stopped"}


class HyperbrowserProvider(BrowserProvider):
    """Session, profile, and agent-job plumbing shared by the Hyperbrowser variants."""

    display_name = "Hyperbrowser"
    api_key_env = "HYPERBROWSER_API_KEY"
    agent_path = ""
    agent_name = ""
    structured_output = False

    def _default_client(self, api_key: str) -> ProviderHTTPClient:
        return ProviderHTTPClient(
            self.provider_id,
            HYPERBROWSER_API_BASE,
            headers={"x-api-key": api_key},
        )

    def _config_api_key(self) -> Optional[str]:
        return self.config.hyperbrowser_api_key

    def _settings_api_key(self, settings: QASettings) -> Optional[str]:
        return settings.provider_api_keys.hyperbrowser

    def resolve_model(self, settings: QASettings) -> str:
        return (settings.hyperbrowser_model or "").strip() or self.config.hyperbrowser_model

    async def create_session(
        self,
        client: ProviderHTTPClient,
        settings: QASettings,
        use_stealth: bool,
        profile_id: Optional[str] = None,
        persist_profile_changes: bool = False,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "useStealth": use_stealth,
            "useProxy": settings.proxy_enabled,
            "enableWebRecording": True,
        }
        if settings.proxy_country:
            body["proxyCountry"] = settings.proxy_country
        if profile_id:
            body["profile"] = {"id": profile_id, "persistChanges": persist_profile_changes}
        return await client.request("POST", "/session", body) or {}

    async def stop_session(self, client: ProviderHTTPClient, session_id: str) -> None:
        await client.request("PUT", f"/session/{session_id}/stop")

    async def run_agent(
        self,
        client: ProviderHTTPClient,
        task: str,
        session_id: str,
        max_steps: int,
        llm: str,
        callbacks: Optional[ProviderCallbacks] = None,
    ) -> Dict[str, Any]:
        """Start an agent job on ``session_id`` and wait for its terminal state."""
        params: Dict[str, Any] = {
            "task": task,
            "sessionId": session_id,
            "maxSteps": max_steps,
            "llm": llm,
        }
        if self.structured_output:
            params["validateOutput"] = True
            params["outputModelSchema"] = VERDICT_JSON_SCHEMA

        started = await client.request("POST", f"/task/{self.agent_path}", params) or {}
        job_id = started.get("jobId") or started.get("id")
        if not job_id:
            raise ProviderError(
                f"{self.agent_name} did not return a job id.",
                provider=self.provider_id,
            )

        if callbacks is not None:
            await callbacks.task_created(job_id, session_id)

        async def report_progress(job: Dict[str, Any]) -> None:
            steps = (job.get("data") or {}).get("steps")
            if callbacks is not None and isinstance(steps, list) and steps:
                await callbacks.progress(len(steps), max_steps)

        return await self.poll_until_finished(
            lambda: client.request("GET", f"/task/{self.agent_path}/{job_id}"),
            lambda job: job.get("status") in TERMINAL_JOB_STATUSES,
            job_id,
            on_timeout=lambda: client.request("PUT", f"/task/{self.agent_path}/{job_id}/stop"),
            on_update=report_progress,
        )

    async def evaluate(
        self,
        client: ProviderHTTPClient,
        execution: BrowserExecutionInput,
        session: Dict[str, Any],
        llm: str,
        callbacks: ProviderCallbacks,
    ) -> BrowserExecutionResult:
        """Run the task inside an open session and turn the job into a result."""
        job = await self.run_agent(
            client,
            build_execution_task(execution.url, execution.task),
            session["id"],
            execution.max_steps or self.config.default_max_steps or DEFAULT_MAX_STEPS,
            llm,
            callbacks,
        )
        final_result = (job.get("data") or {}).get("finalResult")
        verdict = parse_verdict(final_result)
        live_url = session.get("liveUrl") or None
        recording_url = session.get("sessionUrl") or None

        if verdict is None:
            return error_result(
                job.get("error") or f"{self.agent_name} did not return a valid verdict payload.",
                live_url=live_url,
                recording_url=recording_url,
                raw_provider_data={"status": job.get("status"), "finalResult": final_result},
            )

        return BrowserExecutionResult(
            status=ExecutionStatus.COMPLETED if verdict.success else ExecutionStatus.FAILED,
            verdict=verdict,
            live_url=live_url,
            recording_url=recording_url,
            raw_provider_data={
                "status": job.get("status"),
                "finalResult": final_result,
                "metadata": job.get("metadata"),
            },
        )

    async def execute_test(
        self,
        execution: BrowserExecutionInput,
        callbacks: Optional[ProviderCallbacks] = None,
    ) -> BrowserExecutionResult:
        callbacks = callbacks or ProviderCallbacks()
        settings = execution.settings
        api_key = self.resolve_api_key(settings)
        if not api_key:
            return error_result(self.missing_key_message())

        client = self._client_factory(api_key)
        session_id: Optional[str] = None
        recording_url: Optional[str] = None

        try:
            session = await self.create_session(
                client,
                settings,
                use_stealth=settings.browser_profile == BrowserProfile.STEALTH,
                profile_id=execution.credentials.profile_id if execution.credentials else None,
                persist_profile_changes=False,
            )
            session_id = session.get("id")
            if not session_id:
                raise ProviderError("Hyperbrowser did not return a session id.", provider=self.provider_id)
            recording_url = session.get("sessionUrl") or None

            if session.get("liveUrl"):
                await callbacks.live_url(session["liveUrl"], recording_url)

            return await self.evaluate(client, execution, session, self.resolve_model(settings), callbacks)
        except Exception as e:
            logger.warning(
                f"{self.agent_name} execution failed: {e}",
                extra={"metadata": {"provider": self.provider_id, "session_id": session_id}},
            )
            return error_result(str(e), recording_url=recording_url)
        finally:
            if session_id:
                await self.best_effort(
                    lambda: self.stop_session(client, session_id),
                    f"stop session {session_id}",
                )
            await client.close()

    async def login_with_profile(self, auth: AuthSessionInput) -> AuthSessionResult:
        settings = auth.settings
        api_key = self.resolve_api_key(settings)
        if not api_key:
            return AuthSessionResult(success=False, error=self.missing_key_message())

        client = self._client_factory(api_key)
        created_profile_id: Optional[str] = None
        session_id: Optional[str] = None

        try:
            profile_id = auth.existing_profile_id
            if not profile_id:
                profile = await client.request("POST", "/profile", {"name": f"qa-{auth.email}"}) or {}
                profile_id = profile.get("id")
                created_profile_id = profile_id
                if not profile_id:
                    raise ProviderError("Hyperbrowser did not return a profile id.", provider=self.provider_id)

            session = await self.create_session(
                client,
                settings,
                use_stealth=settings.browser_profile != BrowserProfile.STANDARD,
                profile_id=profile_id,
                persist_profile_changes=True,
            )
            session_id = session.get("id")
            if not session_id:
                raise ProviderError("Hyperbrowser did not return a session id.", provider=self.provider_id)

            job = await self.run_agent(
                client,
                build_login_task(auth.website_url, auth.email, auth.password),
                session_id,
                LOGIN_MAX_STEPS,
                self.resolve_model(settings),
            )
            verdict = parse_verdict((job.get("data") or {}).get("finalResult"))

            if verdict is None or not verdict.success:
                if created_profile_id:
                    await self.best_effort(
                        lambda: self.delete_profile_with_key(api_key, created_profile_id),
                        f"delete profile {created_profile_id}",
                    )
                return AuthSessionResult(
                    success=False,
                    error=(verdict.reason if verdict else None)
                    or job.get("error")
                    or "Login did not succeed.",
                )

            return AuthSessionResult(success=True, profile_id=profile_id)
        except Exception as e:
            logger.warning(
                f"{self.agent_name} login failed: {e}",
                extra={"metadata": {"provider": self.provider_id}},
            )
            if created_profile_id:
                await self.best_effort(
                    lambda: self.delete_profile_with_key(api_key, created_profile_id),
                    f"delete profile {created_profile_id}",
                )
            return AuthSessionResult(success=False, error=str(e))
        finally:
            if session_id:
                await self.best_effort(
                    lambda: self.stop_session(client, session_id),
                    f"stop session {session_id}",
                )
            await client.close()

    async def delete_profile_with_key(self, api_key: str, profile_id: str) -> None:
        client = self._client_factory(api_key)
        try:
            await client.request("DELETE", f"/profile/{profile_id}")
        finally:
            await client.close()


class HyperbrowserBrowserUseProvider(HyperbrowserProvider):
    """Browser-Use agent with schema-validated output."""

    provider_id = BrowserProviderId.HYPERBROWSER_BROWSER_USE.value
    agent_path = "browser-use"
    agent_name = "Browser-Use"
    structured_output = True


class HyperbrowserHyperAgentProvider(HyperbrowserProvider):
    """HyperAgent, with a short verification task when no verdict comes back."""

    provider_id = BrowserProviderId.HYPERBROWSER_HYPERAGENT.value
    agent_path = "hyper-agent"
    agent_name = "HyperAgent"

    async def evaluate(
        self,
        client: ProviderHTTPClient,
        execution: BrowserExecutionInput,
        session: Dict[str, Any],
        llm: str,
        callbacks: ProviderCallbacks,
    ) -> BrowserExecutionResult:
        job = await self.run_agent(
            client,
            build_execution_task(execution.url, execution.task),
            session["id"],
            execution.max_steps or self.config.default_max_steps or DEFAULT_MAX_STEPS,
            llm,
            callbacks,
        )
        initial_final = (job.get("data") or {}).get("finalResult")
        verdict = parse_verdict(initial_final)
        live_url = session.get("liveUrl") or None
        recording_url = session.get("sessionUrl") or None

        if verdict is not None:
            return BrowserExecutionResult(
                status=ExecutionStatus.COMPLETED if verdict.success else ExecutionStatus.FAILED,
                verdict=verdict,
                live_url=live_url,
                recording_url=recording_url,
                raw_provider_data={"finalResult": initial_final, "metadata": job.get("metadata")},
            )

        logger.info(
            "HyperAgent returned no verdict, running verification task",
            extra={"metadata": {"provider": self.provider_id, "session_id": session["id"]}},
        )
        verify_job = await self.run_agent(
            client,
            build_verification_task(execution.expected_outcome),
            session["id"],
            VERIFICATION_MAX_STEPS,
            llm,
        )
        verify_final = (verify_job.get("data") or {}).get("finalResult")
        verdict = parse_verdict(verify_final)

        if verdict is None:
            return error_result(
                verify_job.get("error") or "HyperAgent did not return a valid verdict payload.",
                live_url=live_url,
                recording_url=recording_url,
                raw_provider_data={"initialFinal": initial_final, "verifyFinal": verify_final},
            )

        return BrowserExecutionResult(
            status=ExecutionStatus.COMPLETED if verdict.success else ExecutionStatus.FAILED,
            verdict=verdict,
            live_url=live_url,
            recording_url=recording_url,
            raw_provider_data={
                "initialFinal": initial_final,
                "verifyFinal": verify_final,
                "metadata": {
                    "initial": job.get("metadata"),
                    "verify": verify_job.get("metadata"),
                },
            },
        )
