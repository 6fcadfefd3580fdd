"""
JSON-over-HTTP client used by the remote automation providers.
"""

import asyncio
import json
import time
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..core.exceptions import ProviderError
from ..core.logging_config import log_provider_call

logger = logging.getLogger(__name__)


def _detail_text(payload: Any) -> str:
    """Render an error payload's ``detail`` field for an exception message."""
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list):
        parts = []
        for item in detail:
            if isinstance(item, dict) and isinstance(item.get("msg"), str):
                parts.append(item["msg"])
            else:
                parts.append(json.dumps(item))
        return "; ".join(parts)
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return json.dumps(payload)


class ProviderHTTPClient:
    """
    Thin aiohttp wrapper that decodes JSON and raises ProviderError on failure.

    One client is opened per provider call and closed when the call ends.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
        return self._session

    async def request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send one request and return the decoded JSON body (None for empty bodies).

        Raises:
            ProviderError: On connection failure, non-2xx status, or a non-JSON body
        """
        url = f"{self.base_url}{path}"
        call_name = f"{method} {path}"
        start_time = time.time()
        status_code: Optional[int] = None

        try:
            session = self._get_session()
            async with session.request(method, url, json=json_body) as response:
                status_code = response.status
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log_provider_call(logger, self.provider, call_name, time.time() - start_time, False)
            raise ProviderError(
                f"{self.provider} request failed: {e}",
                provider=self.provider,
            ) from e

        duration = time.time() - start_time
        ok = 200 <= status_code < 300

        if status_code == 204 or not text:
            log_provider_call(logger, self.provider, call_name, duration, ok, status_code)
            if not ok:
                raise ProviderError(
                    f"{self.provider} API {status_code}",
                    provider=self.provider,
                    status_code=status_code,
                )
            return None

        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            log_provider_call(logger, self.provider, call_name, duration, False, status_code)
            if not ok:
                raise ProviderError(
                    f"{self.provider} API {status_code}: {text}",
                    provider=self.provider,
                    status_code=status_code,
                )
            raise ProviderError(
                f"{self.provider} API returned non-JSON response: {text}",
                provider=self.provider,
                status_code=status_code,
            )

        log_provider_call(logger, self.provider, call_name, duration, ok, status_code)
        if not ok:
            raise ProviderError(
                f"{self.provider} API {status_code}: {_detail_text(payload)}",
                provider=self.provider,
                status_code=status_code,
            )
        return payload

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ProviderHTTPClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
