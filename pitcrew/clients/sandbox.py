"""Sandbox client.

Pure HTTP client for the control endpoints every sandbox serves on its
``api`` port, plus plain health checks against public route URLs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from pitcrew.errors import RequestTimeoutError, SandboxError

if TYPE_CHECKING:
    from pitcrew.challenges.loader import ChallengePayload

logger = structlog.get_logger()


class SandboxClient:
    """HTTP client for sandbox control endpoints."""

    def __init__(
        self,
        *,
        api_port: int = 30003,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_port = api_port
        self._timeout = timeout
        # Injected in tests (httpx.MockTransport)
        self._transport = transport
        self._log = logger.bind(client="sandbox")

    def _api_url(self, address: str, path: str) -> str:
        return f"http://{address}:{self._api_port}{path}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        request_timeout = timeout or self._timeout

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                return await client.request(method, url, json=json, timeout=request_timeout)
        except httpx.TimeoutException:
            self._log.warning("sandbox.timeout", url=url, timeout=request_timeout)
            raise RequestTimeoutError(f"Sandbox request timed out: {url}")
        except httpx.RequestError as e:
            self._log.warning("sandbox.request_error", url=url, error=str(e))
            raise SandboxError(f"Sandbox request error: {e}")

    async def _post(self, url: str, json: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", url, json=json)
        if response.status_code >= 400:
            self._log.error(
                "sandbox.request_failed",
                url=url,
                status=response.status_code,
                body=response.text[:500],
            )
            raise SandboxError(
                f"Sandbox request failed: {response.status_code}",
                details={"status": response.status_code},
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def health(self, url: str) -> bool:
        """GET ``url`` and report whether it answered 2xx."""
        response = await self._request("GET", url)
        return 200 <= response.status_code < 300

    async def load_challenge(self, address: str, payload: "ChallengePayload") -> dict[str, Any]:
        """Push a challenge workspace into the sandbox."""
        self._log.info(
            "sandbox.load_challenge",
            address=address,
            challenge_id=payload.challenge_id,
            files=len(payload.files),
        )
        return await self._post(
            self._api_url(address, "/api/load-challenge"),
            payload.to_request(),
        )

    async def save_workspace(self, address: str, challenge_id: str) -> dict[str, Any]:
        """Ask the sandbox to persist the current workspace."""
        self._log.info("sandbox.save_workspace", address=address, challenge_id=challenge_id)
        return await self._post(
            self._api_url(address, "/api/save-workspace"),
            {"challengeId": challenge_id},
        )
