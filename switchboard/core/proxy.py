"""Execution proxies: the only network egress of the dispatch path."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from switchboard.config import ProxyConfig
from switchboard.errors import TransportFailure
from switchboard.models import ProxyResult


_BODYLESS_METHODS = ("GET", "DELETE")


def _decode(resp: httpx.Response) -> Any:
    if "application/json" in resp.headers.get("content-type", ""):
        try:
            return resp.json()
        except ValueError:
            return {}
    return resp.text


class ExecutionProxy(ABC):
    @abstractmethod
    async def invoke(
        self,
        url: str,
        method: str,
        payload: dict[str, Any],
        correlation_id: str,
        timeout: float | None = None,
    ) -> ProxyResult:
        """Perform one webhook call. Raises TransportFailure if it cannot complete."""

    async def close(self) -> None:
        """Clean up resources. Override if needed."""


class EdgeFunctionProxy(ExecutionProxy):
    """Routes calls through a server-side function that holds the webhook secrets."""

    def __init__(self, config: ProxyConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout)

    async def invoke(
        self,
        url: str,
        method: str,
        payload: dict[str, Any],
        correlation_id: str,
        timeout: float | None = None,
    ) -> ProxyResult:
        if not self._config.endpoint:
            raise TransportFailure("Execution proxy endpoint is not configured")

        body = {
            "webhookUrl": url,
            "method": method,
            "payload": payload,
            "correlationId": correlation_id,
            "organizationId": payload.get("organization_id"),
        }
        headers = {
            "Content-Type": "application/json",
            "X-Correlation-ID": correlation_id,
        }
        if self._config.token:
            headers["Authorization"] = f"Bearer {self._config.token}"

        try:
            resp = await self._client.post(
                self._config.endpoint,
                json=body,
                headers=headers,
                timeout=timeout or self._config.timeout,
            )
        except httpx.HTTPError as e:
            raise TransportFailure(f"Execution proxy unreachable: {e}") from e

        data = _decode(resp)
        envelope = data if isinstance(data, dict) else {}
        if resp.is_success and envelope.get("success"):
            return ProxyResult(
                success=True,
                data=envelope.get("data"),
                status_code=envelope.get("status", resp.status_code),
            )

        error = envelope.get("error") or f"Execution proxy returned HTTP {resp.status_code}"
        return ProxyResult(
            success=False,
            data=envelope.get("data"),
            error=str(error),
            status_code=envelope.get("status", resp.status_code),
        )

    async def close(self) -> None:
        await self._client.aclose()


class DirectProxy(ExecutionProxy):
    """Calls the webhook URL itself."""

    def __init__(self, config: ProxyConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout)

    async def invoke(
        self,
        url: str,
        method: str,
        payload: dict[str, Any],
        correlation_id: str,
        timeout: float | None = None,
    ) -> ProxyResult:
        method = method.upper()
        headers = {"X-Correlation-ID": correlation_id}
        if self._config.api_key:
            headers[self._config.api_key_header] = self._config.api_key

        try:
            resp = await self._client.request(
                method,
                url,
                json=None if method in _BODYLESS_METHODS else payload,
                headers=headers,
                timeout=timeout or self._config.timeout,
            )
        except httpx.HTTPError as e:
            raise TransportFailure(f"Webhook unreachable: {e}") from e

        data = _decode(resp)
        if isinstance(data, str):
            data = {"output": data}
        if not resp.is_success:
            return ProxyResult(
                success=False,
                data=data,
                error=f"Webhook returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        return ProxyResult(success=True, data=data, status_code=resp.status_code)

    async def close(self) -> None:
        await self._client.aclose()


def create_proxy(config: ProxyConfig) -> ExecutionProxy:
    """Factory to create the configured execution proxy."""
    if config.mode == "direct":
        return DirectProxy(config)
    return EdgeFunctionProxy(config)
