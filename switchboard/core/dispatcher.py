"""Webhook dispatch with bounded retries and exponential backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from switchboard.config import RetryConfig
from switchboard.core.proxy import ExecutionProxy
from switchboard.errors import (
    ApplicationFailure,
    DispatchCancelled,
    ExhaustedRetries,
    TransportFailure,
    WebhookError,
)
from switchboard.models import WebhookResponse
from switchboard.utils.logging import get_logger

log = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(max_attempts=config.max_attempts, base_delay=config.base_delay_ms / 1000)

    def with_attempts(self, max_attempts: int) -> RetryPolicy:
        return RetryPolicy(max_attempts=max(1, max_attempts), base_delay=self.base_delay)

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``."""
        return self.base_delay * (2 ** (attempt - 1))


class RetryDispatcher:
    def __init__(
        self,
        proxy: ExecutionProxy,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._proxy = proxy
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def dispatch(
        self,
        url: str,
        payload: dict[str, Any],
        attempt_label: str,
        policy: RetryPolicy | None = None,
        method: str = "POST",
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> WebhookResponse:
        """Send ``payload`` until the worker reports success or attempts run out.

        Transport and application failures share one backoff schedule. Only
        the last failure is surfaced, wrapped in ExhaustedRetries.
        """
        policy = policy or self._policy
        last_error: WebhookError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                raise DispatchCancelled(f"Dispatch '{attempt_label}' was cancelled")

            correlation_id = f"{attempt_label}-attempt-{attempt}"
            try:
                response = await self._attempt(url, method, payload, correlation_id, timeout)
            except (TransportFailure, ApplicationFailure) as e:
                last_error = e
                log.warning(
                    "webhook_attempt_failed",
                    correlation_id=correlation_id,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    kind=type(e).__name__,
                    error=str(e),
                )
            else:
                response.attempts = attempt
                log.info("webhook_dispatched", correlation_id=correlation_id, attempt=attempt)
                return response

            if attempt == policy.max_attempts:
                break

            if cancel is not None and cancel.is_set():
                raise DispatchCancelled(f"Dispatch '{attempt_label}' was cancelled")
            await self._sleep(policy.delay_for(attempt))

        assert last_error is not None
        log.error(
            "webhook_retries_exhausted",
            attempt_label=attempt_label,
            attempts=policy.max_attempts,
            error=str(last_error),
        )
        raise ExhaustedRetries(policy.max_attempts, last_error)

    async def _attempt(
        self,
        url: str,
        method: str,
        payload: dict[str, Any],
        correlation_id: str,
        timeout: float | None,
    ) -> WebhookResponse:
        result = await self._proxy.invoke(url, method, payload, correlation_id, timeout=timeout)
        if not result.success:
            raise ApplicationFailure(
                f"Webhook failed: {result.error or 'Unknown error'}",
                status_code=result.status_code,
            )

        try:
            response = WebhookResponse.from_payload(result.data)
        except (TypeError, ValueError) as e:
            raise ApplicationFailure(
                f"Webhook returned a malformed response: {e}",
                status_code=result.status_code,
            ) from e
        if not response.success:
            raise ApplicationFailure(
                f"Webhook reported failure: {response.error or 'Unknown error'}",
                status_code=result.status_code,
            )
        return response
