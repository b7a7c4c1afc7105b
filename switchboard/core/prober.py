"""Operator-facing webhook connectivity test."""

from __future__ import annotations

import time
from uuid import uuid4

from switchboard.core.bus import EventBus, WebhookTested
from switchboard.core.proxy import ExecutionProxy
from switchboard.core.resolver import WebhookResolver
from switchboard.errors import WebhookError
from switchboard.models import Capability, ConnectionTestResult, utcnow_iso
from switchboard.registry.store import WebhookRegistry
from switchboard.utils.logging import get_logger

log = get_logger(__name__)


class DiagnosticProber:
    def __init__(
        self,
        resolver: WebhookResolver,
        proxy: ExecutionProxy,
        registry: WebhookRegistry | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._resolver = resolver
        self._proxy = proxy
        self._registry = registry
        self._bus = bus

    async def test_connection(self, capability: Capability | str) -> ConnectionTestResult:
        """Send one probe, no retries. Elapsed time is reported on every path."""
        capability = Capability(capability)
        started = time.perf_counter()
        webhook_id: int | None = None
        status_code: int | None = None

        try:
            resolved = await self._resolver.resolve_webhook(capability)
            webhook_id = resolved.config.id
            payload = {
                "test": True,
                "capability": capability.value,
                "timestamp": utcnow_iso(),
                "source": "switchboard_test",
            }
            result = await self._proxy.invoke(
                resolved.url,
                resolved.config.http_method,
                payload,
                f"probe-{uuid4().hex[:12]}-attempt-1",
                timeout=resolved.config.timeout_seconds,
            )
            status_code = result.status_code
            error: str | None = None
            if not result.success:
                error = f"Webhook failed: {result.error or 'Unknown error'}"
            elif isinstance(result.data, dict) and result.data.get("success") is False:
                # Probe replies often omit the success flag; only an explicit failure counts
                error = f"Webhook reported failure: {result.data.get('error') or 'Unknown error'}"
        except WebhookError as e:
            error = str(e)

        outcome = ConnectionTestResult(
            success=error is None,
            error=error,
            response_time_ms=int((time.perf_counter() - started) * 1000),
        )
        log.info(
            "webhook_tested",
            capability=capability.value,
            success=outcome.success,
            response_time_ms=outcome.response_time_ms,
            error=outcome.error,
        )

        if webhook_id is not None and self._registry is not None:
            try:
                await self._registry.record_delivery(
                    webhook_id,
                    success=outcome.success,
                    response_time_ms=outcome.response_time_ms,
                    error=outcome.error,
                    status_code=status_code,
                    is_test=True,
                )
            except Exception:
                log.warning("delivery_record_failed", webhook_id=webhook_id, exc_info=True)

        if self._bus is not None:
            await self._bus.publish(WebhookTested(data={"capability": capability.value, **outcome.to_dict()}))
        return outcome
