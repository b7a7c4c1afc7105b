"""Capability -> webhook URL resolution."""

from __future__ import annotations

from typing import Protocol
from urllib.parse import urlparse

from switchboard.config import ResolverConfig
from switchboard.errors import InvalidConfiguration, NotConfigured
from switchboard.models import Capability, ResolvedWebhook, WebhookConfig
from switchboard.utils.logging import get_logger

log = get_logger(__name__)


class ActiveWebhookSource(Protocol):
    async def list_active(self, feature: str) -> list[WebhookConfig]: ...


class WebhookResolver:
    """Finds the active webhook serving a capability.

    Configurations tagged with the capability win. Untagged (legacy) rows are
    matched by name against the capability's ordered keyword list, falling
    back to the first active row. The registry is queried on every call.
    """

    def __init__(self, registry: ActiveWebhookSource, config: ResolverConfig) -> None:
        self._registry = registry
        self._config = config

    async def resolve(self, capability: Capability | str) -> str:
        resolved = await self.resolve_webhook(capability)
        return resolved.url

    async def resolve_webhook(self, capability: Capability | str) -> ResolvedWebhook:
        capability = Capability(capability)
        feature = self._config.features.get(capability.value, capability.value)

        configs = await self._registry.list_active(feature)
        selected = self._select(capability, configs)
        if selected is None:
            raise NotConfigured(
                f"No active webhook configured for capability '{capability.value}' "
                f"(feature '{feature}')"
            )

        url = self._qualify(selected)
        log.debug(
            "webhook_resolved",
            capability=capability.value,
            webhook_id=selected.id,
            name=selected.name,
        )
        return ResolvedWebhook(config=selected, url=url)

    def _select(
        self, capability: Capability, configs: list[WebhookConfig]
    ) -> WebhookConfig | None:
        tagged = [c for c in configs if c.capability is capability]
        if tagged:
            return tagged[0]

        legacy = [c for c in configs if c.capability is None]
        if not legacy:
            return None
        if len(legacy) == 1:
            return legacy[0]

        for keyword in self._config.keywords.get(capability.value, []):
            keyword = keyword.lower()
            for config in legacy:
                if keyword in config.name.lower():
                    return config
        return legacy[0]

    def _qualify(self, config: WebhookConfig) -> str:
        url = (config.endpoint_url or "").strip()
        if not url:
            raise InvalidConfiguration(
                f"Webhook '{config.name}' is active but has no URL configured"
            )

        if url.startswith("/"):
            base = self._config.base_url.strip()
            if not base:
                raise InvalidConfiguration(
                    f"Webhook '{config.name}' uses relative URL '{url}' but no base URL "
                    "is configured (set resolver.base_url / SWITCHBOARD_RESOLVER__BASE_URL)"
                )
            return base.rstrip("/") + url

        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise InvalidConfiguration(
                f"Webhook '{config.name}' has an unusable URL '{url}': "
                "expected an absolute URL or a path starting with '/'"
            )
        return url
