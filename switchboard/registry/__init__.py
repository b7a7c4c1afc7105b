"""Persisted webhook registry."""

from switchboard.registry.store import WebhookRegistry, validate_webhook_config

__all__ = ["WebhookRegistry", "validate_webhook_config"]
