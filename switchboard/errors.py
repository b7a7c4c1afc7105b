"""Error taxonomy for webhook resolution and dispatch.

Every error carries a message fit to show an operator as-is; the pipeline
persists ``str(error)`` on the failed message.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for all resolution and dispatch failures."""


class NotConfigured(WebhookError):
    """No active webhook exists for a capability."""


class InvalidConfiguration(WebhookError):
    """A webhook is active but has no usable URL, or fails validation."""


class TransportFailure(WebhookError):
    """The call to the execution proxy could not complete."""


class ApplicationFailure(WebhookError):
    """The proxy completed but the remote worker reported a failure."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExhaustedRetries(WebhookError):
    """Every dispatch attempt failed."""

    def __init__(self, attempts: int, last_error: WebhookError) -> None:
        super().__init__(
            f"Webhook dispatch failed after {attempts} attempt(s): {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


class DispatchCancelled(WebhookError):
    """Dispatch was cancelled between attempts."""


class MessageNotFound(WebhookError):
    """The referenced message does not exist."""
