"""Webhook resolution, dispatch and status tracking."""

from switchboard.core.dispatcher import RetryDispatcher, RetryPolicy
from switchboard.core.pipeline import ChatPipeline
from switchboard.core.prober import DiagnosticProber
from switchboard.core.resolver import WebhookResolver
from switchboard.core.tracker import MessageStatusTracker

__all__ = [
    "ChatPipeline",
    "DiagnosticProber",
    "MessageStatusTracker",
    "RetryDispatcher",
    "RetryPolicy",
    "WebhookResolver",
]
