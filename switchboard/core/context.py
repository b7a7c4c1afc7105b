"""Conversation context window for webhook payloads."""

from __future__ import annotations

from collections.abc import Iterable

from switchboard.models import ContextEntry, Message, MessageType, ProcessingStatus

DEFAULT_MAX_MESSAGES = 10


def build_context(
    history: Iterable[Message], max_messages: int = DEFAULT_MAX_MESSAGES
) -> list[ContextEntry]:
    """Reduce a chronological history to the most recent completed turns.

    System messages, blank messages and anything not ``completed`` (in-flight
    or failed turns) are dropped before the window is applied.
    """
    if max_messages <= 0:
        return []

    turns = [
        m for m in history
        if m.message_type is not MessageType.SYSTEM
        and m.content.strip()
        and m.processing_status is ProcessingStatus.COMPLETED
    ]
    return [
        ContextEntry(role=m.message_type.value, content=m.content, timestamp=m.created_at)
        for m in turns[-max_messages:]
    ]
