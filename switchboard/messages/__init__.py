"""Conversation and message persistence."""

from switchboard.messages.store import MessageStore

__all__ = ["MessageStore"]
