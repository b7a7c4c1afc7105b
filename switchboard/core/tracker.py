"""Message processing status transitions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from switchboard.core.bus import EventBus, MessageStatusChanged
from switchboard.errors import MessageNotFound
from switchboard.messages.store import MessageStore
from switchboard.models import ProcessingStatus
from switchboard.utils.logging import get_logger

log = get_logger(__name__)

STUCK_ERROR_MESSAGE = "Processing timed out. Please regenerate the response."


class MessageStatusTracker:
    """Owns every status write on a message during and after dispatch.

    ``mark_processing`` opens a new generation; completion and error writes
    carrying an older generation are rejected so a late response from a
    superseded dispatch cannot overwrite a newer one.
    """

    def __init__(self, store: MessageStore, bus: EventBus | None = None) -> None:
        self._store = store
        self._bus = bus

    async def mark_processing(self, message_id: str) -> int:
        generation = await self._store.begin_processing(message_id)
        if generation is None:
            raise MessageNotFound(f"Message '{message_id}' not found")
        log.info("message_processing", message_id=message_id, generation=generation)
        await self._publish(message_id, ProcessingStatus.PROCESSING, generation)
        return generation

    async def mark_completed(
        self,
        message_id: str,
        content: str,
        sources: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
        generation: int | None = None,
    ) -> bool:
        accepted = await self._store.update_status(
            message_id,
            ProcessingStatus.COMPLETED,
            content=content,
            sources=sources or [],
            generation=generation,
        )
        if not accepted:
            log.warning("stale_status_write", message_id=message_id, status="completed", generation=generation)
            return False

        if metadata:
            await self._write_metadata_best_effort(message_id, metadata, generation)

        log.info("message_completed", message_id=message_id, generation=generation)
        await self._publish(message_id, ProcessingStatus.COMPLETED, generation)
        return True

    async def mark_error(
        self,
        message_id: str,
        error_message: str,
        generation: int | None = None,
    ) -> bool:
        error_message = error_message.strip() or "Unknown error"
        accepted = await self._store.update_status(
            message_id,
            ProcessingStatus.ERROR,
            error_message=error_message,
            generation=generation,
        )
        if not accepted:
            log.warning("stale_status_write", message_id=message_id, status="error", generation=generation)
            return False

        log.info("message_error", message_id=message_id, generation=generation, error=error_message)
        await self._publish(message_id, ProcessingStatus.ERROR, generation, error_message)
        return True

    async def fail_stuck(self, older_than_seconds: int) -> int:
        """Fail messages left in processing longer than the window. Returns the count."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        stuck = await self._store.list_stuck(cutoff)
        failed = 0
        for message in stuck:
            if await self.mark_error(message.id, STUCK_ERROR_MESSAGE, message.generation):
                failed += 1
        if failed:
            log.info("stuck_messages_failed", count=failed)
        return failed

    async def _write_metadata_best_effort(
        self, message_id: str, metadata: dict[str, Any], generation: int | None
    ) -> None:
        # Secondary write: the completion above already stands on its own
        try:
            await self._store.update_metadata(message_id, metadata, generation)
        except Exception:
            log.warning("metadata_write_failed", message_id=message_id, exc_info=True)

    async def _publish(
        self,
        message_id: str,
        status: ProcessingStatus,
        generation: int | None,
        error_message: str | None = None,
    ) -> None:
        if self._bus is None:
            return
        await self._bus.publish(MessageStatusChanged(data={
            "message_id": message_id,
            "status": status.value,
            "generation": generation,
            "error_message": error_message,
        }))
