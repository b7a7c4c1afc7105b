"""Chat dispatch pipeline: processing → resolve → context → dispatch → completed/error."""

from __future__ import annotations

import time

from switchboard.core.context import DEFAULT_MAX_MESSAGES, build_context
from switchboard.core.dispatcher import RetryDispatcher
from switchboard.core.resolver import WebhookResolver
from switchboard.core.tracker import MessageStatusTracker
from switchboard.errors import MessageNotFound, WebhookError
from switchboard.messages.store import MessageStore
from switchboard.models import (
    Capability,
    ChatEvent,
    Message,
    MessageType,
    ProcessingStatus,
    ResolvedWebhook,
    WebhookRequest,
)
from switchboard.registry.store import WebhookRegistry
from switchboard.utils.logging import get_logger

log = get_logger(__name__)


class ChatPipeline:
    """Runs a dispatch cycle for an assistant message and records the outcome.

    Every failure is recovered into the message's ``error`` state; callers
    only ever observe the persisted message.
    """

    def __init__(
        self,
        store: MessageStore,
        resolver: WebhookResolver,
        dispatcher: RetryDispatcher,
        tracker: MessageStatusTracker,
        registry: WebhookRegistry | None = None,
        max_context_messages: int = DEFAULT_MAX_MESSAGES,
        capability: Capability = Capability.CHAT,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._registry = registry
        self._max_context_messages = max_context_messages
        self._capability = capability

    async def send_message(self, conversation_id: str, content: str, user_id: str) -> Message:
        """Store a user turn, open a pending assistant reply and process it."""
        assistant = await self.create_turn(conversation_id, content, user_id)
        return await self.process(assistant.id)

    async def create_turn(self, conversation_id: str, content: str, user_id: str) -> Message:
        """Store the user turn and its pending assistant reply without dispatching."""
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise MessageNotFound(f"Conversation '{conversation_id}' not found")

        await self._store.add_message(
            conversation_id,
            conversation.organization_id,
            MessageType.USER,
            content=content,
            status=ProcessingStatus.COMPLETED,
            metadata={"user_id": user_id},
        )
        return await self._store.add_message(
            conversation_id,
            conversation.organization_id,
            MessageType.ASSISTANT,
            status=ProcessingStatus.PENDING,
        )

    async def regenerate(self, message_id: str) -> Message:
        """Re-run the dispatch cycle on an existing assistant message."""
        message = await self._store.get_message(message_id)
        if message is None or message.message_type is not MessageType.ASSISTANT:
            raise MessageNotFound(f"Assistant message '{message_id}' not found")
        log.info("message_regenerate", message_id=message_id, previous_status=message.processing_status.value)
        return await self.process(message_id, ChatEvent.REGENERATE)

    async def process(
        self, message_id: str, event_type: ChatEvent = ChatEvent.MESSAGE_SENT
    ) -> Message:
        generation = await self._tracker.mark_processing(message_id)

        try:
            await self._run(message_id, generation, event_type)
        except Exception as e:
            log.exception("dispatch_unexpected_error", message_id=message_id, generation=generation)
            await self._tracker.mark_error(message_id, f"Unexpected error: {e}", generation)
        return await self._reload(message_id)

    async def _run(self, message_id: str, generation: int, event_type: ChatEvent) -> None:
        try:
            resolved = await self._resolver.resolve_webhook(self._capability)
            request = await self._build_request(message_id, event_type)
        except WebhookError as e:
            await self._tracker.mark_error(message_id, str(e), generation)
            return

        await self._dispatch(message_id, generation, resolved, request)

    async def _dispatch(
        self,
        message_id: str,
        generation: int,
        resolved: ResolvedWebhook,
        request: WebhookRequest,
    ) -> None:
        config = resolved.config
        policy = self._dispatcher.policy.with_attempts(config.retry_attempts)
        started = time.perf_counter()

        try:
            response = await self._dispatcher.dispatch(
                resolved.url,
                request.to_payload(),
                attempt_label=f"{message_id}-g{generation}",
                policy=policy,
                method=config.http_method,
                timeout=config.timeout_seconds,
            )
        except WebhookError as e:
            await self._record(resolved, started, False, policy.max_attempts, str(e))
            await self._tracker.mark_error(message_id, str(e), generation)
            return

        await self._record(resolved, started, response.success, response.attempts, response.error)
        if response.success:
            await self._tracker.mark_completed(
                message_id,
                response.response or "",
                sources=[s.to_dict() for s in response.sources],
                metadata=response.metadata.to_dict() if response.metadata else None,
                generation=generation,
            )
        else:
            await self._tracker.mark_error(
                message_id, response.error or "Webhook reported an unknown error", generation
            )

    async def _build_request(self, message_id: str, event_type: ChatEvent) -> WebhookRequest:
        message = await self._store.get_message(message_id)
        if message is None:
            raise MessageNotFound(f"Message '{message_id}' not found")
        conversation = await self._store.get_conversation(message.conversation_id)
        if conversation is None:
            raise MessageNotFound(f"Conversation '{message.conversation_id}' not found")

        history = await self._store.list_messages(message.conversation_id)
        position = next(i for i, m in enumerate(history) if m.id == message_id)
        preceding = history[:position]

        # The triggering turn is the latest user message before this reply
        user_index = next(
            (i for i in range(len(preceding) - 1, -1, -1)
             if preceding[i].message_type is MessageType.USER),
            None,
        )
        if user_index is None:
            raise MessageNotFound(f"No user message precedes assistant message '{message_id}'")
        user_turn = preceding[user_index]

        return WebhookRequest(
            conversation_id=conversation.id,
            message_id=message_id,
            user_message=user_turn.content,
            organization_id=conversation.organization_id,
            user_id=user_turn.metadata.get("user_id", conversation.user_id),
            context=tuple(build_context(preceding[:user_index], self._max_context_messages)),
            model_config=conversation.model_config,
            system_prompt=conversation.system_prompt,
            kb_ids=tuple(conversation.kb_ids),
            event_type=event_type,
        )

    async def _record(
        self,
        resolved: ResolvedWebhook,
        started: float,
        success: bool,
        attempts: int,
        error: str | None,
    ) -> None:
        if self._registry is None or resolved.config.id is None:
            return
        try:
            await self._registry.record_delivery(
                resolved.config.id,
                success=success,
                response_time_ms=int((time.perf_counter() - started) * 1000),
                attempts=attempts,
                error=error,
            )
        except Exception:
            log.warning("delivery_record_failed", webhook_id=resolved.config.id, exc_info=True)

    async def _reload(self, message_id: str) -> Message:
        message = await self._store.get_message(message_id)
        if message is None:
            raise MessageNotFound(f"Message '{message_id}' not found")
        return message
