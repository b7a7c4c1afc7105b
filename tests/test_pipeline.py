"""End-to-end tests for the chat dispatch pipeline."""

from unittest.mock import AsyncMock

import pytest

from switchboard.config import ResolverConfig
from switchboard.core.dispatcher import RetryDispatcher, RetryPolicy
from switchboard.core.pipeline import ChatPipeline
from switchboard.core.proxy import ExecutionProxy
from switchboard.core.resolver import WebhookResolver
from switchboard.core.tracker import MessageStatusTracker
from switchboard.errors import MessageNotFound, TransportFailure
from switchboard.messages.store import MessageStore
from switchboard.models import MessageType, ProcessingStatus, ProxyResult, WebhookConfig
from switchboard.registry.store import WebhookRegistry


class ScriptedProxy(ExecutionProxy):
    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.calls = []

    async def invoke(self, url, method, payload, correlation_id, timeout=None):
        self.calls.append({"url": url, "method": method, "payload": payload, "correlation_id": correlation_id})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def reply(text, **extra):
    return ProxyResult(success=True, data={"success": True, "response": text, **extra}, status_code=200)


async def no_sleep(delay):
    return None


@pytest.fixture
async def store(tmp_path):
    s = MessageStore(tmp_path / "messages.db")
    await s.start()
    yield s
    await s.stop()


@pytest.fixture
async def registry(tmp_path):
    r = WebhookRegistry(tmp_path / "registry.db")
    await r.start()
    yield r
    await r.stop()


@pytest.fixture
async def webhook(registry):
    return await registry.add(WebhookConfig(
        feature="knowledge-base",
        name="AI Chat Assistant",
        endpoint_url="/webhook/chat",
        retry_attempts=3,
        timeout_seconds=20,
    ))


@pytest.fixture
def proxy():
    return ScriptedProxy()


@pytest.fixture
def pipeline(store, registry, proxy):
    resolver = WebhookResolver(registry, ResolverConfig(base_url="https://n8n.example.com"))
    dispatcher = RetryDispatcher(proxy, RetryPolicy(max_attempts=3, base_delay=1.0), sleep=no_sleep)
    tracker = MessageStatusTracker(store)
    return ChatPipeline(store, resolver, dispatcher, tracker, registry=registry, max_context_messages=10)


@pytest.fixture
async def conversation(store):
    return await store.create_conversation(
        "org-1", "user-1", model="gpt-4", temperature=0.7, max_tokens=2000,
    )


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------

class TestSendMessage:
    async def test_completes_with_response(self, pipeline, proxy, store, webhook, conversation):
        proxy.outcomes = [reply(
            "Refunds take 5 days.",
            sources=[{"document_name": "refunds.pdf", "excerpt": "5 business days", "confidence": 0.92}],
            metadata={"tokens_used": 120, "model_used": "gpt-4"},
        )]

        message = await pipeline.send_message(conversation.id, "How long do refunds take?", "user-1")

        assert message.message_type is MessageType.ASSISTANT
        assert message.processing_status is ProcessingStatus.COMPLETED
        assert message.content == "Refunds take 5 days."
        assert message.sources[0]["document_name"] == "refunds.pdf"
        assert message.metadata == {"tokens_used": 120, "model_used": "gpt-4"}
        assert message.error_message is None

        history = await store.list_messages(conversation.id)
        assert [m.message_type for m in history] == [MessageType.USER, MessageType.ASSISTANT]
        assert history[0].processing_status is ProcessingStatus.COMPLETED

    async def test_payload_shape(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [reply("ok")]
        message = await pipeline.send_message(conversation.id, "hello", "user-1")

        call = proxy.calls[0]
        assert call["url"] == "https://n8n.example.com/webhook/chat"
        assert call["method"] == "POST"
        assert call["correlation_id"] == f"{message.id}-g1-attempt-1"

        payload = call["payload"]
        assert payload["event_type"] == "chat_message_sent"
        assert payload["conversation_id"] == conversation.id
        assert payload["message_id"] == message.id
        assert payload["user_message"] == "hello"
        assert payload["organization_id"] == "org-1"
        assert payload["user_id"] == "user-1"
        assert payload["conversation_context"] == []
        assert payload["kb_ids"] == []
        assert payload["model_config"] == {"model": "gpt-4", "temperature": 0.7, "max_tokens": 2000}
        assert payload["timestamp"]

    async def test_knowledge_bases_forwarded(self, pipeline, proxy, store, webhook):
        conversation = await store.create_conversation("org-1", "user-1", kb_ids=["kb-hr", "kb-it"])
        proxy.outcomes = [reply("ok"), reply("again")]
        message = await pipeline.send_message(conversation.id, "hello", "user-1")
        await pipeline.regenerate(message.id)

        assert proxy.calls[0]["payload"]["kb_ids"] == ["kb-hr", "kb-it"]
        assert proxy.calls[1]["payload"]["kb_ids"] == ["kb-hr", "kb-it"]

    async def test_loosely_typed_sources_still_complete(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [reply(
            "See the handbook.",
            sources=[
                {"document_name": "handbook.pdf", "confidence": "high"},
                {"document_name": "faq.md", "chunk_text": "Ask HR", "confidence_score": "0.4"},
                "not a source",
            ],
        )]
        message = await pipeline.send_message(conversation.id, "where?", "user-1")

        assert message.processing_status is ProcessingStatus.COMPLETED
        assert [s["confidence"] for s in message.sources] == [0.0, 0.4]
        assert message.sources[1]["excerpt"] == "Ask HR"

    async def test_context_excludes_current_turn(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [reply("first answer"), reply("second answer")]
        await pipeline.send_message(conversation.id, "first question", "user-1")
        await pipeline.send_message(conversation.id, "second question", "user-1")

        context = proxy.calls[1]["payload"]["conversation_context"]
        assert [(c["role"], c["content"]) for c in context] == [
            ("user", "first question"),
            ("assistant", "first answer"),
        ]
        assert proxy.calls[1]["payload"]["user_message"] == "second question"

    async def test_retries_then_succeeds(self, pipeline, proxy, registry, webhook, conversation):
        proxy.outcomes = [TransportFailure("reset"), TransportFailure("reset"), reply("third time")]
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.COMPLETED
        assert message.content == "third time"
        assert len(proxy.calls) == 3

        deliveries = await registry.recent_deliveries(webhook.id)
        assert len(deliveries) == 1
        assert deliveries[0]["status"] == "success"
        assert deliveries[0]["retry_count"] == 2

    async def test_unknown_conversation(self, pipeline, webhook):
        with pytest.raises(MessageNotFound):
            await pipeline.send_message("missing", "hi", "user-1")


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------

class TestFailures:
    async def test_exhausted_retries_marks_error(self, pipeline, proxy, registry, webhook, conversation):
        proxy.outcomes = [TransportFailure(f"down {n}") for n in range(1, 4)]
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.ERROR
        assert "3 attempt(s)" in message.error_message
        assert "down 3" in message.error_message
        assert message.content == ""

        updated = await registry.get(webhook.id)
        assert updated.failure_count == 1
        assert updated.success_count == 0

    async def test_webhook_retry_attempts_bound_dispatch(self, pipeline, proxy, registry, conversation):
        await registry.add(WebhookConfig(
            feature="knowledge-base", name="Chat", endpoint_url="https://hook.example.com/c",
            retry_attempts=1,
        ))
        proxy.outcomes = [TransportFailure("down"), reply("never reached")]
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.ERROR
        assert len(proxy.calls) == 1

    async def test_not_configured_marks_error_without_dispatch(self, pipeline, proxy, conversation):
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.ERROR
        assert "No active webhook" in message.error_message
        assert proxy.calls == []

    async def test_relative_url_without_base(self, store, registry, proxy, conversation):
        await registry.add(WebhookConfig(
            feature="knowledge-base", name="Chat", endpoint_url="/webhook/chat",
        ))
        pipeline = ChatPipeline(
            store,
            WebhookResolver(registry, ResolverConfig()),
            RetryDispatcher(proxy, sleep=no_sleep),
            MessageStatusTracker(store),
        )
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.ERROR
        assert "base URL" in message.error_message
        assert proxy.calls == []

    async def test_worker_reported_failure(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [ProxyResult(success=True, data={"success": False, "error": "quota exceeded"})] * 3
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.ERROR
        assert "quota exceeded" in message.error_message

    async def test_non_text_response_marks_error(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [
            ProxyResult(success=True, data={"success": True, "response": {"text": "hi"}}, status_code=200)
        ] * 3
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.ERROR
        assert "non-text response (dict)" in message.error_message
        assert message.content == ""

    async def test_unexpected_error_marks_error(self, pipeline, proxy, store, webhook, conversation, monkeypatch):
        monkeypatch.setattr(store, "list_messages", AsyncMock(side_effect=RuntimeError("disk I/O error")))
        message = await pipeline.send_message(conversation.id, "hi", "user-1")

        assert message.processing_status is ProcessingStatus.ERROR
        assert message.error_message == "Unexpected error: disk I/O error"
        assert proxy.calls == []

    async def test_assistant_without_user_turn(self, pipeline, proxy, store, webhook, conversation):
        orphan = await store.add_message(conversation.id, "org-1", MessageType.ASSISTANT)
        message = await pipeline.process(orphan.id)

        assert message.processing_status is ProcessingStatus.ERROR
        assert "No user message" in message.error_message
        assert proxy.calls == []


# ---------------------------------------------------------------------------
# Regenerate
# ---------------------------------------------------------------------------

class TestRegenerate:
    async def test_regenerate_after_error(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [TransportFailure("down")] * 3
        failed = await pipeline.send_message(conversation.id, "hi", "user-1")
        assert failed.processing_status is ProcessingStatus.ERROR

        proxy.outcomes = [reply("second try")]
        message = await pipeline.regenerate(failed.id)

        assert message.id == failed.id
        assert message.processing_status is ProcessingStatus.COMPLETED
        assert message.content == "second try"
        assert message.error_message is None
        assert message.generation == 2
        assert proxy.calls[-1]["correlation_id"] == f"{failed.id}-g2-attempt-1"

    async def test_regenerate_replaces_completed_content(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [reply("first"), reply("second")]
        first = await pipeline.send_message(conversation.id, "hi", "user-1")
        message = await pipeline.regenerate(first.id)

        assert message.content == "second"
        # Regenerating does not feed the old answer back as context
        assert proxy.calls[1]["payload"]["conversation_context"] == []
        assert proxy.calls[1]["payload"]["user_message"] == "hi"

    async def test_regenerate_failure_leaves_no_stale_content(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [reply("old answer")]
        first = await pipeline.send_message(conversation.id, "hi", "user-1")

        proxy.outcomes = [TransportFailure("down")] * 3
        message = await pipeline.regenerate(first.id)

        assert message.processing_status is ProcessingStatus.ERROR
        assert message.content == ""

    async def test_regenerate_event_type(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [reply("first"), reply("second")]
        first = await pipeline.send_message(conversation.id, "hi", "user-1")
        await pipeline.regenerate(first.id)

        assert [c["payload"]["event_type"] for c in proxy.calls] == [
            "chat_message_sent",
            "regenerate_response",
        ]

    async def test_regenerate_failure_clears_metadata(self, pipeline, proxy, webhook, conversation):
        proxy.outcomes = [reply("first", metadata={"tokens_used": 42, "model_used": "gpt-4"})]
        first = await pipeline.send_message(conversation.id, "hi", "user-1")
        assert first.metadata == {"tokens_used": 42, "model_used": "gpt-4"}

        proxy.outcomes = [TransportFailure("down")] * 3
        message = await pipeline.regenerate(first.id)

        assert message.processing_status is ProcessingStatus.ERROR
        assert message.metadata == {}

    async def test_regenerate_user_message_rejected(self, pipeline, store, conversation):
        user = await store.add_message(conversation.id, "org-1", MessageType.USER, content="hi")
        with pytest.raises(MessageNotFound):
            await pipeline.regenerate(user.id)

    async def test_regenerate_missing(self, pipeline):
        with pytest.raises(MessageNotFound):
            await pipeline.regenerate("nope")
