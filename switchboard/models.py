"""Typed models for webhook configs, requests, responses and messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Capability(str, Enum):
    CHAT = "chat"
    FILE_PROCESSING = "file_processing"
    VECTOR_SEARCH = "vector_search"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class MessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatEvent(str, Enum):
    MESSAGE_SENT = "chat_message_sent"
    REGENERATE = "regenerate_response"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass
class WebhookConfig:
    feature: str
    name: str
    endpoint_url: str
    is_active: bool = True
    http_method: str = "POST"
    timeout_seconds: int = 30
    retry_attempts: int = 3
    capability: Capability | None = None  # None for legacy, name-matched rows
    id: int | None = None
    success_count: int = 0
    failure_count: int = 0
    avg_response_time_ms: int = 0
    last_triggered: str | None = None


@dataclass
class ResolvedWebhook:
    config: WebhookConfig
    url: str


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContextEntry:
    role: str  # "user" or "assistant"
    content: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ModelConfig:
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"model": self.model, "temperature": self.temperature}
        if self.max_tokens is not None:
            data["max_tokens"] = self.max_tokens
        return data


@dataclass(frozen=True)
class WebhookRequest:
    conversation_id: str
    message_id: str
    user_message: str
    organization_id: str
    user_id: str
    context: tuple[ContextEntry, ...] = ()
    model_config: ModelConfig = field(default_factory=ModelConfig)
    system_prompt: str | None = None
    kb_ids: tuple[str, ...] = ()
    event_type: ChatEvent = ChatEvent.MESSAGE_SENT

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event_type": self.event_type.value,
            "timestamp": utcnow_iso(),
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "user_message": self.user_message,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "kb_ids": list(self.kb_ids),
            "conversation_context": [entry.to_dict() for entry in self.context],
            "model_config": self.model_config.to_dict(),
        }
        if self.system_prompt:
            payload["system_prompt"] = self.system_prompt
        return payload


@dataclass
class SourceCitation:
    document_name: str
    excerpt: str = ""
    confidence: float = 0.0
    file_reference: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceCitation:
        """Lenient parse: workers disagree on field names and types."""
        file_reference = data.get("file_reference") or data.get("file_id")
        return cls(
            document_name=str(data.get("document_name") or data.get("name") or ""),
            excerpt=str(data.get("excerpt") or data.get("chunk_text") or ""),
            confidence=_as_float(data.get("confidence", data.get("confidence_score"))),
            file_reference=str(file_reference) if file_reference else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_name": self.document_name,
            "excerpt": self.excerpt,
            "confidence": self.confidence,
            "file_reference": self.file_reference,
        }


@dataclass
class ResponseMetadata:
    tokens_used: int | None = None
    processing_time_ms: int | None = None
    model_used: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("tokens_used", self.tokens_used),
                ("processing_time_ms", self.processing_time_ms),
                ("model_used", self.model_used),
            )
            if value is not None
        }


@dataclass
class WebhookResponse:
    success: bool
    response: str | None = None
    sources: list[SourceCitation] = field(default_factory=list)
    metadata: ResponseMetadata | None = None
    error: str | None = None
    attempts: int = 1  # set by the dispatcher, not the worker

    @classmethod
    def from_payload(cls, data: Any) -> WebhookResponse:
        """Parse a worker payload.

        Accepts the structured ``{"success": ..., "response": ...}`` shape and
        the bare ``{"output": "..."}`` shape older workflows return.
        """
        if not isinstance(data, dict):
            return cls(success=False, error="Webhook returned an unexpected payload")

        if "success" not in data and "output" in data:
            output = data["output"]
            if not isinstance(output, str):
                return cls(success=False, error="Webhook returned a non-text output")
            return cls(success=True, response=output)

        response = data.get("response")
        if response is not None and not isinstance(response, str):
            return cls(
                success=False,
                error=f"Webhook returned a non-text response ({type(response).__name__})",
            )

        raw_sources = data.get("sources")
        sources = [
            SourceCitation.from_dict(s)
            for s in (raw_sources if isinstance(raw_sources, list) else [])
            if isinstance(s, dict)
        ]
        raw_meta = data.get("metadata")
        metadata = None
        if isinstance(raw_meta, dict):
            metadata = ResponseMetadata(
                tokens_used=raw_meta.get("tokens_used"),
                processing_time_ms=raw_meta.get("processing_time_ms", raw_meta.get("processing_time")),
                model_used=raw_meta.get("model_used"),
            )

        return cls(
            success=data.get("success") is True,
            response=response,
            sources=sources,
            metadata=metadata,
            error=str(data["error"]) if data.get("error") is not None else None,
        )


# ---------------------------------------------------------------------------
# Execution proxy / diagnostics
# ---------------------------------------------------------------------------

@dataclass
class ProxyResult:
    success: bool
    data: Any = None
    error: str | None = None
    status_code: int | None = None


@dataclass
class ConnectionTestResult:
    success: bool
    response_time_ms: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "response_time_ms": self.response_time_ms,
        }


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@dataclass
class Conversation:
    id: str
    organization_id: str
    user_id: str
    title: str = ""
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int | None = None
    system_prompt: str | None = None
    kb_ids: list[str] = field(default_factory=list)  # knowledge bases the worker may search

    @property
    def model_config(self) -> ModelConfig:
        return ModelConfig(
            model=self.model, temperature=self.temperature, max_tokens=self.max_tokens
        )


@dataclass
class Message:
    id: str
    conversation_id: str
    organization_id: str
    message_type: MessageType
    content: str = ""
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    sources: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    generation: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "organization_id": self.organization_id,
            "message_type": self.message_type.value,
            "content": self.content,
            "processing_status": self.processing_status.value,
            "sources": self.sources,
            "metadata": self.metadata,
            "error_message": self.error_message,
            "generation": self.generation,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
