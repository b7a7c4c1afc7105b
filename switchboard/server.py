"""Operator HTTP surface using aiohttp."""

from __future__ import annotations

import asyncio
import hmac
import json
from typing import Any

from aiohttp import web

from switchboard.config import ChatConfig, ServerConfig
from switchboard.core.bus import Event, EventBus, EventType, Subscription
from switchboard.core.pipeline import ChatPipeline
from switchboard.core.prober import DiagnosticProber
from switchboard.errors import MessageNotFound
from switchboard.messages.store import MessageStore
from switchboard.models import Capability, MessageType, ProcessingStatus
from switchboard.utils.logging import get_logger

log = get_logger(__name__)

_TERMINAL_STATUSES = {ProcessingStatus.COMPLETED.value, ProcessingStatus.ERROR.value}
_KEEPALIVE_SECONDS = 15.0


def format_sse(event: str, data: dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode()


def validate_token(provided: str, configured: str) -> bool:
    """Constant-time shared secret check.

    Returns False if no token is configured (rejects unauthenticated requests).
    """
    if not configured:
        return False
    if not provided:
        return False
    return hmac.compare_digest(provided, configured)


class AdminServer:
    """Accepts chat dispatch, regenerate and webhook test requests.

    With a bus, status changes and test results are also streamed to
    clients as server-sent events.
    """

    def __init__(
        self,
        config: ServerConfig,
        pipeline: ChatPipeline,
        prober: DiagnosticProber,
        store: MessageStore,
        chat: ChatConfig | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._chat = chat or ChatConfig()
        self._pipeline = pipeline
        self._prober = prober
        self._store = store
        self._bus = bus
        self._streams: set[asyncio.Queue[Event | None]] = set()
        self._runner: web.AppRunner | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._config.token:
            log.warning(
                "admin_server_no_token",
                msg="No admin token configured, all requests will be rejected. Set server.token in config.",
            )
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.bind, self._config.port)
        await site.start()
        log.info("admin_server_started", bind=self._config.bind, port=self._config.port)

    async def wait_idle(self) -> None:
        """Wait for in-flight dispatch tasks to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for queue in self._streams:
            queue.put_nowait(None)
        await self.wait_idle()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("admin_server_stopped")

    # ------------------------------------------------------------------
    # App construction
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_post("/conversations", self._create_conversation)
        app.router.add_post("/conversations/{conversation_id}/messages", self._send_message)
        app.router.add_post("/messages/{message_id}/regenerate", self._regenerate)
        app.router.add_get("/messages/{message_id}", self._get_message)
        app.router.add_get("/messages/{message_id}/events", self._message_events)
        app.router.add_get("/events", self._events)
        app.router.add_post("/webhooks/{capability}/test", self._test_webhook)
        return app

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        provided = request.headers.get("X-Admin-Token", "")
        if not provided:
            provided = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
        if not validate_token(provided, self._config.token):
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def _create_conversation(self, request: web.Request) -> web.Response:
        try:
            body: dict[str, Any] = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)

        organization_id = str(body.get("organization_id", "")).strip()
        user_id = str(body.get("user_id", "")).strip()
        if not organization_id or not user_id:
            return web.json_response({"error": "organization_id and user_id are required"}, status=400)

        kb_ids = body.get("kb_ids", [])
        if not isinstance(kb_ids, list) or not all(isinstance(k, str) for k in kb_ids):
            return web.json_response({"error": "kb_ids must be a list of strings"}, status=400)

        conversation = await self._store.create_conversation(
            organization_id,
            user_id,
            title=str(body.get("title", "")),
            model=body.get("model") or self._chat.model,
            temperature=float(body.get("temperature", self._chat.temperature)),
            max_tokens=body.get("max_tokens", self._chat.max_tokens),
            system_prompt=body.get("system_prompt"),
            kb_ids=kb_ids,
        )
        return web.json_response({"conversation_id": conversation.id}, status=201)

    async def _send_message(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["conversation_id"]
        try:
            body: dict[str, Any] = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)

        content = str(body.get("content", "")).strip()
        user_id = str(body.get("user_id", "")).strip()
        if not content or not user_id:
            return web.json_response({"error": "content and user_id are required"}, status=400)

        try:
            assistant = await self._pipeline.create_turn(conversation_id, content, user_id)
        except MessageNotFound as e:
            return web.json_response({"error": str(e)}, status=404)

        self._spawn(self._pipeline.process(assistant.id), assistant.id)
        return web.json_response({"message_id": assistant.id}, status=202)

    async def _regenerate(self, request: web.Request) -> web.Response:
        message_id = request.match_info["message_id"]
        message = await self._store.get_message(message_id)
        if message is None:
            return web.json_response({"error": f"Message '{message_id}' not found"}, status=404)
        if message.message_type is not MessageType.ASSISTANT:
            return web.json_response(
                {"error": f"Message '{message_id}' is not an assistant message"}, status=400
            )

        self._spawn(self._pipeline.regenerate(message_id), message_id)
        return web.json_response({"message_id": message_id}, status=202)

    async def _get_message(self, request: web.Request) -> web.Response:
        message_id = request.match_info["message_id"]
        message = await self._store.get_message(message_id)
        if message is None:
            return web.json_response({"error": f"Message '{message_id}' not found"}, status=404)
        return web.json_response(message.to_dict())

    async def _message_events(self, request: web.Request) -> web.StreamResponse:
        """Stream one message's status until it completes or fails.

        The first event is a ``snapshot`` of the stored message, so a client
        connecting late still sees the current state.
        """
        if self._bus is None:
            return web.json_response({"error": "Event streaming is not enabled"}, status=404)

        message_id = request.match_info["message_id"]
        queue: asyncio.Queue[Event | None] = asyncio.Queue()
        # Subscribe before reading the snapshot so no transition is missed
        subscriptions = self._open_stream(queue, (EventType.MESSAGE_STATUS_CHANGED,), message_id)
        try:
            message = await self._store.get_message(message_id)
            if message is None:
                return web.json_response({"error": f"Message '{message_id}' not found"}, status=404)

            response = await self._prepare_stream(request)
            await response.write(format_sse("snapshot", message.to_dict()))
            if message.processing_status.value not in _TERMINAL_STATUSES:
                await self._pump(response, queue, until_terminal=True)
            return response
        finally:
            self._close_stream(queue, subscriptions)

    async def _events(self, request: web.Request) -> web.StreamResponse:
        if self._bus is None:
            return web.json_response({"error": "Event streaming is not enabled"}, status=404)

        queue: asyncio.Queue[Event | None] = asyncio.Queue()
        subscriptions = self._open_stream(queue, tuple(EventType))
        try:
            response = await self._prepare_stream(request)
            await self._pump(response, queue, until_terminal=False)
            return response
        finally:
            self._close_stream(queue, subscriptions)

    async def _test_webhook(self, request: web.Request) -> web.Response:
        raw = request.match_info["capability"]
        try:
            capability = Capability(raw)
        except ValueError:
            return web.json_response({"error": f"Unknown capability '{raw}'"}, status=400)

        result = await self._prober.test_connection(capability)
        return web.json_response(result.to_dict())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_stream(
        self,
        queue: asyncio.Queue[Event | None],
        event_types: tuple[EventType, ...],
        message_id: str | None = None,
    ) -> list[Subscription]:
        assert self._bus is not None

        async def forward(event: Event) -> None:
            if message_id is None or event.data.get("message_id") == message_id:
                queue.put_nowait(event)

        self._streams.add(queue)
        return [self._bus.subscribe(event_type, forward) for event_type in event_types]

    def _close_stream(self, queue: asyncio.Queue[Event | None], subscriptions: list[Subscription]) -> None:
        assert self._bus is not None
        for subscription in subscriptions:
            self._bus.unsubscribe(subscription)
        self._streams.discard(queue)

    async def _prepare_stream(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
        })
        await response.prepare(request)
        return response

    async def _pump(
        self,
        response: web.StreamResponse,
        queue: asyncio.Queue[Event | None],
        until_terminal: bool,
    ) -> None:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                await response.write(b": keepalive\n\n")
                continue
            if event is None:  # server shutting down
                return
            await response.write(format_sse(event.type.value, event.to_dict()))
            if until_terminal and event.data.get("status") in _TERMINAL_STATUSES:
                return

    def _spawn(self, coro: Any, message_id: str) -> None:
        task = asyncio.create_task(coro, name=f"dispatch-{message_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("dispatch_task_failed", task=task.get_name(), exc_info=task.exception())
