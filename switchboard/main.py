"""Switchboard entry point: wires the stores, dispatch path and admin server."""

from __future__ import annotations

import asyncio
import signal
import sys

import click

from switchboard import __version__
from switchboard.config import Settings, load_settings
from switchboard.core.bus import EventBus
from switchboard.core.dispatcher import RetryDispatcher, RetryPolicy
from switchboard.core.pipeline import ChatPipeline
from switchboard.core.prober import DiagnosticProber
from switchboard.core.proxy import create_proxy
from switchboard.core.resolver import WebhookResolver
from switchboard.core.tracker import MessageStatusTracker
from switchboard.errors import InvalidConfiguration
from switchboard.messages.store import MessageStore
from switchboard.models import Capability, WebhookConfig
from switchboard.registry.store import WebhookRegistry
from switchboard.server import AdminServer
from switchboard.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


class Switchboard:
    """Main application orchestrator."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        data_dir = settings.get_data_dir()

        self.bus = EventBus()
        self.registry = WebhookRegistry(data_dir / "registry.db")
        self.store = MessageStore(data_dir / "messages.db")
        self.proxy = create_proxy(settings.proxy)

        self.resolver = WebhookResolver(self.registry, settings.resolver)
        self.dispatcher = RetryDispatcher(self.proxy, RetryPolicy.from_config(settings.retry))
        self.tracker = MessageStatusTracker(self.store, self.bus)
        self.pipeline = ChatPipeline(
            self.store,
            self.resolver,
            self.dispatcher,
            self.tracker,
            registry=self.registry,
            max_context_messages=settings.chat.max_context_messages,
        )
        self.prober = DiagnosticProber(self.resolver, self.proxy, self.registry, self.bus)
        self.server = AdminServer(
            settings.server, self.pipeline, self.prober, self.store, settings.chat, bus=self.bus
        )

    async def open(self) -> None:
        await self.registry.start()
        await self.store.start()

    async def close(self) -> None:
        await self.store.stop()
        await self.registry.stop()
        await self.proxy.close()

    async def start(self) -> None:
        log.info("switchboard_starting", version=__version__, proxy_mode=self.settings.proxy.mode)
        await self.open()

        # Messages orphaned by a previous shutdown
        await self.tracker.fail_stuck(self.settings.chat.stuck_after_seconds)

        await self.bus.start()
        await self.server.start()
        log.info("switchboard_ready")

    async def stop(self) -> None:
        log.info("switchboard_stopping")
        await self.server.stop()
        await self.bus.stop()
        await self.close()
        log.info("switchboard_stopped")


async def run(settings: Settings) -> None:
    app = Switchboard(settings)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        log.info("shutdown_signal")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

    await app.start()

    try:
        if sys.platform == "win32":
            while not stop_event.is_set():
                await asyncio.sleep(1)
        else:
            await stop_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


async def _test_connection(settings: Settings, capability: str) -> bool:
    app = Switchboard(settings)
    await app.open()
    try:
        result = await app.prober.test_connection(capability)
    finally:
        await app.close()
    if result.success:
        click.echo(f"OK ({result.response_time_ms} ms)")
    else:
        click.echo(f"FAILED ({result.response_time_ms} ms): {result.error}", err=True)
    return result.success


async def _register(settings: Settings, config: WebhookConfig) -> WebhookConfig:
    app = Switchboard(settings)
    await app.open()
    try:
        return await app.registry.add(config)
    finally:
        await app.close()


async def _recover_stuck(settings: Settings, older_than: int) -> int:
    app = Switchboard(settings)
    await app.open()
    try:
        return await app.tracker.fail_stuck(older_than)
    finally:
        await app.close()


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Switchboard webhook dispatch service."""
    settings = load_settings(config_path)
    if log_level:
        settings.log_level = log_level
    setup_logging(level=settings.log_level, json_output=settings.log_json)
    ctx.obj = settings


@cli.command()
@click.pass_obj
def serve(settings: Settings) -> None:
    """Run the admin server until interrupted."""
    asyncio.run(run(settings))


@cli.command("test-connection")
@click.argument("capability", type=click.Choice([c.value for c in Capability]))
@click.pass_obj
def test_connection(settings: Settings, capability: str) -> None:
    """Probe the webhook serving CAPABILITY."""
    if not asyncio.run(_test_connection(settings, capability)):
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.argument("url")
@click.option("--feature", default="knowledge-base", show_default=True)
@click.option("--capability", type=click.Choice([c.value for c in Capability]), default=None)
@click.option("--method", default="POST", show_default=True)
@click.option("--timeout", "timeout_seconds", default=30, show_default=True)
@click.option("--retries", "retry_attempts", default=3, show_default=True)
@click.pass_obj
def register(
    settings: Settings,
    name: str,
    url: str,
    feature: str,
    capability: str | None,
    method: str,
    timeout_seconds: int,
    retry_attempts: int,
) -> None:
    """Register a webhook NAME at URL."""
    config = WebhookConfig(
        feature=feature,
        name=name,
        endpoint_url=url,
        http_method=method,
        timeout_seconds=timeout_seconds,
        retry_attempts=retry_attempts,
        capability=Capability(capability) if capability else None,
    )
    try:
        saved = asyncio.run(_register(settings, config))
    except InvalidConfiguration as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Registered webhook {saved.id}: {saved.name}")


@cli.command("recover-stuck")
@click.option("--older-than", default=None, type=int, help="Seconds (default: chat.stuck_after_seconds)")
@click.pass_obj
def recover_stuck(settings: Settings, older_than: int | None) -> None:
    """Fail messages stuck in processing."""
    window = older_than if older_than is not None else settings.chat.stuck_after_seconds
    count = asyncio.run(_recover_stuck(settings, window))
    click.echo(f"Failed {count} stuck message(s).")


if __name__ == "__main__":
    cli()
