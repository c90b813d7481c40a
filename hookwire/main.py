"""Hookwire entry point: wires the engine, handlers and HTTP server together."""

from __future__ import annotations

import asyncio
import importlib
import signal
import sys
from typing import Sequence

import click

from hookwire.config import HandlerConfig, Settings, load_settings
from hookwire.core.bus import FanOutObserver, LoggingObserver, Observer
from hookwire.core.dedup import EventStore, MemoryEventStore, SqliteEventStore
from hookwire.core.pipeline import WebhookEngine
from hookwire.core.registry import HandlerFunc
from hookwire.errors import ConfigError
from hookwire.utils.logging import get_logger, setup_logging
from hookwire.webhooks.server import WebhookServer

log = get_logger(__name__)


def resolve_target(target: str) -> HandlerFunc:
    """Import ``package.module:attr`` and return the callable."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Handler target must look like 'module:callable', got '{target}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import handler module '{module_name}': {exc}") from exc

    obj = module
    for part in attr.split("."):
        obj = getattr(obj, part, None)
        if obj is None:
            raise ConfigError(f"Handler '{target}' not found")
    if not callable(obj):
        raise ConfigError(f"Handler '{target}' is not callable")
    return obj


def register_handlers(engine: WebhookEngine, handlers: list[HandlerConfig]) -> None:
    for entry in handlers:
        engine.register_handler(
            entry.provider,
            entry.event_type,
            resolve_target(entry.target),
            priority=entry.priority,
            run_async=entry.run_async,
            retry_delays=entry.retry_delays,
            max_attempts=entry.max_attempts,
            name=entry.target,
        )


def build_store(settings: Settings) -> EventStore:
    if settings.engine.store == "sqlite":
        return SqliteEventStore(settings.get_data_dir() / "events.db")
    if settings.engine.store == "memory":
        return MemoryEventStore()
    raise ConfigError(f"Unknown event store: {settings.engine.store}")


def build_engine(settings: Settings, observers: Sequence[Observer] = ()) -> WebhookEngine:
    """Build the engine from settings; ``observers`` are notified alongside the log."""
    engine = WebhookEngine(
        settings.provider_snapshot(),
        store=build_store(settings),
        observer=FanOutObserver(LoggingObserver(), *observers),
        production_mode=settings.engine.production_mode,
        default_timestamp_tolerance=settings.engine.default_timestamp_tolerance,
        handler_timeout=settings.engine.handler_timeout_seconds,
        worker_count=settings.engine.worker_count,
    )
    register_handlers(engine, settings.handlers)
    return engine


class Hookwire:
    """Main application orchestrator."""

    def __init__(self, settings: Settings, observers: Sequence[Observer] = ()) -> None:
        self.settings = settings
        self.engine = build_engine(settings, observers)
        self.server = WebhookServer(settings.server, self.engine)

    async def start(self) -> None:
        log.info("hookwire_starting", version="0.1.0", providers=len(self.engine.providers))
        await self.engine.start()
        await self.server.start()
        log.info("hookwire_ready", handler_providers=self.engine.registry.providers())

    async def stop(self) -> None:
        log.info("hookwire_stopping")
        await self.server.stop()
        await self.engine.stop()
        log.info("hookwire_stopped")


async def run(settings: Settings) -> None:
    app = Hookwire(settings)

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
    finally:
        await app.stop()


@click.group()
def cli() -> None:
    """Hookwire - webhook ingestion gateway."""


@cli.command()
@click.option("--config", "config_path", type=click.Path(), default=None, help="Path to config YAML.")
@click.option("--log-level", default=None, help="Override log level (DEBUG, INFO, ...).")
@click.option("--json-logs", is_flag=True, default=False, help="Emit JSON log lines.")
def serve(config_path: str | None, log_level: str | None, json_logs: bool) -> None:
    """Run the webhook HTTP server."""
    try:
        settings = load_settings(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)

    setup_logging(log_level or settings.log_level, json_output=json_logs or settings.log_json)

    try:
        asyncio.run(run(settings))
    except ConfigError as exc:
        log.error("startup_failed", error=str(exc))
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
