"""Webhook HTTP server using aiohttp."""

from __future__ import annotations

from aiohttp import web

from hookwire.config import ServerConfig
from hookwire.core.pipeline import WebhookEngine
from hookwire.errors import IngestStatus
from hookwire.models import IngestResult
from hookwire.utils.logging import delivery_context, get_logger

log = get_logger(__name__)


class WebhookServer:
    """Receives webhooks over HTTP and hands them to the engine."""

    def __init__(self, config: ServerConfig, engine: WebhookEngine) -> None:
        self._config = config
        self._engine = engine
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.bind, self._config.port)
        await site.start()
        log.info(
            "webhook_server_started",
            bind=self._config.bind,
            port=self._config.port,
            path_prefix=self._config.path_prefix,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("webhook_server_stopped")

    # ------------------------------------------------------------------
    # App construction
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self._config.client_max_size)
        prefix = "/" + self._config.path_prefix.strip("/")
        app.router.add_post(f"{prefix.rstrip('/')}/{{provider}}", self._handle_webhook)
        return app

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        provider = request.match_info["provider"]

        with delivery_context(provider, request.headers.get("X-Request-Id")):
            limit = self._body_limit(provider)
            declared = request.content_length
            if declared is not None and declared > limit:
                log.warning("payload_rejected", content_length=declared, limit=limit)
                return self._to_response(_TOO_LARGE)
            try:
                body = await request.read()
            except web.HTTPRequestEntityTooLarge:
                log.warning("payload_rejected", limit=self._config.client_max_size)
                return self._to_response(_TOO_LARGE)

            result = await self._engine.process_inbound(provider, body, request.headers)
            log.debug("webhook_response", status=result.status.value, size=len(body))
        return self._to_response(result)

    def _body_limit(self, provider: str) -> int:
        """Largest body accepted for ``provider`` before it is read."""
        limit = self._config.client_max_size
        config = self._engine.providers.get(provider)
        if config is not None and config.active and config.payload_limit_enabled:
            limit = min(limit, config.max_payload_size_bytes or limit)
        return limit

    @staticmethod
    def _to_response(result: IngestResult) -> web.Response:
        payload: dict[str, str] = {"status": result.status.value, "reason": result.reason}
        if result.event is not None:
            payload["id"] = result.event.event_id
        return web.json_response(payload, status=result.http_status_hint)


_TOO_LARGE = IngestResult(IngestStatus.PAYLOAD_TOO_LARGE, "Payload too large")
