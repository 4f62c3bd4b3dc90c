from typing import Optional
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from memory_relay.application.api.route.chat import router as chat_router
from memory_relay.domain.context.memory.session_store import ConversationStore
from memory_relay.domain.memory.memory_distiller import MemoryDistiller
from memory_relay.domain.orchestration.relay_service import RelayService
from memory_relay.domain.streaming.relay_streamer import RelayStreamer, UpstreamError
from memory_relay.infrastructure.config.settings import RelaySettings
from memory_relay.infrastructure.observability.logging import metrics, setup_logging

logger = structlog.get_logger(__name__)


def build_relay_service(settings: RelaySettings, client: httpx.AsyncClient) -> RelayService:
    """Wire the relay components around one upstream client"""

    streamer = RelayStreamer(
        client,
        upstream_url=settings.upstream_url,
        api_key=settings.upstream_api_key,
        max_attempts=settings.max_upstream_attempts,
        idle_timeout=settings.idle_timeout_seconds,
        watchdog_interval=settings.watchdog_interval_seconds,
        request_timeout=settings.request_timeout_seconds,
        keepalive=settings.keepalive_enabled
    )
    distiller = MemoryDistiller(
        streamer,
        model=settings.distill_model,
        max_tokens=settings.distill_max_tokens,
        temperature=settings.distill_temperature
    )
    return RelayService(settings, ConversationStore(settings.sessions_dir), streamer, distiller)


def create_app(
    settings: Optional[RelaySettings] = None,
    client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """Create the relay application; `client` overrides the upstream HTTP client"""

    settings = settings or RelaySettings.from_env()
    setup_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        upstream_client = client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        app.state.relay_service = build_relay_service(settings, upstream_client)

        if not settings.upstream_api_key:
            logger.warning("No upstream credential configured (GLM_API_KEY)")
        logger.info("Memory relay started", port=settings.port, upstream=settings.upstream_url)

        try:
            yield
        finally:
            await app.state.relay_service.drain()
            if client is None:
                await upstream_client.aclose()
            logger.info("Memory relay shutdown", metrics=metrics.get_metrics_summary())

    app = FastAPI(title="Memory Relay", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError):
        logger.error("Upstream failure", error=str(exc), path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "proxy failure"})

    app.include_router(chat_router)

    return app


def main():
    import uvicorn

    settings = RelaySettings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
