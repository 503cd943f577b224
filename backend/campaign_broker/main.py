"""Application entry point for the campaign broker API."""

import asyncio

import anyio
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from sqlalchemy import text

from campaign_broker.api.routes.campaigns import router as campaigns_router
from campaign_broker.api.routes.segments import router as segments_router
from campaign_broker.api.routes.webhooks import router as webhooks_router
from campaign_broker.broker import run_broker
from campaign_broker.container import Container, build_container
from campaign_broker.core.config import Settings, settings as default_settings
from campaign_broker.core.logging import setup_logging
from campaign_broker.core.middleware import RequestContextLogMiddleware


def _cors_origins(settings: Settings) -> list[str]:
    if settings.ENV == "prod":
        if not settings.CORS_ALLOWED_ORIGINS:
            raise RuntimeError("CORS_ALLOWED_ORIGINS must be configured for prod")
        return settings.CORS_ALLOWED_ORIGINS
    return settings.CORS_ALLOWED_ORIGINS or ["http://localhost:5173"]


def create_app(settings: Settings | None = None, container: Container | None = None) -> FastAPI:
    """Build the API. A prebuilt ``container`` skips startup wiring (tests)."""

    settings = settings or (container.settings if container else default_settings)
    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)
    app.state.container = container
    app.state.broker_stop = None
    app.state.broker_task = None

    app.add_middleware(RequestContextLogMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Wire services and optionally run the broker loops in-process."""

        if app.state.container is None:
            app.state.container = build_container(settings)
        container: Container = app.state.container
        if settings.DB_AUTO_CREATE:
            await container.create_schema()
        if settings.EMBEDDED_BROKER:
            app.state.broker_stop = anyio.Event()
            app.state.broker_task = asyncio.create_task(
                run_broker(container, app.state.broker_stop, handle_signals=False)
            )
            logger.info("embedded_broker_started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Drain the embedded broker and release connections."""

        if app.state.broker_task is not None:
            app.state.broker_stop.set()
            await app.state.broker_task
        if app.state.container is not None:
            await app.state.container.close()

    @app.get("/api/healthz", tags=["system"], summary="Liveness probe")
    def healthz() -> dict[str, str]:
        """Simple liveness probe that load balancers and monitors can call."""

        return {"status": "ok"}

    @app.get("/api/readyz", tags=["system"], summary="Readiness probe")
    async def readyz(request: Request):
        container: Container = request.app.state.container
        try:
            async with container.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception:
            raise HTTPException(status_code=503, detail="Database not reachable")
        try:
            bus_ok = await container.bus.ping()
        except Exception:
            bus_ok = False
        if not bus_ok:
            raise HTTPException(status_code=503, detail="Message bus not reachable")
        return {"ready": True}

    app.include_router(segments_router, prefix="/api")
    app.include_router(campaigns_router, prefix="/api")
    app.include_router(webhooks_router, prefix="/api")
    return app


setup_logging()

app = create_app()
