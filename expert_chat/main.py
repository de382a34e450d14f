"""FastAPI application factory and lifespan."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from expert_chat.api.v1.router import api_router
from expert_chat.config import Settings, get_settings
from expert_chat.core.logging import get_logger, setup_logging
from expert_chat.core.middleware import ObservabilityMiddleware
from expert_chat.database import create_engine, create_session_maker
from expert_chat.deps import AppContext, build_app_context

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    """Build the app. A prebuilt ``context`` skips engine creation (tests)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings)
        ctx = context
        if ctx is None:
            engine = create_engine(settings)
            ctx = build_app_context(settings, create_session_maker(engine), engine=engine)
        app.state.context = ctx
        logger.info("app_started", debug=settings.debug)

        if settings.recover_unreplied_on_startup:
            try:
                replied = await ctx.orchestrator.process_unreplied()
                logger.info("unreplied_recovery_done", replied=replied)
            except Exception:
                logger.exception("unreplied_recovery_failed")

        try:
            yield
        finally:
            await ctx.orchestrator.shutdown()
            if ctx.engine is not None:
                await ctx.engine.dispose()
            logger.info("app_stopped")

    app = FastAPI(title="Expert Chat", debug=settings.debug, lifespan=lifespan)
    app.add_middleware(ObservabilityMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health() -> dict:
        ctx: AppContext | None = getattr(app.state, "context", None)
        return {
            "status": "ok",
            "background_tasks": ctx.orchestrator.pending_tasks if ctx else 0,
        }

    return app
