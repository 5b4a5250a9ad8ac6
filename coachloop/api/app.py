"""
FastAPI application for the coachloop chat API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coachloop.errors import (
    CoachLoopError,
    SessionBusy,
    SessionNotFound,
    SessionOwnershipError,
)
from coachloop.runtime import TurnRunner
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)

_ERROR_STATUS = {
    SessionBusy: 409,
    SessionNotFound: 404,
    SessionOwnershipError: 403,
}


async def coachloop_error_handler(request: Request, exc: CoachLoopError) -> JSONResponse:
    status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status == 500:
        logger.error("api_unhandled_error", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


def create_app(runner: TurnRunner | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        runner: Pre-built runner with domain tools and knowledge sources.
            When omitted, one is assembled from settings at startup.
    """
    from .routes import chat, sessions

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("coachloop_api_starting")
        if getattr(app.state, "runner", None) is None:
            from .deps import create_runner_from_settings

            try:
                app.state.runner = create_runner_from_settings()
            except Exception as e:
                logger.error("coachloop_api_init_failed", error=str(e), exc_info=True)
                raise
        logger.info(
            "coachloop_api_initialized",
            tools=app.state.runner.tools.names(),
            knowledge_sources=app.state.runner.knowledge.ids(),
        )
        yield
        logger.info("coachloop_api_shutdown")

    app = FastAPI(
        title="coachloop API",
        description="Agent turn execution and session inspection.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CoachLoopError, coachloop_error_handler)

    app.include_router(chat.router)
    app.include_router(sessions.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


__all__ = ["create_app"]
