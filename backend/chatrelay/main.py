import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatrelay.api.router import api_router
from chatrelay.config import Settings, get_settings
from chatrelay.services.llm_provider import UpstreamClient, get_upstream_client
from chatrelay.services.rate_limiter import RateLimiter, build_rate_limiter
from chatrelay.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    upstream: UpstreamClient | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """Build the relay app. Components not passed in are created from settings."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup/shutdown lifecycle."""
        setup_logging(settings.log_level)
        logger.info("Chat relay starting up...")
        if not settings.api_key_configured:
            if settings.require_api_key:
                raise RuntimeError("OPENAI_API_KEY is not configured.")
            logger.error(
                "OPENAI_API_KEY is not configured; chat requests will fail with UpstreamAuthFailed."
            )
        yield
        await app.state.rate_limiter.close()
        logger.info("Chat relay shutting down...")

    app = FastAPI(
        title="Chat Relay",
        description="Streaming relay between chat clients and an LLM provider",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.upstream = upstream or get_upstream_client(settings)
    app.state.rate_limiter = rate_limiter or build_rate_limiter(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    @app.exception_handler(500)
    async def internal_error_handler(request: Request, exc):
        logger.exception("Internal server error")
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "code": 500,
                "error": "InternalError",
                "message": "An internal error occurred. Please try again later.",
            },
        )

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the relay with uvicorn."""
    settings = get_settings()
    uvicorn.run("chatrelay.main:app", host=settings.host, port=settings.port)
