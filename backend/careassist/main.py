"""FastAPI application entrypoint for the CareAssist backend."""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from careassist.deps import get_settings
from careassist.routers import conversations as conversations_router
from careassist.routers import notifications as notifications_router
from careassist.routers import salesforce as salesforce_router
from careassist.routers import widget as widget_router
from careassist.telemetry import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="CareAssist API",
        description="""
        Conversation lifecycle and lead automation for CareAssist chat widgets.

        This API provides endpoints for:
        - Widget conversations, visitor messages and polling
        - Agent handoff, AI reply queueing and read receipts
        - Lead field extraction and visitor edits
        - Salesforce connection, trigger rules and lead export
        - Email/Slack notification settings and delivery log
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list: "https://app.example.com,http://localhost:3000"
    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", settings.BACKEND_CORS_ORIGINS)
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    if settings.FRONTEND_URL not in allowed_origins:
        allowed_origins.append(settings.FRONTEND_URL)

    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(widget_router.router)  # Visitor side of the chat
    app.include_router(conversations_router.router)  # Agent dashboard
    app.include_router(salesforce_router.router)  # CRM connection and export
    app.include_router(notifications_router.router)  # Email/Slack settings and log

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return HealthResponse(status="ok")

    return app


app = create_app()
