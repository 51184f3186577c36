"""FastAPI surface for the region capture engine.

Provides REST endpoints for:
- Health checks
- Capture messages (capture, cancel, manual save, status, ping)
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Body, FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from region_capture.capture.host import CaptureHost, DirectoryPersistence
from region_capture.capture.messages import PROTOCOL_VERSION, MessageRouter, parse_request
from region_capture.capture.service import RegionCaptureService
from region_capture.config import CaptureSettings, get_settings
from region_capture.utils.logging import configure_logging

logger = structlog.get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str
    active_sessions: int


def create_app(message_router: MessageRouter) -> FastAPI:
    """
    Build the API app around a message router.

    Args:
        message_router: Router bound to the capture service

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Region Capture API",
        description="Scroll-and-stitch capture of page regions",
        version=PROTOCOL_VERSION,
    )
    router = APIRouter(prefix="/api/v1/capture", tags=["Capture"])

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return HealthResponse(
            status="healthy",
            version=PROTOCOL_VERSION,
            timestamp=datetime.now(UTC).isoformat(),
            active_sessions=len(message_router.service.store.active_sessions()),
        )

    @router.post("/messages")
    async def handle_message(payload: dict[str, Any] = Body(...)):
        """Dispatch one typed capture message and return its typed response."""
        try:
            message = parse_request(payload)
        except ValidationError as e:
            logger.warning("Rejected capture message", errors=e.error_count())
            raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e

        response = await message_router.handle(message)
        return response.model_dump()

    app.include_router(router)
    app.state.message_router = message_router
    return app


def create_capture_app(host: CaptureHost, settings: CaptureSettings | None = None) -> FastAPI:
    """
    Build the API app for a capture host from settings.

    Configures logging from ``log_level``/``log_json`` and saves captures
    under ``output_dir``.
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    persistence = DirectoryPersistence(settings.output_dir)
    service = RegionCaptureService(host, persistence=persistence, settings=settings)
    app = create_app(MessageRouter(service))

    logger.info(
        "Region capture API configured",
        version=PROTOCOL_VERSION,
        output_dir=settings.output_dir,
    )
    return app
