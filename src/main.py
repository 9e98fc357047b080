"""Main FastAPI application for the identity verification service."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.sessions import router as sessions_router
from src.api.verification import router as verification_router
from src.clients.comparator_client import FaceComparatorClient
from src.clients.delivery_client import SubmissionMailer
from src.config import settings
from src.middleware import (
    RequestLoggingMiddleware,
    RequestSizeLimitMiddleware,
    SecurityHeadersMiddleware,
)
from src.models.api_models import HealthResponse
from src.observability import (
    TracingContextMiddleware,
    instrument_fastapi_app,
    setup_observability,
)
from src.services.face_match_service import FaceMatchService
from src.services.flow_service import FlowRegistry

SERVICE_NAME = "identity-verification-service"
SERVICE_VERSION = "1.0.0"

logging.basicConfig(
    format="%(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO)
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "Starting identity verification service",
        port=settings.port,
        host=settings.host,
        comparator_url=settings.comparator_url,
        match_threshold=settings.match_threshold
    )

    comparator = FaceComparatorClient()
    await comparator.connect()
    face_match_service = FaceMatchService(comparator)
    mailer = SubmissionMailer()

    app.state.comparator = comparator
    app.state.face_match_service = face_match_service
    app.state.mailer = mailer
    app.state.flow_registry = FlowRegistry(face_match_service, mailer)
    eviction = asyncio.create_task(app.state.flow_registry.run_eviction(settings.session_sweep_seconds))

    if not mailer.recipient:
        logger.warning("SMTP_USER / MAIL_TO not set; submissions will fail until configured")

    yield

    logger.info("Shutting down identity verification service")
    eviction.cancel()
    try:
        await eviction
    except asyncio.CancelledError:
        pass
    await app.state.flow_registry.close_all()
    await comparator.close()


setup_observability(
    service_name=SERVICE_NAME,
    service_version=SERVICE_VERSION,
    otlp_endpoint=settings.otlp_endpoint,
    enable_console_export=settings.otel_console_export
)

app = FastAPI(
    title="Identity Verification Service",
    description="Guided identity verification with document capture, face matching and submission delivery",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Instrument before the middleware stack is built on first request
instrument_fastapi_app(app)

# Add middleware (order matters - last added is executed first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.max_request_bytes)
app.add_middleware(TracingContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(verification_router)
app.include_router(sessions_router)


@app.get("/healthz", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow(),
        version=SERVICE_VERSION
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
