"""
Observability and monitoring setup for the identity verification service.
"""

import asyncio
from functools import wraps
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
request_counter: Optional[metrics.Counter] = None
request_duration: Optional[metrics.Histogram] = None
error_counter: Optional[metrics.Counter] = None
face_match_counter: Optional[metrics.Counter] = None
face_match_score_histogram: Optional[metrics.Histogram] = None
face_match_disagreement_counter: Optional[metrics.Counter] = None
capture_counter: Optional[metrics.Counter] = None
submission_counter: Optional[metrics.Counter] = None


def setup_observability(
    service_name: str = "identity-verification-service",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global request_counter, request_duration, error_counter
    global face_match_counter, face_match_score_histogram, face_match_disagreement_counter
    global capture_counter, submission_counter

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    # Set up tracing
    trace_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        otlp_span_exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
        trace_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))

    if enable_console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    # Set up metrics
    metric_readers = []

    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000  # 30 seconds
            )
        )

    if enable_console_export:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000  # 60 seconds
            )
        )

    meter_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter(__name__)

    request_counter = meter.create_counter(
        name="http_requests_total",
        description="Total number of HTTP requests",
        unit="1"
    )

    request_duration = meter.create_histogram(
        name="http_request_duration_seconds",
        description="HTTP request duration in seconds",
        unit="s"
    )

    error_counter = meter.create_counter(
        name="http_errors_total",
        description="Total number of HTTP errors",
        unit="1"
    )

    face_match_counter = meter.create_counter(
        name="face_matches_total",
        description="Total number of face comparisons",
        unit="1"
    )

    face_match_score_histogram = meter.create_histogram(
        name="face_match_percentage",
        description="Face comparison match percentages",
        unit="%"
    )

    face_match_disagreement_counter = meter.create_counter(
        name="face_match_disagreements_total",
        description="Comparator verdicts overruled by the local threshold",
        unit="1"
    )

    capture_counter = meter.create_counter(
        name="camera_captures_total",
        description="Total number of camera captures and recordings",
        unit="1"
    )

    submission_counter = meter.create_counter(
        name="verification_submissions_total",
        description="Total number of verification submissions",
        unit="1"
    )

    logger.info("Observability setup completed")


def instrument_fastapi_app(app) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: FastAPI application instance
    """
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info("FastAPI application instrumented with OpenTelemetry")


def _annotate_failure(span, error: Exception) -> None:
    span.record_exception(error)
    span.set_attribute("success", False)
    span.set_attribute("error.type", type(error).__name__)
    span.set_attribute("error.message", str(error))


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        span_name = operation_name or f"{func.__module__}.{func.__name__}"

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    _annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_face_match_metrics(
    success: bool,
    processing_time: float,
    match_percentage: Optional[int],
    is_match: Optional[bool]
) -> None:
    """
    Record metrics for face comparison operations.

    Args:
        success: Whether the comparison completed
        processing_time: Time taken for the comparison in seconds
        match_percentage: Rounded match percentage (if available)
        is_match: Gated verdict (if available)
    """
    if face_match_counter is None or request_duration is None:
        return

    attributes = {
        "operation": "face_match",
        "success": str(success).lower(),
        "is_match": str(bool(is_match)).lower()
    }

    face_match_counter.add(1, attributes)
    request_duration.record(processing_time, {"operation": "face_match"})

    if match_percentage is not None and face_match_score_histogram is not None:
        face_match_score_histogram.record(match_percentage, {"is_match": str(bool(is_match)).lower()})

    logger.info(
        "Face match metrics recorded",
        success=success,
        processing_time=processing_time,
        match_percentage=match_percentage,
        is_match=is_match
    )


def record_match_disagreement(verdict: bool, match_percentage: int, threshold: int) -> None:
    """Count a comparator verdict that disagrees with the local threshold check."""
    if face_match_disagreement_counter is None:
        return
    face_match_disagreement_counter.add(1, {
        "verdict": str(verdict).lower(),
        "threshold": str(threshold)
    })
    logger.warning(
        "Comparator verdict disagrees with threshold",
        verdict=verdict,
        match_percentage=match_percentage,
        threshold=threshold
    )


def record_capture_metrics(kind: str, success: bool, error_type: Optional[str] = None) -> None:
    """
    Record a camera capture outcome.

    Args:
        kind: "photo", "document" or "video"
        success: Whether the capture produced an artifact
        error_type: Capture error class name on failure
    """
    if capture_counter is None:
        return

    attributes = {"kind": kind, "success": str(success).lower()}
    if error_type:
        attributes["error_type"] = error_type
    capture_counter.add(1, attributes)


def record_submission_metrics(success: bool, processing_time: float, attachment_count: int) -> None:
    """
    Record metrics for submission delivery.

    Args:
        success: Whether the submission was delivered
        processing_time: Time taken for delivery in seconds
        attachment_count: Number of attachments sent
    """
    if submission_counter is None or request_duration is None:
        return

    attributes = {
        "operation": "submission",
        "success": str(success).lower()
    }

    submission_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    logger.info(
        "Submission metrics recorded",
        success=success,
        processing_time=processing_time,
        attachment_count=attachment_count
    )


def record_http_metrics(
    method: str,
    path: str,
    status_code: int,
    processing_time: float
) -> None:
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method
        path: Request path
        status_code: HTTP status code
        processing_time: Request processing time in seconds
    """
    if request_counter is None or request_duration is None or error_counter is None:
        return

    attributes = {
        "method": method,
        "path": path,
        "status_code": str(status_code)
    }

    request_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if status_code >= 400:
        error_counter.add(1, {
            **attributes,
            "error_type": "client_error" if status_code < 500 else "server_error"
        })


def get_trace_context() -> Dict[str, Any]:
    """
    Get current trace context information.

    Returns:
        Dict with trace ID and span ID if available
    """
    current_span = trace.get_current_span()
    if current_span is None or not current_span.is_recording():
        return {}

    span_context = current_span.get_span_context()
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
    }


class TracingContextMiddleware:
    """
    Middleware to add tracing context to structured logs.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        trace_context = get_trace_context()
        if trace_context:
            structlog.contextvars.bind_contextvars(**trace_context)
        await self.app(scope, receive, send)
