"""
Verification API endpoints: face comparison proxy and form submission.
"""

import asyncio
import time
from datetime import datetime
from typing import Optional, Union

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from src.api.dependencies import get_comparator, get_mailer
from src.clients.camera_client import enumerate_devices
from src.clients.comparator_client import (
    ComparisonServiceError,
    FaceComparatorClient,
    InvalidInput,
    TransportError,
)
from src.clients.delivery_client import (
    DeliveryFailed,
    PayloadTooLarge,
    SubmissionMailer,
    attachments_from_data_urls,
)
from src.config import settings
from src.middleware import get_correlation_id
from src.models.api_models import (
    CameraListResponse,
    CompareFacesRequest,
    CompareFacesResponse,
    ErrorResponse,
    MatchResultModel,
    ServiceStatusResponse,
    StepperFormRequest,
    SubmissionResponse,
)
from src.models.internal_models import MatchResult, PersonalInfo, SubmissionPayload
from src.observability import record_submission_metrics, trace_function

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["verification"])


def create_error_response(
    error_type: str,
    message: str,
    correlation_id: str,
    status_code: int = 500,
    guidance: Optional[str] = None
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=error_type,
        message=message,
        guidance=guidance,
        correlation_id=correlation_id,
        timestamp=datetime.utcnow()
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json")
    )


def match_result_from_model(model: MatchResultModel, threshold: int) -> MatchResult:
    """Re-gate a client-reported match result against the local threshold."""
    return MatchResult(
        match_percentage=model.matchPercentage,
        is_match=model.isMatch and model.matchPercentage >= threshold,
        method=model.method,
        threshold=threshold
    )


@router.get("/compare-faces", response_model=ServiceStatusResponse)
async def compare_faces_status() -> ServiceStatusResponse:
    """Status probe for the face comparison endpoint."""
    return ServiceStatusResponse(
        message="Compare faces API endpoint is working",
        timestamp=datetime.utcnow()
    )


@router.post("/compare-faces", response_model=CompareFacesResponse)
@trace_function("compare_faces_endpoint")
async def compare_faces(
    request: CompareFacesRequest,
    http_request: Request,
    comparator: FaceComparatorClient = Depends(get_comparator)
) -> Union[CompareFacesResponse, JSONResponse]:
    """
    Forward two data-URL images to the face comparator.

    Returns the comparator's raw verdict; threshold gating is applied by the
    verification flow, not by this proxy.

    Args:
        request: Document image and live image as data URLs
        http_request: HTTP request for correlation ID extraction

    Returns:
        CompareFacesResponse with percentage, verdict and method
    """
    correlation_id = get_correlation_id(http_request)

    if not request.id_image or not request.live_image:
        return create_error_response(
            "InvalidInput",
            "Both id_image and live_image are required",
            correlation_id,
            status_code=400
        )

    logger.info("Face comparison request received", correlation_id=correlation_id)

    try:
        verdict = await comparator.compare(request.id_image, request.live_image)
    except InvalidInput as e:
        return create_error_response("InvalidInput", str(e), correlation_id, status_code=400)
    except ComparisonServiceError as e:
        logger.error("Face comparator error", error=str(e), upstream_status=e.status_code)
        status_code = e.status_code if e.status_code and e.status_code >= 400 else 422
        return create_error_response("ComparisonServiceError", str(e), correlation_id, status_code=status_code)
    except TransportError as e:
        logger.error("Face comparator unreachable", error=str(e))
        return create_error_response(
            "TransportError",
            "Face comparison service is unavailable",
            correlation_id,
            status_code=502,
            guidance="Please try again in a moment."
        )

    return CompareFacesResponse(
        success=True,
        match_percentage=max(0.0, min(100.0, verdict.match_percentage)),
        is_match=verdict.is_match,
        method=verdict.method
    )


@router.get("/cameras", response_model=CameraListResponse)
async def list_cameras() -> CameraListResponse:
    """List the camera devices a session can start."""
    devices = await asyncio.to_thread(enumerate_devices)
    logger.info("Camera devices listed", count=len(devices))
    return CameraListResponse(devices=devices, default=settings.camera_index)


@router.get("/stepper-form", response_model=ServiceStatusResponse)
async def stepper_form_status() -> ServiceStatusResponse:
    """Status probe for the submission endpoint."""
    return ServiceStatusResponse(
        message="Stepper form API endpoint is working",
        timestamp=datetime.utcnow()
    )


@router.post("/stepper-form", response_model=SubmissionResponse)
@trace_function("stepper_form_endpoint")
async def submit_stepper_form(
    request: StepperFormRequest,
    http_request: Request,
    mailer: SubmissionMailer = Depends(get_mailer)
) -> Union[SubmissionResponse, JSONResponse]:
    """
    Deliver a completed verification form to the back office.

    Captured document images take precedence over uploaded ones. Images that
    fail to decode are left out rather than failing the submission.
    """
    correlation_id = get_correlation_id(http_request)

    if not request.fullName or not request.email or not request.phone:
        return create_error_response(
            "ValidationError",
            "Name, email, and phone are required",
            correlation_id,
            status_code=400
        )

    personal_info = PersonalInfo(
        full_name=request.fullName,
        phone=request.phone,
        email=request.email,
        region=request.province or "",
        license_number=request.licenseNumber or "",
        date_of_birth=request.dateOfBirth or "",
        blood_type=request.bloodType,
        national_id=request.nationalId,
        address=request.address
    )
    attachments = attachments_from_data_urls(
        request.fullName,
        front_id=request.frontIdCaptured or request.frontId,
        back_id=request.backIdCaptured or request.backId,
        selfie=request.selfie
    )
    match_result = (
        match_result_from_model(request.matchResult, settings.match_threshold)
        if request.matchResult else None
    )
    payload = SubmissionPayload(
        personal_info=personal_info,
        attachments=tuple(attachments),
        match_result=match_result
    )

    logger.info(
        "Submission received",
        attachments=len(attachments),
        has_match_result=match_result is not None,
        correlation_id=correlation_id
    )

    start_time = time.time()
    try:
        receipt = await mailer.deliver(payload)
    except PayloadTooLarge as e:
        record_submission_metrics(False, time.time() - start_time, len(attachments))
        return create_error_response(
            "PayloadTooLarge",
            str(e),
            correlation_id,
            status_code=413,
            guidance="Use smaller images and submit again."
        )
    except DeliveryFailed as e:
        record_submission_metrics(False, time.time() - start_time, len(attachments))
        logger.error("Submission delivery failed", error=str(e), correlation_id=correlation_id)
        return create_error_response(
            "DeliveryFailed",
            "Failed to submit verification request",
            correlation_id,
            status_code=502,
            guidance="Please try again later."
        )

    record_submission_metrics(True, time.time() - start_time, receipt.attachment_count)
    return SubmissionResponse(
        success=True,
        message="Verification request submitted",
        messageId=receipt.message_id,
        attachments=receipt.attachment_count
    )
