"""
Session API endpoints driving a verification flow against the host camera.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Path, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from src.api.dependencies import get_flow_registry
from src.api.verification import create_error_response
from src.clients.camera_client import (
    CameraConstraints,
    CaptureError,
    ConstraintsUnsatisfiable,
    DeviceBusy,
    DeviceNotFound,
    NotSupported,
    PermissionDenied,
)
from src.clients.comparator_client import FaceMatchError
from src.clients.delivery_client import DeliveryFailed, PayloadTooLarge
from src.config import settings
from src.middleware import get_correlation_id
from src.models.api_models import (
    CameraStartRequest,
    CreateSessionRequest,
    DocumentModeRequest,
    MatchResultModel,
    NavigationResponse,
    PersonalInfoRequest,
    SessionStateResponse,
    StepStatusModel,
    SubmissionResponse,
    ValidationFailureModel,
    VideoStartRequest,
)
from src.models.internal_models import DocumentSide
from src.observability import trace_function
from src.services.flow_service import (
    FlowError,
    FlowNotFound,
    FlowRegistry,
    SubmissionNotReady,
    VerificationFlow,
)
from src.services.validation_service import StepValidation
from src.utils.image_utils import ImageProcessingError, ImageValidationError

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])

CAPTURE_ERROR_STATUS = {
    PermissionDenied: 403,
    DeviceNotFound: 404,
    DeviceBusy: 409,
    ConstraintsUnsatisfiable: 422,
    NotSupported: 501,
}

SESSION_ERRORS = (
    CaptureError,
    FlowError,
    FaceMatchError,
    ImageValidationError,
    ImageProcessingError,
    PayloadTooLarge,
    DeliveryFailed,
)


def _failures(validation: StepValidation):
    return [ValidationFailureModel(field=f.field, message=f.message) for f in validation.failures]


def session_error_response(error: Exception, http_request: Request) -> JSONResponse:
    """Map a flow, capture or delivery error to a standardized error response."""
    correlation_id = get_correlation_id(http_request)
    error_type = type(error).__name__

    if isinstance(error, CaptureError):
        status_code = next(
            (code for cls, code in CAPTURE_ERROR_STATUS.items() if isinstance(error, cls)),
            409
        )
        logger.warning("Capture error", error_type=error_type, error=str(error))
        return create_error_response(error_type, str(error), correlation_id, status_code, guidance=error.guidance)

    if isinstance(error, SubmissionNotReady):
        return create_error_response(
            error_type, str(error), correlation_id, 422,
            guidance="Complete every step before submitting."
        )
    if isinstance(error, FlowNotFound):
        return create_error_response(error_type, str(error), correlation_id, 404)
    if isinstance(error, FlowError):
        return create_error_response(error_type, str(error), correlation_id, 409)
    if isinstance(error, (ImageValidationError, ImageProcessingError)):
        return create_error_response(error_type, str(error), correlation_id, 400)
    if isinstance(error, PayloadTooLarge):
        return create_error_response(
            error_type, str(error), correlation_id, 413,
            guidance="Use smaller images and submit again."
        )
    if isinstance(error, DeliveryFailed):
        return create_error_response(
            error_type, "Failed to submit verification request", correlation_id, 502,
            guidance="Please try again later."
        )

    # FaceMatchError
    return create_error_response(
        error_type, str(error), correlation_id, 502,
        guidance="Retake your photo or try again in a moment."
    )


def session_state(flow: VerificationFlow) -> SessionStateResponse:
    """Snapshot of a flow for API responses."""
    session = flow.session
    steps = []
    for descriptor in flow.steps:
        validation = flow.validation(descriptor.id)
        steps.append(StepStatusModel(
            id=descriptor.id,
            title=descriptor.title,
            description=descriptor.description,
            valid=validation.is_valid,
            failures=_failures(validation)
        ))

    match = session.match_result
    capture = flow.capture.session
    return SessionStateResponse(
        sessionId=flow.flow_id,
        variant=flow.variant,
        currentStep=flow.current_step,
        documentMode=session.document_mode,
        steps=steps,
        documents={side.value: session.document_image(side) is not None for side in DocumentSide},
        hasLivePhoto=session.live_photo is not None,
        videoDuration=session.live_video.duration_seconds if session.live_video else None,
        matchResult=MatchResultModel(
            matchPercentage=match.match_percentage,
            overallScore=match.overall_score,
            isMatch=match.is_match,
            method=match.method
        ) if match else None,
        lastMatchError=flow.last_match_error,
        cameraActive=capture is not None and capture.active,
        recording=capture is not None and capture.recording is not None,
        recordingElapsed=capture.elapsed_seconds if capture is not None else 0
    )


@router.post("", response_model=SessionStateResponse, status_code=201)
async def create_session(
    request: CreateSessionRequest,
    registry: FlowRegistry = Depends(get_flow_registry)
) -> SessionStateResponse:
    """Start a new verification session at step 1."""
    flow = registry.create(request.variant)
    logger.info("Verification session created", session_id=flow.flow_id, variant=flow.variant.value)
    return session_state(flow)


@router.get("/{session_id}", response_model=SessionStateResponse)
async def get_session(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        return session_state(registry.get(session_id))
    except FlowNotFound as e:
        return session_error_response(e, http_request)


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    registry: FlowRegistry = Depends(get_flow_registry)
) -> Response:
    """Abandon a session; releases the camera. Unknown ids are ignored."""
    await registry.discard(session_id)
    return Response(status_code=204)


@router.put("/{session_id}/personal-info", response_model=SessionStateResponse)
async def update_personal_info(
    session_id: str,
    request: PersonalInfoRequest,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
        flow.update_personal_info(**request.to_changes())
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.put("/{session_id}/document-mode", response_model=SessionStateResponse)
async def set_document_mode(
    session_id: str,
    request: DocumentModeRequest,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
        flow.set_document_mode(request.mode)
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/documents/{side}", response_model=SessionStateResponse)
async def upload_document(
    session_id: str,
    side: DocumentSide,
    http_request: Request,
    file: UploadFile = File(...),
    registry: FlowRegistry = Depends(get_flow_registry)
):
    """Attach an uploaded PNG or JPEG document image."""
    try:
        flow = registry.get(session_id)
        data = await file.read()
        flow.attach_upload(side, file.filename or "", file.content_type, data)
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.delete("/{session_id}/documents/{side}", response_model=SessionStateResponse)
async def remove_document(
    session_id: str,
    side: DocumentSide,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
        flow.remove_document(side)
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/documents/{side}/capture", response_model=SessionStateResponse)
@trace_function("capture_document_endpoint")
async def capture_document(
    session_id: str,
    side: DocumentSide,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    """Photograph a document side with the active camera."""
    try:
        flow = registry.get(session_id)
        await flow.capture_document(side)
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/camera/start", response_model=SessionStateResponse)
@trace_function("camera_start_endpoint")
async def start_camera(
    session_id: str,
    http_request: Request,
    request: Optional[CameraStartRequest] = None,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
        constraints = None
        if request is not None:
            constraints = CameraConstraints(
                device_index=request.deviceIndex if request.deviceIndex is not None else settings.camera_index,
                width=request.width,
                height=request.height,
                exact=request.exact
            )
        await flow.start_camera(constraints)
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/camera/stop", response_model=SessionStateResponse)
async def stop_camera(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
        await flow.stop_camera()
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/live-photo", response_model=SessionStateResponse)
@trace_function("live_photo_endpoint")
async def capture_live_photo(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    """Take the live photo and wait for its face comparison."""
    try:
        flow = registry.get(session_id)
        await flow.capture_live_photo()
        result = await flow.wait_for_match()
        logger.info(
            "Live photo processed",
            session_id=session_id,
            match_percentage=result.match_percentage if result else None,
            is_match=result.is_match if result else None,
            match_error=flow.last_match_error
        )
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.delete("/{session_id}/live-evidence", response_model=SessionStateResponse)
async def reset_live_evidence(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    """Discard the live photo or video so it can be retaken."""
    try:
        flow = registry.get(session_id)
        flow.reset_live_evidence()
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/video/start", response_model=SessionStateResponse)
@trace_function("video_start_endpoint")
async def start_video(
    session_id: str,
    http_request: Request,
    request: Optional[VideoStartRequest] = None,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
        await flow.start_video_recording(request.maxSeconds if request else None)
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/video/stop", response_model=SessionStateResponse)
@trace_function("video_stop_endpoint")
async def stop_video(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
        await flow.stop_video_recording()
        return session_state(flow)
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)


@router.post("/{session_id}/advance", response_model=NavigationResponse)
async def advance(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
    except FlowNotFound as e:
        return session_error_response(e, http_request)

    previous = flow.current_step
    validation = flow.advance()
    return NavigationResponse(
        moved=flow.current_step != previous,
        currentStep=flow.current_step,
        failures=_failures(validation)
    )


@router.post("/{session_id}/back", response_model=NavigationResponse)
async def retreat(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    try:
        flow = registry.get(session_id)
    except FlowNotFound as e:
        return session_error_response(e, http_request)

    moved = flow.retreat()
    return NavigationResponse(moved=moved, currentStep=flow.current_step)


@router.post("/{session_id}/steps/{step}", response_model=NavigationResponse)
async def go_to_step(
    session_id: str,
    http_request: Request,
    step: int = Path(..., ge=1, le=4),
    registry: FlowRegistry = Depends(get_flow_registry)
):
    """Jump to a step via the step indicator."""
    try:
        flow = registry.get(session_id)
    except FlowNotFound as e:
        return session_error_response(e, http_request)

    moved = flow.go_to(step)
    failures = [] if moved else _failures(flow.validation(step - 1))
    return NavigationResponse(moved=moved, currentStep=flow.current_step, failures=failures)


@router.post("/{session_id}/submit", response_model=SubmissionResponse)
@trace_function("session_submit_endpoint")
async def submit_session(
    session_id: str,
    http_request: Request,
    registry: FlowRegistry = Depends(get_flow_registry)
):
    """Deliver a completed session and discard it."""
    try:
        flow = registry.get(session_id)
        receipt = await flow.submit()
    except SESSION_ERRORS as e:
        return session_error_response(e, http_request)

    await registry.discard(session_id)
    return SubmissionResponse(
        success=True,
        message="Verification request submitted",
        messageId=receipt.message_id,
        attachments=receipt.attachment_count
    )
