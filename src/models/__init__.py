"""Data models for the identity verification service."""

from .api_models import (
    CompareFacesRequest,
    CompareFacesResponse,
    StepperFormRequest,
    SubmissionResponse,
    SessionStateResponse,
    HealthResponse,
    ErrorResponse
)
from .internal_models import (
    DocumentMode,
    DocumentSide,
    FlowVariant,
    PersonalInfo,
    UploadedDocument,
    LivePhoto,
    LiveVideo,
    MatchResult,
    VerificationSession,
    StepDescriptor,
    SubmissionAttachment,
    SubmissionPayload
)

__all__ = [
    "CompareFacesRequest",
    "CompareFacesResponse",
    "StepperFormRequest",
    "SubmissionResponse",
    "SessionStateResponse",
    "HealthResponse",
    "ErrorResponse",
    "DocumentMode",
    "DocumentSide",
    "FlowVariant",
    "PersonalInfo",
    "UploadedDocument",
    "LivePhoto",
    "LiveVideo",
    "MatchResult",
    "VerificationSession",
    "StepDescriptor",
    "SubmissionAttachment",
    "SubmissionPayload"
]
