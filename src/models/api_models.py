"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.models.internal_models import DocumentMode, FlowVariant


class CompareFacesRequest(BaseModel):
    """Request model for the face comparison proxy endpoint."""

    id_image: Optional[str] = Field(None, description="ID document photo as a base64 data URL")
    live_image: Optional[str] = Field(None, description="Live photo as a base64 data URL")


class CompareFacesResponse(BaseModel):
    """Comparator verdict as returned by the face comparison service."""

    success: bool = Field(..., description="Whether the comparison completed")
    match_percentage: float = Field(..., ge=0.0, le=100.0, description="Face similarity percentage")
    is_match: bool = Field(..., description="Comparator's own match verdict")
    method: str = Field(..., description="Comparison method label")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "success": True,
            "match_percentage": 75.2,
            "is_match": True,
            "method": "face_recognition"
        }
    })


class MatchResultModel(BaseModel):
    """Face verification outcome after local threshold gating."""

    matchPercentage: int = Field(..., ge=0, le=100)
    overallScore: Optional[float] = Field(None, ge=0.0, le=1.0)
    isMatch: bool
    method: str = "face_recognition"


class StepperFormRequest(BaseModel):
    """Request model for verification submission endpoint."""

    fullName: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    province: Optional[str] = None
    address: Optional[str] = None
    licenseNumber: Optional[str] = None
    dateOfBirth: Optional[str] = None
    bloodType: Optional[str] = None
    nationalId: Optional[str] = None
    frontId: Optional[str] = Field(None, description="Uploaded front ID as a data URL")
    backId: Optional[str] = Field(None, description="Uploaded back ID as a data URL")
    frontIdCaptured: Optional[str] = Field(None, description="Captured front ID as a data URL")
    backIdCaptured: Optional[str] = Field(None, description="Captured back ID as a data URL")
    selfie: Optional[str] = Field(None, description="Enhanced live photo as a data URL")
    matchResult: Optional[MatchResultModel] = None


class SubmissionResponse(BaseModel):
    """Response model for verification submission."""

    success: bool
    message: str
    messageId: Optional[str] = None
    attachments: int = 0


class ServiceStatusResponse(BaseModel):
    """Liveness probe for an individual endpoint."""

    message: str
    timestamp: datetime
    status: str = "active"


class CameraListResponse(BaseModel):
    """Camera devices present on the host."""

    devices: List[int] = Field(..., description="Camera device indices")
    default: int = Field(..., description="Index used when a session does not choose one")


class CreateSessionRequest(BaseModel):
    """Request model for starting a verification session."""

    variant: FlowVariant = FlowVariant.STILL_PHOTO


class PersonalInfoRequest(BaseModel):
    """Partial update of the personal information step."""

    fullName: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    region: Optional[str] = None
    licenseNumber: Optional[str] = None
    dateOfBirth: Optional[str] = None
    bloodType: Optional[str] = None
    nationalId: Optional[str] = None
    address: Optional[str] = None

    def to_changes(self) -> Dict[str, Optional[str]]:
        """Map the provided camelCase fields onto PersonalInfo field names."""
        mapping = {
            "fullName": "full_name",
            "phone": "phone",
            "email": "email",
            "region": "region",
            "licenseNumber": "license_number",
            "dateOfBirth": "date_of_birth",
            "bloodType": "blood_type",
            "nationalId": "national_id",
            "address": "address",
        }
        provided = self.model_dump(exclude_unset=True)
        return {mapping[key]: value for key, value in provided.items()}


class DocumentModeRequest(BaseModel):
    mode: DocumentMode


class CameraStartRequest(BaseModel):
    """Optional camera constraints."""

    deviceIndex: Optional[int] = Field(None, ge=0)
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)
    exact: bool = False


class VideoStartRequest(BaseModel):
    maxSeconds: Optional[int] = Field(None, gt=0, le=60)


class ValidationFailureModel(BaseModel):
    field: str
    message: str


class StepStatusModel(BaseModel):
    id: int
    title: str
    description: str
    valid: bool
    failures: List[ValidationFailureModel] = []


class SessionStateResponse(BaseModel):
    """Snapshot of a verification session."""

    sessionId: str
    variant: FlowVariant
    currentStep: int
    documentMode: DocumentMode
    steps: List[StepStatusModel]
    documents: Dict[str, bool]
    hasLivePhoto: bool
    videoDuration: Optional[float] = None
    matchResult: Optional[MatchResultModel] = None
    lastMatchError: Optional[str] = None
    cameraActive: bool = False
    recording: bool = False
    recordingElapsed: int = 0


class NavigationResponse(BaseModel):
    """Result of a step transition request."""

    moved: bool
    currentStep: int
    failures: List[ValidationFailureModel] = []

    @field_validator('currentStep')
    @classmethod
    def validate_current_step(cls, v):
        if not 1 <= v <= 4:
            raise ValueError('currentStep must be between 1 and 4')
        return v


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    guidance: Optional[str] = Field(None, description="What the user can do about it")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "PermissionDenied",
            "message": "Camera access was denied",
            "guidance": "Allow camera access for this application and try again.",
            "correlation_id": "req_123456789",
            "timestamp": "2024-01-01T12:00:00Z"
        }
    })
