"""Internal data models for the identity verification service."""

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple


class DocumentMode(str, Enum):
    """How the identity document images are provided."""

    UPLOAD = "upload"
    CAPTURE = "capture"


class DocumentSide(str, Enum):
    FRONT = "front"
    BACK = "back"


class FlowVariant(str, Enum):
    """Live evidence collected on step 3."""

    STILL_PHOTO = "still_photo"
    VIDEO = "video"


def new_artifact_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class PersonalInfo:
    """Personal details as they appear on the identity document."""

    full_name: str = ""
    phone: str = ""
    email: str = ""
    region: str = ""
    license_number: str = ""  # government-issued ID number
    date_of_birth: str = ""  # ISO date (YYYY-MM-DD)
    blood_type: Optional[str] = None
    national_id: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class UploadedDocument:
    """A document image provided as a file upload."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class LivePhoto:
    """Enhanced live still, keyed so comparison results can be matched to it."""

    image: bytes
    artifact_id: str = field(default_factory=new_artifact_id)


@dataclass(frozen=True)
class LiveVideo:
    """Timed live video with its measured duration."""

    data: bytes
    duration_seconds: float
    mime_type: str
    codec: str
    artifact_id: str = field(default_factory=new_artifact_id)


@dataclass(frozen=True)
class MatchResult:
    """Outcome of one face comparison attempt."""

    match_percentage: int
    is_match: bool
    method: str
    threshold: int
    artifact_id: Optional[str] = None

    def __post_init__(self):
        """Enforce score range and the conjunctive acceptance rule."""
        if not 0 <= self.match_percentage <= 100:
            raise ValueError(f"Match percentage must be between 0 and 100, got {self.match_percentage}")
        if self.is_match and self.match_percentage < self.threshold:
            raise ValueError(
                f"A match requires at least {self.threshold}%, got {self.match_percentage}%"
            )

    @property
    def overall_score(self) -> float:
        return self.match_percentage / 100

    @classmethod
    def from_comparator(
        cls,
        match_percentage: float,
        verdict: bool,
        method: str,
        threshold: int,
        artifact_id: Optional[str] = None
    ) -> "MatchResult":
        """
        Build a result from a raw comparator response.

        The percentage is rounded half-up and clamped to [0, 100]. The result
        is a match only when the comparator verdict is positive and the
        rounded percentage reaches the threshold.
        """
        percentage = int(math.floor(float(match_percentage) + 0.5))
        percentage = max(0, min(100, percentage))
        return cls(
            match_percentage=percentage,
            is_match=bool(verdict) and percentage >= threshold,
            method=method,
            threshold=threshold,
            artifact_id=artifact_id
        )


@dataclass(frozen=True)
class VerificationSession:
    """
    Aggregate state of one verification attempt.

    Instances are immutable: every mutation returns a new session. The
    document mode decides which document representation (uploaded files or
    captured images) is populated.
    """

    session_id: str = field(default_factory=new_artifact_id)
    personal_info: PersonalInfo = field(default_factory=PersonalInfo)
    document_mode: DocumentMode = DocumentMode.UPLOAD
    front_upload: Optional[UploadedDocument] = None
    back_upload: Optional[UploadedDocument] = None
    front_capture: Optional[bytes] = None
    back_capture: Optional[bytes] = None
    live_photo: Optional[LivePhoto] = None
    live_video: Optional[LiveVideo] = None
    match_result: Optional[MatchResult] = None

    def with_personal_info(self, **changes) -> "VerificationSession":
        return replace(self, personal_info=replace(self.personal_info, **changes))

    def with_document_mode(self, mode: DocumentMode) -> "VerificationSession":
        mode = DocumentMode(mode)
        if mode == self.document_mode:
            return self
        if mode == DocumentMode.UPLOAD:
            return replace(self, document_mode=mode, front_capture=None, back_capture=None)
        return replace(self, document_mode=mode, front_upload=None, back_upload=None)

    def with_uploaded_document(self, side: DocumentSide, document: UploadedDocument) -> "VerificationSession":
        if self.document_mode != DocumentMode.UPLOAD:
            raise ValueError("Uploaded documents require upload mode")
        if DocumentSide(side) == DocumentSide.FRONT:
            return replace(self, front_upload=document)
        return replace(self, back_upload=document)

    def with_captured_document(self, side: DocumentSide, image: bytes) -> "VerificationSession":
        if self.document_mode != DocumentMode.CAPTURE:
            raise ValueError("Captured documents require capture mode")
        if DocumentSide(side) == DocumentSide.FRONT:
            return replace(self, front_capture=image)
        return replace(self, back_capture=image)

    def without_document(self, side: DocumentSide) -> "VerificationSession":
        if DocumentSide(side) == DocumentSide.FRONT:
            return replace(self, front_upload=None, front_capture=None)
        return replace(self, back_upload=None, back_capture=None)

    def document_image(self, side: DocumentSide) -> Optional[bytes]:
        """Image bytes for a document side in the active mode."""
        front = DocumentSide(side) == DocumentSide.FRONT
        if self.document_mode == DocumentMode.UPLOAD:
            upload = self.front_upload if front else self.back_upload
            return upload.data if upload else None
        return self.front_capture if front else self.back_capture

    def with_live_photo(self, photo: LivePhoto) -> "VerificationSession":
        return replace(self, live_photo=photo, match_result=None)

    def with_live_video(self, video: LiveVideo) -> "VerificationSession":
        return replace(self, live_video=video, match_result=None)

    def without_live_evidence(self) -> "VerificationSession":
        return replace(self, live_photo=None, live_video=None, match_result=None)

    def without_match_result(self) -> "VerificationSession":
        if self.match_result is None:
            return self
        return replace(self, match_result=None)

    def with_match_result(self, result: MatchResult) -> "VerificationSession":
        """Attach a result, ignoring it if it belongs to a superseded photo."""
        if self.live_photo is None or result.artifact_id != self.live_photo.artifact_id:
            return self
        return replace(self, match_result=result)


@dataclass(frozen=True)
class StepDescriptor:
    """One step of the verification flow."""

    id: int
    title: str
    description: str
    validator: Callable


@dataclass(frozen=True)
class SubmissionAttachment:
    filename: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class SubmissionPayload:
    """Everything handed to the delivery channel for one submission."""

    personal_info: PersonalInfo
    attachments: Tuple[SubmissionAttachment, ...] = ()
    match_result: Optional[MatchResult] = None
    video_duration: Optional[float] = None
    submitted_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def size_bytes(self) -> int:
        return sum(len(attachment.data) for attachment in self.attachments)
