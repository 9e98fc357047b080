"""
Step validation for the verification flow.

Validation is pure: each step predicate inspects a session and returns the
list of failures. Failures are values, never raised, so callers can query a
step at any time to decide whether navigation is allowed.
"""

import re
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

from src.config import settings
from src.models.internal_models import (
    DocumentSide,
    FlowVariant,
    StepDescriptor,
    VerificationSession,
)

NAME_PATTERN = re.compile(r"^[^\W\d_](?:[^\W\d_]|[ '\-])*$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s().\-]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ID_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9]+(?:[\s\-/][A-Za-z0-9]+)*$")
BLOOD_TYPE_PATTERN = re.compile(r"^(A|B|AB|O)[+-]$", re.IGNORECASE)
MIN_PHONE_DIGITS = 7


@dataclass(frozen=True)
class ValidationFailed:
    """One failed field or condition."""

    field: str
    message: str


@dataclass(frozen=True)
class StepValidation:
    step: int
    failures: Tuple[ValidationFailed, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.failures


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def validate_personal_info(session: VerificationSession) -> List[ValidationFailed]:
    """Step 1: required personal fields present and well formed."""
    info = session.personal_info
    failures = []

    if _blank(info.full_name):
        failures.append(ValidationFailed("full_name", "Full name is required"))
    elif not NAME_PATTERN.match(info.full_name.strip()):
        failures.append(ValidationFailed(
            "full_name", "Full name may only contain letters, spaces, hyphens and apostrophes"
        ))

    if _blank(info.phone):
        failures.append(ValidationFailed("phone", "Phone number is required"))
    elif not PHONE_PATTERN.match(info.phone.strip()) or sum(c.isdigit() for c in info.phone) < MIN_PHONE_DIGITS:
        failures.append(ValidationFailed("phone", "Enter a valid phone number"))

    if _blank(info.email):
        failures.append(ValidationFailed("email", "Email is required"))
    elif not EMAIL_PATTERN.match(info.email.strip()):
        failures.append(ValidationFailed("email", "Enter a valid email address"))

    if _blank(info.region):
        failures.append(ValidationFailed("region", "Region is required"))

    if _blank(info.license_number):
        failures.append(ValidationFailed("license_number", "License number is required"))
    elif not ID_NUMBER_PATTERN.match(info.license_number.strip()):
        failures.append(ValidationFailed(
            "license_number", "License number may only contain letters, digits and separators"
        ))

    if _blank(info.date_of_birth):
        failures.append(ValidationFailed("date_of_birth", "Date of birth is required"))
    else:
        try:
            born = date.fromisoformat(info.date_of_birth.strip())
        except ValueError:
            failures.append(ValidationFailed("date_of_birth", "Date of birth must be a date (YYYY-MM-DD)"))
        else:
            if born > date.today():
                failures.append(ValidationFailed("date_of_birth", "Date of birth cannot be in the future"))

    # Optional fields are only checked when provided
    if not _blank(info.blood_type) and not BLOOD_TYPE_PATTERN.match(info.blood_type.strip()):
        failures.append(ValidationFailed("blood_type", "Blood type must be one of A, B, AB, O with + or -"))

    if not _blank(info.national_id) and not ID_NUMBER_PATTERN.match(info.national_id.strip()):
        failures.append(ValidationFailed(
            "national_id", "National ID may only contain letters, digits and separators"
        ))

    return failures


def validate_documents(session: VerificationSession) -> List[ValidationFailed]:
    """Step 2: both document sides present in the active mode."""
    failures = []
    for side in DocumentSide:
        if not session.document_image(side):
            failures.append(ValidationFailed(
                f"{side.value}_document",
                f"The {side.value} of your ID is required ({session.document_mode.value} mode)"
            ))
    return failures


def validate_live_photo(
    session: VerificationSession,
    threshold: Optional[int] = None
) -> List[ValidationFailed]:
    """Step 3, still-photo variant: a current, accepted face match."""
    threshold = settings.match_threshold if threshold is None else threshold

    if session.live_photo is None:
        return [ValidationFailed("live_photo", "Take a live photo")]

    result = session.match_result
    if result is None:
        return [ValidationFailed("match_result", "Face verification has not completed")]
    if result.artifact_id != session.live_photo.artifact_id:
        return [ValidationFailed("match_result", "Face verification belongs to a previous photo")]
    if not result.is_match or result.match_percentage < threshold:
        return [ValidationFailed(
            "match_result",
            f"Face verification failed ({result.match_percentage}% match, {threshold}% required)"
        )]
    return []


def validate_live_video(
    session: VerificationSession,
    min_seconds: Optional[float] = None,
    max_seconds: Optional[float] = None
) -> List[ValidationFailed]:
    """Step 3, video variant: a recording within the duration window (inclusive)."""
    min_seconds = settings.video_min_seconds if min_seconds is None else min_seconds
    max_seconds = settings.video_max_seconds if max_seconds is None else max_seconds

    video = session.live_video
    if video is None:
        return [ValidationFailed("live_video", "Record a live video")]
    if video.duration_seconds < min_seconds:
        return [ValidationFailed(
            "live_video",
            f"Video is shorter than the minimum duration of {min_seconds:g} seconds"
        )]
    if video.duration_seconds > max_seconds:
        return [ValidationFailed(
            "live_video",
            f"Video is longer than the maximum duration of {max_seconds:g} seconds"
        )]
    return []


_STEP_TEXT: Dict[FlowVariant, Tuple[Tuple[str, str], ...]] = {
    FlowVariant.STILL_PHOTO: (
        ("Personal Information", "Your details as they appear on your ID"),
        ("Identity Document", "Front and back of your ID"),
        ("Face Verification", "Take a live photo to match against your ID"),
        ("Review & Submit", "Check your details and submit"),
    ),
    FlowVariant.VIDEO: (
        ("Personal Information", "Your details as they appear on your ID"),
        ("Identity Document", "Front and back of your ID"),
        ("Video Verification", "Record a short live video"),
        ("Review & Submit", "Check your details and submit"),
    ),
}


def _build_steps(variant: FlowVariant) -> Tuple[StepDescriptor, ...]:
    live_check = validate_live_video if variant == FlowVariant.VIDEO else validate_live_photo
    prerequisites: Tuple[Callable[[VerificationSession], List[ValidationFailed]], ...] = (
        validate_personal_info,
        validate_documents,
        live_check,
    )

    def validate_review(session: VerificationSession) -> List[ValidationFailed]:
        failures = []
        for check in prerequisites:
            failures.extend(check(session))
        return failures

    checks = prerequisites + (validate_review,)
    return tuple(
        StepDescriptor(id=index, title=title, description=description, validator=check)
        for index, ((title, description), check) in enumerate(zip(_STEP_TEXT[variant], checks), start=1)
    )


STEPS: Dict[FlowVariant, Tuple[StepDescriptor, ...]] = {variant: _build_steps(variant) for variant in FlowVariant}


def steps_for(variant: FlowVariant) -> Tuple[StepDescriptor, ...]:
    return STEPS[FlowVariant(variant)]


def validate_step(session: VerificationSession, step: int, variant: FlowVariant) -> StepValidation:
    """
    Evaluate one step's predicate.

    Raises:
        ValueError: If step is not between 1 and 4
    """
    steps = steps_for(variant)
    if not 1 <= step <= len(steps):
        raise ValueError(f"Step must be between 1 and {len(steps)}, got {step}")
    return StepValidation(step=step, failures=tuple(steps[step - 1].validator(session)))


def is_step_valid(session: VerificationSession, step: int, variant: FlowVariant) -> bool:
    return validate_step(session, step, variant).is_valid
