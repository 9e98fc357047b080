"""
Tests for step validation predicates.
"""

from dataclasses import replace
from datetime import date, timedelta

import pytest

from src.models.internal_models import (
    DocumentMode,
    DocumentSide,
    FlowVariant,
    LivePhoto,
    LiveVideo,
    MatchResult,
    PersonalInfo,
    UploadedDocument,
    VerificationSession,
)
from src.services.validation_service import (
    is_step_valid,
    steps_for,
    validate_live_photo,
    validate_live_video,
    validate_personal_info,
    validate_step,
)

VALID_INFO = PersonalInfo(
    full_name="Jane O'Brien-Smith",
    phone="+63 (917) 555-0142",
    email="jane@example.com",
    region="Metro Manila",
    license_number="N01-23-456789",
    date_of_birth="1990-04-12",
)


def with_info(**changes):
    return VerificationSession(personal_info=replace(VALID_INFO, **changes))


def fields(failures):
    return {failure.field for failure in failures}


def complete_session(percentage=75, verdict=True):
    document = UploadedDocument(filename="id.png", content_type="image/png", data=b"x" * 2048)
    photo = LivePhoto(image=b"photo")
    session = (
        VerificationSession(personal_info=VALID_INFO)
        .with_uploaded_document(DocumentSide.FRONT, document)
        .with_uploaded_document(DocumentSide.BACK, document)
        .with_live_photo(photo)
    )
    result = MatchResult.from_comparator(percentage, verdict, "face_recognition", 60, photo.artifact_id)
    return session.with_match_result(result)


def video_session(duration):
    video = LiveVideo(data=b"v", duration_seconds=duration, mime_type="video/webm", codec="libvpx")
    return VerificationSession().with_live_video(video)


class TestPersonalInfo:
    """Tests for step 1."""

    def test_valid(self):
        assert validate_personal_info(VerificationSession(personal_info=VALID_INFO)) == []

    def test_empty_session_reports_every_required_field(self):
        failures = validate_personal_info(VerificationSession())
        assert fields(failures) == {
            "full_name", "phone", "email", "region", "license_number", "date_of_birth"
        }

    @pytest.mark.parametrize("name", ["Jane Doe", "José Ñúñez", "Anne-Marie", "D'Angelo"])
    def test_accepted_names(self, name):
        assert validate_personal_info(with_info(full_name=name)) == []

    @pytest.mark.parametrize("name", ["Jane2", "Jane_Doe", "J. Doe", "-Jane"])
    def test_rejected_names(self, name):
        assert fields(validate_personal_info(with_info(full_name=name))) == {"full_name"}

    @pytest.mark.parametrize("phone", ["12345", "phone-number", "555 12a 4567"])
    def test_rejected_phones(self, phone):
        assert fields(validate_personal_info(with_info(phone=phone))) == {"phone"}

    @pytest.mark.parametrize("email", ["jane", "jane@example", "jane @example.com"])
    def test_rejected_emails(self, email):
        assert fields(validate_personal_info(with_info(email=email))) == {"email"}

    def test_rejected_license_number(self):
        assert fields(validate_personal_info(with_info(license_number="N01#23"))) == {"license_number"}

    def test_future_date_of_birth(self):
        tomorrow = (date.today() + timedelta(days=1)).isoformat()
        assert fields(validate_personal_info(with_info(date_of_birth=tomorrow))) == {"date_of_birth"}

    def test_malformed_date_of_birth(self):
        assert fields(validate_personal_info(with_info(date_of_birth="12/04/1990"))) == {"date_of_birth"}

    def test_optional_fields_checked_only_when_present(self):
        assert validate_personal_info(with_info(blood_type="ab-", national_id="1234-5678-9012")) == []
        assert fields(validate_personal_info(with_info(blood_type="C+"))) == {"blood_type"}
        assert fields(validate_personal_info(with_info(national_id="12@34"))) == {"national_id"}


class TestDocuments:
    """Tests for step 2."""

    def test_requires_both_sides_in_active_mode(self):
        session = VerificationSession(document_mode=DocumentMode.CAPTURE)
        assert not is_step_valid(session, 2, FlowVariant.STILL_PHOTO)

        session = session.with_captured_document(DocumentSide.FRONT, b"front")
        validation = validate_step(session, 2, FlowVariant.STILL_PHOTO)
        assert fields(validation.failures) == {"back_document"}

        session = session.with_captured_document(DocumentSide.BACK, b"back")
        assert is_step_valid(session, 2, FlowVariant.STILL_PHOTO)


class TestLivePhoto:
    """Tests for step 3 in the still-photo variant."""

    def test_accepted_match(self):
        assert validate_live_photo(complete_session(75, True)) == []

    def test_requires_photo(self):
        assert fields(validate_live_photo(VerificationSession())) == {"live_photo"}

    def test_requires_match_result(self):
        session = VerificationSession().with_live_photo(LivePhoto(image=b"p"))
        assert fields(validate_live_photo(session)) == {"match_result"}

    def test_low_score_is_invalid(self):
        assert not is_step_valid(complete_session(45, False), 3, FlowVariant.STILL_PHOTO)

    def test_high_score_without_verdict_is_invalid(self):
        assert not is_step_valid(complete_session(70, False), 3, FlowVariant.STILL_PHOTO)

    def test_score_at_threshold_is_valid(self):
        assert is_step_valid(complete_session(60, True), 3, FlowVariant.STILL_PHOTO)

    def test_match_for_previous_photo_is_invalid(self):
        session = complete_session()
        old = session.match_result
        session = replace(session, live_photo=LivePhoto(image=b"new"), match_result=old)

        failures = validate_live_photo(session)
        assert "previous photo" in failures[0].message


class TestLiveVideo:
    """Tests for step 3 in the video variant."""

    @pytest.mark.parametrize("duration", [5.0, 6.2, 7.0])
    def test_durations_in_window(self, duration):
        assert is_step_valid(video_session(duration), 3, FlowVariant.VIDEO)

    def test_too_short(self):
        failures = validate_live_video(video_session(3.0))
        assert "minimum duration" in failures[0].message

    def test_too_long(self):
        failures = validate_live_video(video_session(7.5))
        assert "maximum duration" in failures[0].message

    def test_requires_video(self):
        assert fields(validate_live_video(VerificationSession())) == {"live_video"}

    def test_video_variant_ignores_face_match(self):
        assert is_step_valid(video_session(6.0), 3, FlowVariant.VIDEO)
        assert not is_step_valid(video_session(6.0), 3, FlowVariant.STILL_PHOTO)


class TestReviewStep:
    """Tests for step 4 as the conjunction of steps 1 to 3."""

    def test_complete_session_is_valid(self):
        assert is_step_valid(complete_session(), 4, FlowVariant.STILL_PHOTO)

    @pytest.mark.parametrize("session", [
        VerificationSession(),
        VerificationSession(personal_info=VALID_INFO),
        complete_session(45, False),
        complete_session(59, True),
        complete_session(80, True).without_document(DocumentSide.BACK),
        complete_session(80, True).with_personal_info(email="broken"),
        complete_session(80, True),
    ])
    def test_step_four_implies_steps_one_to_three(self, session):
        for variant in FlowVariant:
            if is_step_valid(session, 4, variant):
                assert all(is_step_valid(session, step, variant) for step in (1, 2, 3))

    def test_review_failures_aggregate_earlier_steps(self):
        validation = validate_step(VerificationSession(), 4, FlowVariant.STILL_PHOTO)
        assert {"full_name", "front_document", "live_photo"} <= fields(validation.failures)

    def test_step_out_of_range(self):
        with pytest.raises(ValueError):
            validate_step(VerificationSession(), 5, FlowVariant.STILL_PHOTO)

    def test_descriptors(self):
        steps = steps_for(FlowVariant.VIDEO)
        assert [step.id for step in steps] == [1, 2, 3, 4]
        assert steps[2].title == "Video Verification"
