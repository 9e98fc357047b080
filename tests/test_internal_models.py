"""
Tests for the session aggregate and match result invariants.
"""

import pytest

from src.models.internal_models import (
    DocumentMode,
    DocumentSide,
    LivePhoto,
    LiveVideo,
    MatchResult,
    SubmissionAttachment,
    SubmissionPayload,
    PersonalInfo,
    UploadedDocument,
    VerificationSession,
)


def upload(name="front.png"):
    return UploadedDocument(filename=name, content_type="image/png", data=b"x" * 2048)


class TestMatchResult:
    """Tests for the conjunctive acceptance rule."""

    def test_match_below_threshold_is_rejected(self):
        with pytest.raises(ValueError):
            MatchResult(match_percentage=59, is_match=True, method="face_recognition", threshold=60)

    def test_percentage_out_of_range_is_rejected(self):
        with pytest.raises(ValueError):
            MatchResult(match_percentage=101, is_match=False, method="face_recognition", threshold=60)

    def test_match_at_threshold_is_accepted(self):
        result = MatchResult.from_comparator(60, True, "face_recognition", threshold=60)
        assert result.is_match
        assert result.overall_score == 0.6

    def test_verdict_false_is_never_a_match(self):
        result = MatchResult.from_comparator(92.4, False, "face_recognition", threshold=60)
        assert result.match_percentage == 92
        assert not result.is_match

    def test_rounds_half_up(self):
        assert MatchResult.from_comparator(59.5, True, "m", threshold=60).match_percentage == 60
        assert MatchResult.from_comparator(59.5, True, "m", threshold=60).is_match
        assert MatchResult.from_comparator(59.4, True, "m", threshold=60).match_percentage == 59
        assert not MatchResult.from_comparator(59.4, True, "m", threshold=60).is_match

    def test_clamps_percentage(self):
        assert MatchResult.from_comparator(130, True, "m", threshold=60).match_percentage == 100
        assert MatchResult.from_comparator(-4, False, "m", threshold=60).match_percentage == 0


class TestVerificationSession:
    """Tests for immutable session updates."""

    def test_updates_return_new_session(self):
        session = VerificationSession()
        updated = session.with_personal_info(full_name="Jane Doe")

        assert updated is not session
        assert session.personal_info.full_name == ""
        assert updated.personal_info.full_name == "Jane Doe"
        assert updated.session_id == session.session_id

    def test_switching_mode_discards_other_representation(self):
        session = VerificationSession().with_uploaded_document(DocumentSide.FRONT, upload())

        captured = session.with_document_mode(DocumentMode.CAPTURE)
        assert captured.front_upload is None
        assert captured.document_image(DocumentSide.FRONT) is None

        captured = captured.with_captured_document(DocumentSide.FRONT, b"png")
        back_to_upload = captured.with_document_mode(DocumentMode.UPLOAD)
        assert back_to_upload.front_capture is None

    def test_same_mode_is_a_no_op(self):
        session = VerificationSession().with_uploaded_document(DocumentSide.BACK, upload("back.png"))
        assert session.with_document_mode(DocumentMode.UPLOAD) is session

    def test_document_kind_must_match_mode(self):
        with pytest.raises(ValueError):
            VerificationSession().with_captured_document(DocumentSide.FRONT, b"png")
        with pytest.raises(ValueError):
            VerificationSession(document_mode=DocumentMode.CAPTURE).with_uploaded_document(
                DocumentSide.FRONT, upload()
            )

    def test_without_document(self):
        session = VerificationSession().with_uploaded_document(DocumentSide.FRONT, upload())
        assert session.without_document(DocumentSide.FRONT).document_image(DocumentSide.FRONT) is None

    def test_new_live_photo_clears_match(self):
        photo = LivePhoto(image=b"one")
        result = MatchResult.from_comparator(80, True, "m", threshold=60, artifact_id=photo.artifact_id)
        session = VerificationSession().with_live_photo(photo).with_match_result(result)
        assert session.match_result is result

        retaken = session.with_live_photo(LivePhoto(image=b"two"))
        assert retaken.match_result is None

    def test_stale_match_is_ignored(self):
        old_photo = LivePhoto(image=b"old")
        session = VerificationSession().with_live_photo(LivePhoto(image=b"new"))
        stale = MatchResult.from_comparator(80, True, "m", threshold=60, artifact_id=old_photo.artifact_id)

        assert session.with_match_result(stale) is session

    def test_video_clears_match_and_reset_clears_all(self):
        video = LiveVideo(data=b"v", duration_seconds=6.0, mime_type="video/webm", codec="libvpx")
        session = VerificationSession().with_live_video(video)
        assert session.live_video is video

        reset = session.without_live_evidence()
        assert reset.live_video is None
        assert reset.live_photo is None
        assert reset.match_result is None


class TestSubmissionPayload:
    def test_size_is_sum_of_attachments(self):
        payload = SubmissionPayload(
            personal_info=PersonalInfo(full_name="Jane Doe"),
            attachments=(
                SubmissionAttachment("a.jpg", "image/jpeg", b"x" * 10),
                SubmissionAttachment("b.jpg", "image/jpeg", b"y" * 5),
            )
        )
        assert payload.size_bytes == 15
