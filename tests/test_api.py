"""
Tests for the HTTP API.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import CameraFactory, fake_encoder
from src.api import sessions, verification
from src.api.dependencies import get_comparator, get_flow_registry, get_mailer
from src.clients.camera_client import PermissionDenied
from src.clients.comparator_client import (
    ComparatorVerdict,
    ComparisonServiceError,
    TransportError,
)
from src.clients.delivery_client import DeliveryFailed, DeliveryReceipt, PayloadTooLarge
from src.middleware import RequestLoggingMiddleware, RequestSizeLimitMiddleware
from src.services.capture_service import MediaCaptureController
from src.services.face_match_service import FaceMatchService
from src.services.flow_service import FlowRegistry
from src.utils.image_utils import to_data_url

PERSONAL = {
    "fullName": "Jane Doe",
    "phone": "+1 555 010 4477",
    "email": "jane@example.com",
    "region": "Ontario",
    "licenseNumber": "D1234-56789",
    "dateOfBirth": "1988-02-29",
}


@pytest.fixture
def comparator():
    mock = AsyncMock()
    mock.compare.return_value = ComparatorVerdict(match_percentage=75.0, is_match=True, method="face_recognition")
    return mock


@pytest.fixture
def mailer():
    mock = AsyncMock()
    mock.deliver.return_value = DeliveryReceipt(
        message_id="<1@example.com>", recipients=("review@example.com",), attachment_count=3
    )
    return mock


@pytest.fixture
def camera_options():
    return {}


@pytest.fixture
def registry(comparator, mailer, camera_options):
    factory = CameraFactory(**camera_options)
    return FlowRegistry(
        FaceMatchService(comparator, threshold=60),
        mailer,
        capture_factory=lambda: MediaCaptureController(camera_factory=factory, encoder=fake_encoder)
    )


def build_app(comparator, mailer, registry, max_request_bytes=10 * 1024 * 1024):
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=max_request_bytes)
    app.include_router(verification.router)
    app.include_router(sessions.router)
    app.dependency_overrides[get_comparator] = lambda: comparator
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_flow_registry] = lambda: registry
    return app


@pytest.fixture
def client(comparator, mailer, registry):
    with TestClient(build_app(comparator, mailer, registry)) as test_client:
        yield test_client


class TestCompareFacesEndpoint:
    """Tests for the face comparison proxy."""

    def test_status_check(self, client):
        response = client.get("/api/v1/compare-faces")

        assert response.status_code == 200
        assert response.json()["message"] == "Compare faces API endpoint is working"

    def test_returns_raw_verdict(self, client, comparator):
        comparator.compare.return_value = ComparatorVerdict(52.0, True, "face_recognition")

        response = client.post("/api/v1/compare-faces", json={"id_image": "data:a", "live_image": "data:b"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "match_percentage": 52.0,
            "is_match": True,
            "method": "face_recognition"
        }

    def test_missing_image(self, client, comparator):
        response = client.post(
            "/api/v1/compare-faces",
            json={"id_image": "data:a"},
            headers={"X-Request-ID": "req_test"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Both id_image and live_image are required"
        assert body["correlation_id"] == "req_test"
        assert response.headers["X-Request-ID"] == "req_test"
        comparator.compare.assert_not_called()

    @pytest.mark.parametrize("error, status_code", [
        (ComparisonServiceError("No face detected in ID image", status_code=400), 400),
        (ComparisonServiceError("Face comparison failed", status_code=200), 422),
        (TransportError("Face comparison service unavailable"), 502),
    ])
    def test_comparator_errors(self, client, comparator, error, status_code):
        comparator.compare.side_effect = error

        response = client.post("/api/v1/compare-faces", json={"id_image": "data:a", "live_image": "data:b"})

        assert response.status_code == status_code
        assert response.json()["error"] == type(error).__name__


class TestCamerasEndpoint:
    @patch("src.api.verification.enumerate_devices", return_value=[0, 2])
    def test_lists_devices(self, mock_enumerate, client):
        response = client.get("/api/v1/cameras")

        assert response.status_code == 200
        assert response.json()["devices"] == [0, 2]
        mock_enumerate.assert_called_once()


class TestStepperFormEndpoint:
    """Tests for the submission endpoint."""

    def test_status_check(self, client):
        assert client.get("/api/v1/stepper-form").json()["message"] == "Stepper form API endpoint is working"

    def test_requires_contact_fields(self, client, mailer):
        response = client.post("/api/v1/stepper-form", json={"fullName": "Jane Doe"})

        assert response.status_code == 400
        assert response.json()["message"] == "Name, email, and phone are required"
        mailer.deliver.assert_not_called()

    def test_submission(self, client, mailer, png_bytes, document_png):
        response = client.post("/api/v1/stepper-form", json={
            "fullName": "Jane Doe",
            "email": "jane@example.com",
            "phone": "+1 555 010 4477",
            "province": "Ontario",
            "frontId": to_data_url(png_bytes),
            "frontIdCaptured": to_data_url(document_png),
            "backId": to_data_url(png_bytes),
            "selfie": to_data_url(png_bytes),
            "matchResult": {"matchPercentage": 55, "isMatch": True, "method": "face_recognition"}
        })

        assert response.status_code == 200
        assert response.json()["messageId"] == "<1@example.com>"

        payload = mailer.deliver.call_args.args[0]
        assert payload.personal_info.region == "Ontario"
        assert [a.filename for a in payload.attachments] == [
            "front_id_Jane_Doe.png", "back_id_Jane_Doe.png", "selfie_Jane_Doe.png"
        ]
        assert payload.attachments[0].data == document_png
        assert payload.match_result.match_percentage == 55
        assert not payload.match_result.is_match

    @pytest.mark.parametrize("error, status_code", [
        (PayloadTooLarge("Submission is too large"), 413),
        (DeliveryFailed("Mail server error 451"), 502),
    ])
    def test_delivery_errors(self, client, mailer, error, status_code):
        mailer.deliver.side_effect = error

        response = client.post("/api/v1/stepper-form", json={
            "fullName": "Jane Doe", "email": "jane@example.com", "phone": "+1 555 010 4477"
        })

        assert response.status_code == status_code

    def test_oversized_request(self, comparator, mailer, registry):
        app = build_app(comparator, mailer, registry, max_request_bytes=100)

        with TestClient(app) as client:
            response = client.post("/api/v1/stepper-form", json={"fullName": "x" * 200})

        assert response.status_code == 413
        assert response.json()["error"] == "PayloadTooLarge"


class TestSessionEndpoints:
    """Tests for driving a verification session over HTTP."""

    def create(self, client, variant="still_photo"):
        response = client.post("/api/v1/sessions", json={"variant": variant})
        assert response.status_code == 201
        return response.json()["sessionId"]

    def upload(self, client, session_id, side, data, filename="id.png", content_type="image/png"):
        return client.post(
            f"/api/v1/sessions/{session_id}/documents/{side}",
            files={"file": (filename, data, content_type)}
        )

    def test_full_still_photo_session(self, client, mailer, document_png, registry):
        session_id = self.create(client)
        base = f"/api/v1/sessions/{session_id}"

        state = client.get(base).json()
        assert state["currentStep"] == 1
        assert [step["title"] for step in state["steps"]][2] == "Face Verification"

        assert client.put(f"{base}/personal-info", json=PERSONAL).status_code == 200
        assert client.post(f"{base}/advance").json()["currentStep"] == 2

        assert self.upload(client, session_id, "front", document_png).status_code == 200
        assert self.upload(client, session_id, "back", document_png).status_code == 200
        assert client.post(f"{base}/advance").json()["currentStep"] == 3

        assert client.post(f"{base}/camera/start").json()["cameraActive"]
        state = client.post(f"{base}/live-photo").json()
        assert state["hasLivePhoto"]
        assert state["matchResult"]["isMatch"]
        assert state["matchResult"]["matchPercentage"] == 75
        assert not state["cameraActive"]

        navigation = client.post(f"{base}/advance").json()
        assert navigation["moved"]
        assert navigation["currentStep"] == 4

        response = client.post(f"{base}/submit")
        assert response.status_code == 200
        assert response.json()["success"]
        mailer.deliver.assert_awaited_once()
        assert client.get(base).status_code == 404

    def test_advance_reports_failures(self, client):
        session_id = self.create(client)

        navigation = client.post(f"/api/v1/sessions/{session_id}/advance").json()

        assert not navigation["moved"]
        assert navigation["currentStep"] == 1
        assert {"full_name", "email"} <= {failure["field"] for failure in navigation["failures"]}

    def test_step_indicator(self, client):
        session_id = self.create(client)
        base = f"/api/v1/sessions/{session_id}"

        navigation = client.post(f"{base}/steps/3").json()
        assert not navigation["moved"]

        assert client.post(f"{base}/steps/9").status_code == 422

    def test_rejected_upload(self, client, document_png):
        session_id = self.create(client)

        response = self.upload(client, session_id, "front", document_png, "id.gif", "image/gif")

        assert response.status_code == 400
        assert "only PNG, JPG, or JPEG" in response.json()["message"]

    def test_corrupted_upload(self, client):
        session_id = self.create(client)

        response = self.upload(client, session_id, "front", b"\xff\xd8\xff\xe0" + b"\x00" * 2048, "id.jpg", "image/jpeg")

        assert response.status_code == 400
        assert "corrupted" in response.json()["message"]
        assert not client.get(f"/api/v1/sessions/{session_id}").json()["documents"]["front"]

    def test_submit_incomplete_session(self, client, mailer):
        session_id = self.create(client)

        response = client.post(f"/api/v1/sessions/{session_id}/submit")

        assert response.status_code == 422
        assert response.json()["error"] == "SubmissionNotReady"
        mailer.deliver.assert_not_called()

    def test_unknown_session(self, client):
        response = client.get("/api/v1/sessions/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"] == "FlowNotFound"

    def test_delete_session(self, client, registry):
        session_id = self.create(client)

        assert client.delete(f"/api/v1/sessions/{session_id}").status_code == 204
        assert len(registry) == 0

    def test_live_photo_without_camera(self, client):
        session_id = self.create(client)

        response = client.post(f"/api/v1/sessions/{session_id}/live-photo")

        assert response.status_code == 409
        assert response.json()["guidance"] == "Start the camera first."

    def test_camera_busy_in_another_session(self, client):
        first = self.create(client)
        second = self.create(client)

        assert client.post(f"/api/v1/sessions/{first}/camera/start").json()["cameraActive"]
        response = client.post(f"/api/v1/sessions/{second}/camera/start")

        assert response.status_code == 409
        assert response.json()["error"] == "DeviceBusy"

        client.post(f"/api/v1/sessions/{first}/camera/stop")
        assert client.post(f"/api/v1/sessions/{second}/camera/start").json()["cameraActive"]

    @pytest.mark.parametrize("camera_options", [{"open_error": PermissionDenied("Camera access was denied")}])
    def test_camera_permission_denied(self, client):
        session_id = self.create(client)

        response = client.post(f"/api/v1/sessions/{session_id}/camera/start")

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "PermissionDenied"
        assert "camera access" in body["guidance"]
