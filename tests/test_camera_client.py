"""
Tests for the OpenCV camera handle and device enumeration.
"""

import threading
from unittest.mock import MagicMock, patch

import cv2
import numpy as np
import pytest

from src.clients.camera_client import (
    CameraConstraints,
    CaptureError,
    ConstraintsUnsatisfiable,
    DeviceBusy,
    DeviceNotFound,
    NotSupported,
    OpenCVCamera,
    PermissionDenied,
    enumerate_devices,
)


def make_capture(opened=True, frame_shape=(480, 640, 3)):
    capture = MagicMock()
    capture.isOpened.return_value = opened
    frame = np.zeros(frame_shape, dtype=np.uint8) if frame_shape else None
    capture.read.return_value = (frame is not None, frame)
    return capture


@pytest.fixture
def linux_device():
    """Pretend to run on Linux with an accessible /dev/video node."""
    with patch("src.clients.camera_client.sys.platform", "linux"), \
            patch("src.clients.camera_client.os.path.exists", return_value=True) as exists, \
            patch("src.clients.camera_client.os.access", return_value=True) as access:
        yield exists, access


class TestOpenCVCamera:
    """Test cases for acquiring and classifying camera failures."""

    def test_open_and_read(self, linux_device):
        capture = make_capture()
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=capture) as video_capture:
            camera = OpenCVCamera(CameraConstraints(device_index=1, width=640, height=480))
            camera.open()

        video_capture.assert_called_once_with(1)
        capture.set.assert_any_call(cv2.CAP_PROP_FRAME_WIDTH, 640)
        assert camera.is_open
        assert camera.read_frame().shape == (480, 640, 3)

    def test_second_open_is_busy(self, linux_device):
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=make_capture()):
            camera = OpenCVCamera()
            camera.open()

            with pytest.raises(DeviceBusy):
                camera.open()

    def test_permission_denied(self, linux_device):
        _, access = linux_device
        access.return_value = False

        with patch("src.clients.camera_client.cv2.VideoCapture") as video_capture:
            with pytest.raises(PermissionDenied) as exc_info:
                OpenCVCamera().open()

        video_capture.assert_not_called()
        assert "camera access" in exc_info.value.guidance

    def test_missing_device_node(self, linux_device):
        exists, _ = linux_device
        exists.return_value = False

        with pytest.raises(DeviceNotFound):
            OpenCVCamera(CameraConstraints(device_index=3)).open()

    def test_existing_device_that_will_not_open_is_busy(self, linux_device):
        capture = make_capture(opened=False)
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=capture):
            with pytest.raises(DeviceBusy):
                OpenCVCamera().open()
        capture.release.assert_called_once()

    def test_unopenable_index_elsewhere_is_not_found(self):
        capture = make_capture(opened=False)
        with patch("src.clients.camera_client.sys.platform", "darwin"), \
                patch("src.clients.camera_client.cv2.VideoCapture", return_value=capture):
            with pytest.raises(DeviceNotFound):
                OpenCVCamera().open()

    def test_no_frames_is_busy(self, linux_device):
        capture = make_capture(frame_shape=None)
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=capture):
            camera = OpenCVCamera()
            with pytest.raises(DeviceBusy, match="no frames"):
                camera.open()

        capture.release.assert_called_once()
        assert not camera.is_open

    def test_exact_resolution_mismatch(self, linux_device):
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=make_capture()):
            camera = OpenCVCamera(CameraConstraints(width=1920, height=1080, exact=True))
            with pytest.raises(ConstraintsUnsatisfiable):
                camera.open()

    def test_backend_error_is_not_supported(self, linux_device):
        capture = make_capture()
        capture.set.side_effect = cv2.error("backend rejected property")
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=capture):
            with pytest.raises(NotSupported):
                OpenCVCamera(CameraConstraints(width=320)).open()

    def test_read_when_closed(self):
        with pytest.raises(CaptureError, match="not open"):
            OpenCVCamera().read_frame()

    def test_release_is_idempotent(self, linux_device):
        capture = make_capture()
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=capture):
            camera = OpenCVCamera()
            camera.open()

        camera.release()
        camera.release()

        capture.release.assert_called_once()
        assert not camera.is_open

    def test_release_waits_for_read_in_progress(self, linux_device):
        capture = make_capture()
        with patch("src.clients.camera_client.cv2.VideoCapture", return_value=capture):
            camera = OpenCVCamera()
            camera.open()

        reading = threading.Event()
        finish_read = threading.Event()
        frame = np.zeros((480, 640, 3), dtype=np.uint8)

        def slow_read():
            reading.set()
            finish_read.wait(timeout=5)
            return True, frame

        capture.read.side_effect = slow_read
        frames = []
        reader = threading.Thread(target=lambda: frames.append(camera.read_frame()))
        reader.start()
        assert reading.wait(timeout=5)

        releaser = threading.Thread(target=camera.release)
        releaser.start()
        releaser.join(timeout=0.1)
        assert releaser.is_alive()
        capture.release.assert_not_called()

        finish_read.set()
        reader.join(timeout=5)
        releaser.join(timeout=5)

        assert frames[0] is frame
        capture.release.assert_called_once()
        assert not camera.is_open


class TestEnumerateDevices:
    @patch("src.clients.camera_client.glob.glob")
    def test_linux_device_nodes(self, mock_glob):
        mock_glob.return_value = ["/dev/video2", "/dev/video0", "/dev/video-loopback"]

        with patch("src.clients.camera_client.sys.platform", "linux"):
            assert enumerate_devices() == [0, 2]

    def test_scans_indices_elsewhere(self):
        captures = [make_capture(opened=index in (0, 2)) for index in range(4)]
        with patch("src.clients.camera_client.sys.platform", "win32"), \
                patch("src.clients.camera_client.cv2.VideoCapture", side_effect=captures):
            assert enumerate_devices() == [0, 2]

        for capture in captures:
            capture.release.assert_called_once()
