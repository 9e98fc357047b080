"""
Camera device client for live capture.

This module wraps OpenCV VideoCapture with device enumeration, a permission
probe, and classification of acquisition failures into the capture error
taxonomy reported to users.
"""

import glob
import logging
import os
import sys
import threading
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """Base exception for camera capture failures."""

    guidance = "Please check your camera and try again."

    def __init__(self, message: str, guidance: Optional[str] = None):
        super().__init__(message)
        if guidance:
            self.guidance = guidance


class PermissionDenied(CaptureError):
    """Raised when access to the camera is not permitted."""

    guidance = "Allow camera access for this application in your system settings, then try again."


class DeviceNotFound(CaptureError):
    """Raised when no camera is present at the requested index."""

    guidance = "Connect a camera, or choose a different camera, and try again."


class DeviceBusy(CaptureError):
    """Raised when the camera is held by another session or process."""

    guidance = "Close other applications using the camera, or stop the active camera session first."


class ConstraintsUnsatisfiable(CaptureError):
    """Raised when the camera cannot deliver the requested format."""

    guidance = "Your camera does not support the requested resolution. Try again with default settings."


class NotSupported(CaptureError):
    """Raised when camera capture is unavailable on this platform."""

    guidance = "Camera capture is not supported here. Upload your photos instead."


@dataclass(frozen=True)
class CameraConstraints:
    """Requested camera configuration."""

    device_index: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None
    exact: bool = False  # fail instead of accepting a different resolution


def _device_path(index: int) -> str:
    return f"/dev/video{index}"


def enumerate_devices() -> List[int]:
    """
    List camera indices available on this host.

    On Linux the V4L2 device nodes are listed; elsewhere indices are probed
    by opening them.
    """
    if sys.platform.startswith("linux"):
        indices = []
        for path in glob.glob("/dev/video*"):
            suffix = path[len("/dev/video"):]
            if suffix.isdigit():
                indices.append(int(suffix))
        return sorted(indices)

    indices = []
    for index in range(4):
        capture = cv2.VideoCapture(index)
        try:
            if capture.isOpened():
                indices.append(index)
        finally:
            capture.release()
    return indices


class OpenCVCamera:
    """
    Exclusive handle on one camera device.

    The handle is acquired by open() and released by release(); release is
    idempotent and safe to call after a failed open.
    Reads and release are serialized, so release waits for a frame read in
    progress on another thread.
    """

    def __init__(self, constraints: Optional[CameraConstraints] = None, permission_probe: bool = True):
        """
        Initialize camera handle.

        Args:
            constraints: Requested device and format (default: device 0, native format)
            permission_probe: Check device node permissions before opening
        """
        self.constraints = constraints or CameraConstraints()
        self.permission_probe = permission_probe
        self._capture: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def probe_permission(self) -> None:
        """
        Fail fast with PermissionDenied without touching the device.

        Only device-node platforms can be probed; elsewhere this is a no-op.
        """
        if not sys.platform.startswith("linux"):
            return
        path = _device_path(self.constraints.device_index)
        if os.path.exists(path) and not os.access(path, os.R_OK | os.W_OK):
            raise PermissionDenied(f"No read/write permission on {path}")

    def open(self) -> None:
        """
        Acquire the camera and verify it delivers frames.

        Raises:
            PermissionDenied, DeviceNotFound, DeviceBusy,
            ConstraintsUnsatisfiable, NotSupported
        """
        if self._capture is not None:
            raise DeviceBusy("Camera handle is already open")

        if not hasattr(cv2, "VideoCapture"):
            raise NotSupported("OpenCV was built without video capture support")

        index = self.constraints.device_index
        if self.permission_probe:
            self.probe_permission()

        on_linux = sys.platform.startswith("linux")
        if on_linux and not os.path.exists(_device_path(index)):
            raise DeviceNotFound(f"No camera at {_device_path(index)}")

        logger.info(f"Opening camera {index}")
        capture = cv2.VideoCapture(index)
        if not capture.isOpened():
            capture.release()
            if on_linux:
                raise DeviceBusy(f"Camera {index} exists but could not be opened")
            raise DeviceNotFound(f"Camera {index} could not be opened")

        try:
            self._apply_constraints(capture)
            ok, frame = capture.read()
            if not ok or frame is None:
                raise DeviceBusy(f"Camera {index} opened but returned no frames")
            self._check_constraints(frame)
        except CaptureError:
            capture.release()
            raise
        except cv2.error as e:
            capture.release()
            raise NotSupported(f"Camera {index} failed during setup: {e}")

        self._capture = capture
        logger.info(f"Camera {index} opened at {frame.shape[1]}x{frame.shape[0]}")

    def _apply_constraints(self, capture: cv2.VideoCapture) -> None:
        if self.constraints.width:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.constraints.width)
        if self.constraints.height:
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.constraints.height)
        if self.constraints.fps:
            capture.set(cv2.CAP_PROP_FPS, self.constraints.fps)
        # Keep latency low: only the newest frame is useful for preview/capture
        capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)

    def _check_constraints(self, frame: np.ndarray) -> None:
        if not self.constraints.exact:
            return
        height, width = frame.shape[:2]
        wanted_w, wanted_h = self.constraints.width, self.constraints.height
        if (wanted_w and width != wanted_w) or (wanted_h and height != wanted_h):
            raise ConstraintsUnsatisfiable(
                f"Requested {wanted_w}x{wanted_h}, camera delivers {width}x{height}"
            )

    def read_frame(self) -> np.ndarray:
        """
        Grab the current frame.

        Raises:
            CaptureError: If the camera is closed or the read fails
        """
        with self._lock:
            if self._capture is None:
                raise CaptureError("Camera is not open")
            ok, frame = self._capture.read()
        if not ok or frame is None:
            raise CaptureError("Failed to grab frame from camera")
        return frame

    def release(self) -> None:
        """Release the device. Safe to call repeatedly."""
        with self._lock:
            if self._capture is None:
                return
            try:
                self._capture.release()
                logger.info(f"Released camera {self.constraints.device_index}")
            except cv2.error as e:
                logger.warning(f"Error releasing camera: {e}")
            finally:
                self._capture = None
