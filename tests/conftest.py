"""
Shared fixtures: synthetic images, a fake camera, a controllable clock.
"""

import asyncio
import io

import numpy as np
import pytest
from PIL import Image

from src.clients.camera_client import CaptureError
from src.services.capture_service import MediaCaptureController
from src.utils.video_utils import ENCODING_LADDER


def make_image_bytes(width=64, height=48, color=(200, 120, 40), fmt="PNG") -> bytes:
    """Solid-colour image encoded with Pillow."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_noise_bytes(width=64, height=64, fmt="PNG", seed=0) -> bytes:
    """Random-noise image; compresses poorly, so it is comfortably over 1KB."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buffer, format=fmt)
    return buffer.getvalue()


class FakeCamera:
    """Stands in for OpenCVCamera; frames are solid BGR arrays."""

    def __init__(self, constraints, open_error=None, read_error=None, frame=None):
        self.constraints = constraints
        self.open_error = open_error
        self.read_error = read_error
        self.frame = frame if frame is not None else np.full((480, 640, 3), 127, dtype=np.uint8)
        self.is_open = False
        self.open_count = 0
        self.release_count = 0

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.is_open = True
        self.open_count += 1

    def read_frame(self):
        if self.read_error is not None:
            raise self.read_error
        if not self.is_open:
            raise CaptureError("Camera is not open")
        return self.frame.copy()

    def release(self):
        if self.is_open:
            self.release_count += 1
        self.is_open = False


class FakeClock:
    """Monotonic clock advanced only by the countdown sleep."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        await asyncio.sleep(0)
        self.now += delay


def fake_encoder(frames, fps, width, height, bitrate):
    return b"\x1a\x45\xdf\xa3fake-webm", ENCODING_LADDER[0]


class CameraFactory:
    """Records every camera it builds; options apply to new cameras."""

    def __init__(self, **options):
        self.options = options
        self.cameras = []

    def __call__(self, constraints):
        camera = FakeCamera(constraints, **self.options)
        self.cameras.append(camera)
        return camera

    @property
    def last(self):
        return self.cameras[-1]


@pytest.fixture
def png_bytes():
    return make_image_bytes()


@pytest.fixture
def document_png():
    """Document-sized PNG over the minimum upload size."""
    return make_noise_bytes(64, 64, "PNG", seed=1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def camera_factory():
    return CameraFactory()


@pytest.fixture
def controller(camera_factory, clock):
    return MediaCaptureController(
        camera_factory=camera_factory,
        encoder=fake_encoder,
        clock=clock,
        sleep=clock.sleep
    )
