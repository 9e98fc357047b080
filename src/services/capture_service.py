"""
Media capture controller.

This module owns the camera lifecycle for a verification flow:
- Acquiring and releasing the camera device (one owner at a time)
- Sharing device ownership between flows through a lease table
- Capturing still frames at an exact output size
- Timed video recording with a one-second countdown and automatic stop
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from src.clients.camera_client import (
    CameraConstraints,
    CaptureError,
    DeviceBusy,
    NotSupported,
    OpenCVCamera,
)
from src.config import settings
from src.models.internal_models import LiveVideo
from src.utils.video_utils import VideoEncoding, VideoEncodingError, encode_frames

logger = logging.getLogger(__name__)

Encoder = Callable[[Sequence[np.ndarray], int, int, int, str], Tuple[bytes, VideoEncoding]]


class CaptureState(str, Enum):
    IDLE = "idle"
    CAMERA_ACTIVE = "camera_active"
    RECORDING = "recording"


@dataclass(eq=False)
class Recording:
    """An in-flight timed recording."""

    max_seconds: int
    started_at: float
    result: asyncio.Future
    fps: int
    width: int
    height: int
    bitrate: str
    frames: List[np.ndarray] = field(default_factory=list)
    stopping: bool = False
    frame_task: Optional[asyncio.Task] = None
    countdown_task: Optional[asyncio.Task] = None

    async def wait(self) -> LiveVideo:
        """
        Wait for the encoded video.

        Raises:
            CaptureError: If the recording was aborted or could not be encoded
        """
        try:
            return await asyncio.shield(self.result)
        except asyncio.CancelledError:
            if self.result.cancelled():
                raise CaptureError("Recording was aborted because the camera was stopped")
            raise


@dataclass(eq=False)
class CaptureSession:
    """Handle on an active camera stream."""

    camera: OpenCVCamera
    constraints: CameraConstraints
    recording: Optional[Recording] = None
    elapsed_seconds: int = 0
    active: bool = True

    @property
    def state(self) -> CaptureState:
        if not self.active:
            return CaptureState.IDLE
        if self.recording is not None:
            return CaptureState.RECORDING
        return CaptureState.CAMERA_ACTIVE


class DeviceLeases:
    """
    Which capture controller holds each camera device.

    One table is shared by every flow in a process, so two applicants never
    read from the same device at once.
    """

    def __init__(self):
        self._owners: Dict[int, object] = {}

    def __len__(self) -> int:
        return len(self._owners)

    def owner(self, device_index: int) -> Optional[object]:
        return self._owners.get(device_index)

    def acquire(self, device_index: int, owner: object) -> None:
        """
        Claim a device for owner. Claiming a device already held by owner is a no-op.

        Raises:
            DeviceBusy: If another owner holds the device
        """
        holder = self._owners.get(device_index)
        if holder is not None and holder is not owner:
            raise DeviceBusy(
                f"Camera {device_index} is in use by another verification session",
                guidance="Close other sessions using the camera and try again."
            )
        self._owners[device_index] = owner

    def release(self, device_index: int, owner: object) -> None:
        if self._owners.get(device_index) is owner:
            del self._owners[device_index]

class MediaCaptureController:
    """
    Camera owner for one verification flow.

    Device reads and video encoding are blocking and run in worker threads.
    The countdown drives automatic stop; the clock measures durations.
    """

    def __init__(
        self,
        camera_factory: Optional[Callable[[CameraConstraints], OpenCVCamera]] = None,
        encoder: Optional[Encoder] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
        leases: Optional[DeviceLeases] = None
    ):
        """
        Initialize capture controller.

        Args:
            camera_factory: Builds a camera handle from constraints (default: OpenCVCamera)
            encoder: Encodes recorded frames (default: video_utils.encode_frames)
            clock: Monotonic clock used for recording durations
            sleep: Sleep used by the recording countdown
            leases: Device ownership shared with other controllers (default: none)
        """
        self._camera_factory = camera_factory or self._default_camera
        self._encoder = encoder or encode_frames
        self._clock = clock
        self._sleep = sleep
        self.leases = leases
        self.session: Optional[CaptureSession] = None

    @staticmethod
    def _default_camera(constraints: CameraConstraints) -> OpenCVCamera:
        return OpenCVCamera(constraints, permission_probe=settings.camera_permission_probe)

    @property
    def state(self) -> CaptureState:
        return self.session.state if self.session else CaptureState.IDLE

    async def start_camera(self, constraints: Optional[CameraConstraints] = None) -> CaptureSession:
        """
        Acquire the camera.

        Raises:
            DeviceBusy: If this controller already holds an active session, or
                another controller holds the device
            CaptureError: Any device acquisition failure
        """
        if self.session is not None and self.session.active:
            raise DeviceBusy("A camera session is already active")

        constraints = constraints or CameraConstraints(device_index=settings.camera_index)
        if self.leases is not None:
            self.leases.acquire(constraints.device_index, self)

        camera = self._camera_factory(constraints)
        try:
            await asyncio.to_thread(camera.open)
        except CaptureError as e:
            logger.warning(f"Camera start failed ({type(e).__name__}): {e}")
            camera.release()
            self._release_lease(constraints)
            raise

        self.session = CaptureSession(camera=camera, constraints=constraints)
        logger.info(f"Camera session started on device {constraints.device_index}")
        return self.session

    async def stop_camera(self, session: Optional[CaptureSession] = None) -> None:
        """Release the camera, aborting any recording. Always succeeds."""
        session = session or self.session
        if session is None:
            return

        if session.recording is not None:
            self._abort_recording(session)

        if session.active:
            session.active = False
            await asyncio.to_thread(session.camera.release)
            self._release_lease(session.constraints)
            logger.info("Camera session stopped")

        if self.session is session:
            self.session = None

    async def close(self) -> None:
        await self.stop_camera()

    def _release_lease(self, constraints: CameraConstraints) -> None:
        if self.leases is not None:
            self.leases.release(constraints.device_index, self)

    @asynccontextmanager
    async def camera(self, constraints: Optional[CameraConstraints] = None) -> AsyncIterator[CaptureSession]:
        """Scoped camera ownership: the device is released on exit."""
        session = await self.start_camera(constraints)
        try:
            yield session
        finally:
            await self.stop_camera(session)

    def _require_active(self, session: Optional[CaptureSession]) -> CaptureSession:
        if session is None or not session.active:
            raise CaptureError("Camera is not active", guidance="Start the camera first.")
        return session

    async def capture_still_frame(self, session: Optional[CaptureSession], width: int, height: int) -> bytes:
        """
        Capture the current frame as a PNG of exactly width x height.

        Raises:
            CaptureError: If the camera is inactive or the frame cannot be read
        """
        session = self._require_active(session)
        frame = await asyncio.to_thread(session.camera.read_frame)
        resized = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
        ok, encoded = cv2.imencode(".png", resized)
        if not ok:
            raise CaptureError("Failed to encode captured frame")
        logger.info(f"Captured still frame at {width}x{height}")
        return encoded.tobytes()

    async def start_timed_recording(
        self,
        session: Optional[CaptureSession],
        max_seconds: Optional[int] = None,
        fps: Optional[int] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        bitrate: Optional[str] = None
    ) -> Recording:
        """
        Begin recording; stops automatically after max_seconds.

        Raises:
            CaptureError: If the camera is inactive
            DeviceBusy: If a recording is already in progress
        """
        session = self._require_active(session)
        if session.recording is not None:
            raise DeviceBusy("A recording is already in progress")

        recording = Recording(
            max_seconds=max_seconds or settings.video_max_seconds,
            started_at=self._clock(),
            result=asyncio.get_running_loop().create_future(),
            fps=fps or settings.video_fps,
            width=width or settings.video_width,
            height=height or settings.video_height,
            bitrate=bitrate or settings.video_bitrate
        )
        session.recording = recording
        session.elapsed_seconds = 0

        recording.frame_task = asyncio.create_task(self._pump_frames(session, recording))
        recording.countdown_task = asyncio.create_task(self._countdown(session, recording))
        logger.info(f"Recording started (max {recording.max_seconds}s)")
        return recording

    async def stop_recording(self, session: Optional[CaptureSession]) -> LiveVideo:
        """
        Stop the current recording early and return the encoded video.

        Raises:
            CaptureError: If nothing is recording or encoding fails
        """
        session = self._require_active(session)
        recording = session.recording
        if recording is None:
            raise CaptureError("No recording in progress")

        if not recording.stopping:
            duration = min(self._clock() - recording.started_at, float(recording.max_seconds))
            await self._finish(session, recording, duration)
        return await recording.wait()

    async def _countdown(self, session: CaptureSession, recording: Recording) -> None:
        while session.elapsed_seconds < recording.max_seconds:
            await self._sleep(1)
            if recording.stopping:
                return
            session.elapsed_seconds += 1

        logger.info(f"Recording reached {recording.max_seconds}s, stopping automatically")
        await self._finish(session, recording, float(recording.max_seconds))

    async def _pump_frames(self, session: CaptureSession, recording: Recording) -> None:
        interval = 1.0 / recording.fps
        while not recording.stopping:
            tick = time.monotonic()
            try:
                frame = await asyncio.to_thread(session.camera.read_frame)
            except CaptureError as e:
                logger.warning(f"Dropped frame during recording: {e}")
            else:
                if not recording.stopping:
                    recording.frames.append(
                        cv2.resize(frame, (recording.width, recording.height), interpolation=cv2.INTER_AREA)
                    )
            await asyncio.sleep(max(0.0, interval - (time.monotonic() - tick)))

    async def _finish(self, session: CaptureSession, recording: Recording, duration: float) -> None:
        recording.stopping = True
        if recording.countdown_task is not None and recording.countdown_task is not asyncio.current_task():
            recording.countdown_task.cancel()
        if recording.frame_task is not None:
            await asyncio.wait([recording.frame_task])

        if session.recording is recording:
            session.recording = None

        frames = list(recording.frames)
        recording.frames.clear()
        try:
            data, encoding = await asyncio.to_thread(
                self._encoder, frames, recording.fps, recording.width, recording.height, recording.bitrate
            )
        except VideoEncodingError as e:
            logger.error(f"Video encoding failed: {e}")
            if not recording.result.done():
                recording.result.set_exception(NotSupported(f"Video recording is not supported here: {e}"))
            return
        except Exception as e:
            logger.error(f"Unexpected error encoding video: {e}")
            if not recording.result.done():
                recording.result.set_exception(CaptureError(f"Video encoding failed: {e}"))
            return

        video = LiveVideo(
            data=data,
            duration_seconds=duration,
            mime_type=encoding.mime_type,
            codec=encoding.codec
        )
        logger.info(f"Recording finished: {duration:.1f}s, {len(data)} bytes ({encoding.codec})")
        if not recording.result.done():
            recording.result.set_result(video)

    def _abort_recording(self, session: CaptureSession) -> None:
        recording = session.recording
        session.recording = None
        recording.stopping = True
        for task in (recording.countdown_task, recording.frame_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        if not recording.result.done():
            recording.result.cancel()
        logger.info("Recording aborted")
