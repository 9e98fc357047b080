"""
Verification flow controller.

This module sequences the four verification steps:
1. Personal information
2. Identity document (uploaded or captured, front and back)
3. Live evidence (a still photo gated by a face match, or a timed video)
4. Review and submission

It holds the immutable session aggregate, calls the capture, face match and
delivery collaborators at the right moments, and applies face match results
only to the live photo they were computed for.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from src.clients.camera_client import CameraConstraints, CaptureError
from src.clients.comparator_client import FaceMatchError
from src.clients.delivery_client import (
    DeliveryReceipt,
    SubmissionError,
    SubmissionMailer,
    attachment_stem,
)
from src.config import settings
from src.models.internal_models import (
    DocumentMode,
    DocumentSide,
    FlowVariant,
    LivePhoto,
    LiveVideo,
    MatchResult,
    SubmissionAttachment,
    SubmissionPayload,
    UploadedDocument,
    VerificationSession,
)
from src.observability import record_capture_metrics, record_submission_metrics
from src.services.capture_service import DeviceLeases, MediaCaptureController, Recording
from src.services.face_match_service import FaceMatchService
from src.services.validation_service import StepValidation, steps_for, validate_step
from src.utils.image_utils import (
    ImageProcessingError,
    ImageValidationError,
    compress_for_transport,
    enhance_for_comparison,
    load_image,
    validate_upload,
)

logger = logging.getLogger(__name__)

FIRST_STEP = 1
LAST_STEP = 4
LIVE_EVIDENCE_STEP = 3

VIDEO_EXTENSIONS = {
    "video/webm": "webm",
    "video/mp4": "mp4",
    "video/x-msvideo": "avi",
}


class FlowError(Exception):
    """Raised when an action is not allowed in the current flow state."""
    pass


class FlowNotFound(FlowError):
    """Raised when a flow id is unknown."""
    pass


class SubmissionNotReady(FlowError):
    """Raised when submitting while any step is still invalid."""

    def __init__(self, validation: StepValidation):
        fields = ", ".join(failure.field for failure in validation.failures)
        super().__init__(f"Submission is not ready: {fields}")
        self.validation = validation


class VerificationFlow:
    """
    State machine over steps 1 to 4 for one applicant.

    Navigation is gated by the step predicates. Submission is a side effect
    from step 4 and does not change the step.
    """

    def __init__(
        self,
        variant: FlowVariant,
        capture: MediaCaptureController,
        face_match: FaceMatchService,
        delivery: SubmissionMailer,
        session: Optional[VerificationSession] = None
    ):
        self.variant = FlowVariant(variant)
        self.capture = capture
        self.face_match = face_match
        self.delivery = delivery
        self.session = session or VerificationSession()
        self.steps = steps_for(self.variant)
        self.current_step = FIRST_STEP
        self.last_match_error: Optional[str] = None
        self._match_task: Optional[asyncio.Task] = None
        self._recording: Optional[Recording] = None

    @property
    def flow_id(self) -> str:
        return self.session.session_id

    @property
    def match_pending(self) -> bool:
        return self._match_task is not None and not self._match_task.done()

    @property
    def recording(self) -> Optional[Recording]:
        return self._recording

    # Validation and navigation

    def validation(self, step: Optional[int] = None) -> StepValidation:
        return validate_step(self.session, step or self.current_step, self.variant)

    def is_step_valid(self, step: int) -> bool:
        return self.validation(step).is_valid

    def advance(self) -> StepValidation:
        """
        Move to the next step if the current one is valid.

        Returns:
            The current step's validation, so callers can report failures
        """
        validation = self.validation()
        if validation.is_valid and self.current_step < LAST_STEP:
            self.current_step += 1
            logger.info(f"Flow {self.flow_id} advanced to step {self.current_step}")
        return validation

    def retreat(self) -> bool:
        if self.current_step <= FIRST_STEP:
            return False
        self.current_step -= 1
        logger.info(f"Flow {self.flow_id} went back to step {self.current_step}")
        return True

    def go_to(self, step: int) -> bool:
        """
        Jump to a step: allowed backwards, or forwards when the predecessor is valid.

        Raises:
            ValueError: If step is not between 1 and 4
        """
        if not FIRST_STEP <= step <= LAST_STEP:
            raise ValueError(f"Step must be between {FIRST_STEP} and {LAST_STEP}, got {step}")
        if step <= self.current_step or self.is_step_valid(step - 1):
            self.current_step = step
            return True
        return False

    # Step 1 and 2 data

    def update_personal_info(self, **changes) -> VerificationSession:
        self.session = self.session.with_personal_info(**changes)
        return self.session

    def set_document_mode(self, mode: DocumentMode) -> VerificationSession:
        self.session = self.session.with_document_mode(mode)
        return self.session

    def attach_upload(
        self,
        side: DocumentSide,
        filename: str,
        content_type: Optional[str],
        data: bytes
    ) -> VerificationSession:
        """
        Attach an uploaded document image.

        Raises:
            ImageValidationError: If the file type or size is rejected, or it does not decode
            FlowError: If the flow is in capture mode
        """
        validate_upload(filename, content_type, len(data))
        try:
            load_image(data)
        except ImageProcessingError as e:
            logger.warning(f"Flow {self.flow_id} rejected undecodable {side.value} upload: {e}")
            raise ImageValidationError("File appears to be corrupted or is not a readable image.")
        if self.session.document_mode != DocumentMode.UPLOAD:
            raise FlowError("Switch to upload mode to upload documents")

        document = UploadedDocument(filename=filename, content_type=content_type, data=data)
        self.session = self.session.with_uploaded_document(side, document)
        logger.info(f"Flow {self.flow_id} attached {side.value} document upload ({len(data)} bytes)")
        return self.session

    def remove_document(self, side: DocumentSide) -> VerificationSession:
        self.session = self.session.without_document(side)
        return self.session

    # Camera

    async def start_camera(self, constraints: Optional[CameraConstraints] = None) -> None:
        """
        Start the camera; on the live evidence step this discards any match.

        Raises:
            CaptureError: If the camera cannot be acquired
        """
        if self.current_step == LIVE_EVIDENCE_STEP:
            self._discard_match()
        await self.capture.start_camera(constraints)

    async def stop_camera(self) -> None:
        await self.capture.stop_camera()

    async def capture_document(self, side: DocumentSide) -> bytes:
        """
        Capture a document side from the camera, then release the camera.

        Raises:
            FlowError: If the flow is in upload mode
            CaptureError: If the frame cannot be captured
        """
        if self.session.document_mode != DocumentMode.CAPTURE:
            raise FlowError("Switch to capture mode to photograph documents")

        try:
            image = await self.capture.capture_still_frame(
                self.capture.session, settings.document_width, settings.document_height
            )
        except CaptureError as e:
            record_capture_metrics("document", False, type(e).__name__)
            raise

        self.session = self.session.with_captured_document(side, image)
        await self.capture.stop_camera()
        record_capture_metrics("document", True)
        return image

    async def capture_live_photo(self) -> LivePhoto:
        """
        Capture and enhance a live still, then start comparing it to the front document.

        The new photo replaces any previous one together with its match
        result. The comparison runs in the background; see wait_for_match().

        Raises:
            FlowError: If this flow records video instead
            CaptureError: If the frame cannot be captured
        """
        if self.variant != FlowVariant.STILL_PHOTO:
            raise FlowError("This flow records a live video, not a photo")

        try:
            raw = await self.capture.capture_still_frame(
                self.capture.session, settings.selfie_width, settings.selfie_height
            )
            enhanced = await asyncio.to_thread(enhance_for_comparison, raw)
        except (CaptureError, ImageProcessingError) as e:
            record_capture_metrics("photo", False, type(e).__name__)
            raise

        photo = LivePhoto(image=enhanced)
        self._discard_match()
        self.session = self.session.with_live_photo(photo)
        await self.capture.stop_camera()
        record_capture_metrics("photo", True)
        logger.info(f"Flow {self.flow_id} captured live photo {photo.artifact_id}")

        self._schedule_match(photo)
        return photo

    def reset_live_evidence(self) -> VerificationSession:
        """Discard the live photo or video and its match so the user can retry."""
        self._discard_match()
        self.session = self.session.without_live_evidence()
        return self.session

    # Face match

    def _discard_match(self) -> None:
        if self._match_task is not None and not self._match_task.done():
            self._match_task.cancel()
        self._match_task = None
        self.last_match_error = None
        self.session = self.session.without_match_result()

    def _schedule_match(self, photo: LivePhoto) -> None:
        document = self.session.document_image(DocumentSide.FRONT)
        if not document:
            self.last_match_error = "No front ID image to compare against. Add the front of your ID first."
            logger.warning(f"Flow {self.flow_id} has no front document; skipping face match")
            return
        self._match_task = asyncio.create_task(self._run_match(document, photo))

    def _is_current(self, photo: LivePhoto) -> bool:
        live_photo = self.session.live_photo
        return live_photo is not None and live_photo.artifact_id == photo.artifact_id

    async def _run_match(self, document: bytes, photo: LivePhoto) -> Optional[MatchResult]:
        try:
            compressed = await asyncio.to_thread(compress_for_transport, document)
            result = await self.face_match.compare(compressed.data, photo.image, artifact_id=photo.artifact_id)
        except (FaceMatchError, ImageProcessingError) as e:
            logger.warning(f"Face match for photo {photo.artifact_id} failed: {e}")
            if self._is_current(photo):
                self.last_match_error = str(e)
            return None

        if not self._is_current(photo):
            logger.info(f"Discarding face match for superseded photo {photo.artifact_id}")
            return None

        self.session = self.session.with_match_result(result)
        return result

    async def wait_for_match(self) -> Optional[MatchResult]:
        """Wait for the outstanding comparison, if any, and return the current match."""
        task = self._match_task
        if task is not None:
            await asyncio.wait([task])
        return self.session.match_result

    # Video

    async def start_video_recording(self, max_seconds: Optional[int] = None) -> Recording:
        """
        Start a timed recording that stops itself at max_seconds.

        Raises:
            FlowError: If this flow takes a still photo instead
            CaptureError: If the camera is not active or already recording
        """
        if self.variant != FlowVariant.VIDEO:
            raise FlowError("This flow takes a live photo, not a video")

        recording = await self.capture.start_timed_recording(self.capture.session, max_seconds=max_seconds)
        self._recording = recording
        recording.result.add_done_callback(
            lambda future: self._on_recording_done(recording, future)
        )
        return recording

    def _on_recording_done(self, recording: Recording, future: asyncio.Future) -> None:
        if future.cancelled():
            if self._recording is recording:
                self._recording = None
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Flow {self.flow_id} recording failed: {error}")
            record_capture_metrics("video", False, type(error).__name__)
            if self._recording is recording:
                self._recording = None
            return
        self._accept_video(recording, future.result())

    def _accept_video(self, recording: Recording, video: LiveVideo) -> LiveVideo:
        if self._recording is recording:
            self._recording = None
            self.session = self.session.with_live_video(video)
            record_capture_metrics("video", True)
            logger.info(f"Flow {self.flow_id} recorded {video.duration_seconds:.1f}s video")
        return video

    async def stop_video_recording(self) -> LiveVideo:
        """
        Stop recording now (or collect an automatically stopped recording).

        Raises:
            FlowError: If nothing was recorded
            CaptureError: If the recording was aborted or could not be encoded
        """
        recording = self._recording
        if recording is None:
            if self.session.live_video is not None:
                return self.session.live_video
            raise FlowError("No recording in progress")

        session = self.capture.session
        if session is not None and session.recording is recording and not recording.stopping:
            video = await self.capture.stop_recording(session)
        else:
            video = await recording.wait()
        return self._accept_video(recording, video)

    async def finish_video_recording(self) -> LiveVideo:
        """Wait for the recording to stop on its own."""
        recording = self._recording
        if recording is None:
            if self.session.live_video is not None:
                return self.session.live_video
            raise FlowError("No recording in progress")
        return self._accept_video(recording, await recording.wait())

    # Submission

    async def build_submission(self) -> SubmissionPayload:
        """Assemble the delivery payload with transport-compressed documents."""
        info = self.session.personal_info
        stem = attachment_stem(info.full_name)
        attachments = []

        for side, prefix in ((DocumentSide.FRONT, "front_id"), (DocumentSide.BACK, "back_id")):
            image = self.session.document_image(side)
            if image:
                compressed = await asyncio.to_thread(compress_for_transport, image)
                attachments.append(SubmissionAttachment(
                    filename=f"{prefix}_{stem}.jpg", content_type="image/jpeg", data=compressed.data
                ))

        if self.session.live_photo is not None:
            attachments.append(SubmissionAttachment(
                filename=f"selfie_{stem}.png", content_type="image/png", data=self.session.live_photo.image
            ))

        video = self.session.live_video
        if video is not None:
            extension = VIDEO_EXTENSIONS.get(video.mime_type, "bin")
            attachments.append(SubmissionAttachment(
                filename=f"video_{stem}.{extension}", content_type=video.mime_type, data=video.data
            ))

        return SubmissionPayload(
            personal_info=info,
            attachments=tuple(attachments),
            match_result=self.session.match_result,
            video_duration=video.duration_seconds if video else None
        )

    async def submit(self) -> DeliveryReceipt:
        """
        Deliver the session.

        Raises:
            SubmissionNotReady: If any step is invalid
            PayloadTooLarge: If the payload exceeds the delivery limit
            DeliveryFailed: If the delivery channel fails
        """
        validation = self.validation(LAST_STEP)
        if not validation.is_valid:
            raise SubmissionNotReady(validation)

        payload = await self.build_submission()
        start_time = time.time()
        try:
            receipt = await self.delivery.deliver(payload)
        except SubmissionError as e:
            logger.error(f"Flow {self.flow_id} submission failed ({type(e).__name__}): {e}")
            record_submission_metrics(False, time.time() - start_time, len(payload.attachments))
            raise

        record_submission_metrics(True, time.time() - start_time, len(payload.attachments))
        logger.info(f"Flow {self.flow_id} submitted as {receipt.message_id}")
        return receipt

    async def close(self) -> None:
        """Release the camera and drop any pending comparison."""
        if self._match_task is not None and not self._match_task.done():
            self._match_task.cancel()
        self._match_task = None
        await self.capture.stop_camera()


class FlowRegistry:
    """
    In-memory flows keyed by session id. Nothing is persisted.

    Every flow's capture controller shares one device lease table, so a
    camera held by one flow is reported busy to the others. Flows untouched
    for longer than the idle timeout are closed by evict_idle(), which frees
    their camera.
    """

    def __init__(
        self,
        face_match: FaceMatchService,
        delivery: SubmissionMailer,
        capture_factory: Optional[Callable[[], MediaCaptureController]] = None,
        idle_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.face_match = face_match
        self.delivery = delivery
        self.devices = DeviceLeases()
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.session_idle_seconds
        self._capture_factory = capture_factory or MediaCaptureController
        self._clock = clock
        self._flows: Dict[str, VerificationFlow] = {}
        self._last_seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._flows)

    def create(self, variant: FlowVariant = FlowVariant.STILL_PHOTO) -> VerificationFlow:
        capture = self._capture_factory()
        capture.leases = self.devices
        flow = VerificationFlow(
            variant=variant,
            capture=capture,
            face_match=self.face_match,
            delivery=self.delivery
        )
        self._flows[flow.flow_id] = flow
        self._last_seen[flow.flow_id] = self._clock()
        logger.info(f"Created {flow.variant.value} flow {flow.flow_id}")
        return flow

    def get(self, flow_id: str) -> VerificationFlow:
        flow = self._flows.get(flow_id)
        if flow is None:
            raise FlowNotFound(f"Verification session {flow_id} not found")
        self._last_seen[flow_id] = self._clock()
        return flow

    async def discard(self, flow_id: str) -> None:
        flow = self._flows.pop(flow_id, None)
        self._last_seen.pop(flow_id, None)
        if flow is not None:
            await flow.close()
            logger.info(f"Discarded flow {flow_id}")

    async def evict_idle(self) -> int:
        """
        Close flows not accessed within the idle timeout.

        Returns:
            Number of flows evicted
        """
        cutoff = self._clock() - self.idle_timeout
        idle = [flow_id for flow_id, seen in self._last_seen.items() if seen < cutoff]
        for flow_id in idle:
            logger.info(f"Evicting flow {flow_id} after {self.idle_timeout:.0f}s idle")
            await self.discard(flow_id)
        return len(idle)

    async def run_eviction(self, interval: float) -> None:
        """Evict idle flows every interval seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle()
            except Exception as e:
                logger.error(f"Idle flow eviction failed: {e}")

    async def close_all(self) -> None:
        for flow_id in list(self._flows):
            await self.discard(flow_id)
