"""
Video encoding utilities for timed liveness recordings.

Frames captured from the camera are piped to ffmpeg as raw BGR video and
encoded with the first supported entry of an ordered encoding ladder. The
targets (low resolution, frame rate and bitrate) keep the artifact small
enough to send with the submission.
"""

import functools
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Sequence, Tuple

import cv2
import ffmpeg
import numpy as np

logger = logging.getLogger(__name__)


class VideoEncodingError(Exception):
    """Raised when no encoding in the ladder could produce a video."""
    pass


@dataclass(frozen=True)
class VideoEncoding:
    """One rung of the encoding ladder."""

    codec: str
    container: str
    extension: str
    mime_type: str


ENCODING_LADDER: Tuple[VideoEncoding, ...] = (
    VideoEncoding(codec="libvpx", container="webm", extension="webm", mime_type="video/webm"),
    VideoEncoding(codec="libx264", container="mp4", extension="mp4", mime_type="video/mp4"),
    VideoEncoding(codec="mpeg4", container="mp4", extension="mp4", mime_type="video/mp4"),
    VideoEncoding(codec="mjpeg", container="avi", extension="avi", mime_type="video/x-msvideo"),
)


@functools.lru_cache(maxsize=1)
def available_encoders() -> FrozenSet[str]:
    """Video encoder names reported by the local ffmpeg binary."""
    try:
        result = subprocess.run(
            ["ffmpeg", "-hide_banner", "-encoders"],
            capture_output=True, text=True, timeout=10
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.error(f"ffmpeg is not available: {e}")
        return frozenset()

    if result.returncode != 0:
        logger.error(f"ffmpeg -encoders failed: {result.stderr.strip()}")
        return frozenset()

    # Lines look like " V....D libvpx   libvpx VP8 (codec vp8)"
    encoders = set()
    for line in result.stdout.splitlines():
        match = re.match(r"^\s*V[\w.]{5}\s+(\S+)", line)
        if match:
            encoders.add(match.group(1))
    return frozenset(encoders)


def supported_encodings(ladder: Sequence[VideoEncoding] = ENCODING_LADDER) -> List[VideoEncoding]:
    """Ladder entries the local ffmpeg can encode, in preference order."""
    encoders = available_encoders()
    return [encoding for encoding in ladder if encoding.codec in encoders]


def _frames_to_raw(frames: Sequence[np.ndarray], width: int, height: int) -> bytes:
    chunks = []
    for frame in frames:
        if frame.shape[1] != width or frame.shape[0] != height:
            frame = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
        chunks.append(np.ascontiguousarray(frame, dtype=np.uint8).tobytes())
    return b"".join(chunks)


def _encode_with(
    encoding: VideoEncoding,
    raw_video: bytes,
    width: int,
    height: int,
    fps: int,
    bitrate: str
) -> bytes:
    with tempfile.TemporaryDirectory(prefix="liveness_") as temp_dir:
        output_path = os.path.join(temp_dir, f"recording.{encoding.extension}")

        stream = ffmpeg.input(
            "pipe:",
            format="rawvideo",
            pix_fmt="bgr24",
            s=f"{width}x{height}",
            framerate=fps
        )
        output_args = {
            "vcodec": encoding.codec,
            "r": fps,
            "format": encoding.container,
        }
        if encoding.codec == "mjpeg":
            output_args["q:v"] = 10
            output_args["pix_fmt"] = "yuvj420p"
        else:
            output_args["video_bitrate"] = bitrate
            output_args["pix_fmt"] = "yuv420p"

        stream = ffmpeg.output(stream, output_path, an=None, **output_args)
        ffmpeg.run(stream, input=raw_video, overwrite_output=True, quiet=True)

        with open(output_path, "rb") as output_file:
            return output_file.read()


def encode_frames(
    frames: Sequence[np.ndarray],
    fps: int,
    width: int,
    height: int,
    bitrate: str,
    encodings: Optional[Sequence[VideoEncoding]] = None
) -> Tuple[bytes, VideoEncoding]:
    """
    Encode BGR frames into a single compact video.

    Args:
        frames: Captured frames (any size, resized to width x height)
        fps: Output frame rate
        width: Output width in pixels
        height: Output height in pixels
        bitrate: Target bitrate, e.g. "250k"
        encodings: Candidate encodings in preference order (default: supported ladder)

    Returns:
        Tuple of (encoded video bytes, encoding used)

    Raises:
        VideoEncodingError: If there are no frames or every encoding fails
    """
    if not frames:
        raise VideoEncodingError("No frames to encode")

    candidates = list(encodings) if encodings is not None else supported_encodings()
    if not candidates:
        raise VideoEncodingError("No supported video encoding is available")

    raw_video = _frames_to_raw(frames, width, height)

    for encoding in candidates:
        try:
            data = _encode_with(encoding, raw_video, width, height, fps, bitrate)
        except ffmpeg.Error as e:
            error_msg = e.stderr.decode(errors="replace") if e.stderr else str(e)
            logger.warning(f"Encoding with {encoding.codec} failed, trying next: {error_msg}")
            continue

        if not data:
            logger.warning(f"Encoding with {encoding.codec} produced empty output, trying next")
            continue

        logger.info(
            f"Encoded {len(frames)} frames at {width}x{height}@{fps}fps with {encoding.codec}: {len(data)} bytes"
        )
        return data, encoding

    raise VideoEncodingError(
        f"All video encodings failed: {', '.join(e.codec for e in candidates)}"
    )
