# Utilities module

from .image_utils import (
    CompressedImage,
    ImageProcessingError,
    ImageValidationError,
    compress_for_transport,
    data_url_extension,
    decode_data_url,
    enhance_for_comparison,
    to_data_url,
    validate_upload,
)
from .video_utils import (
    ENCODING_LADDER,
    VideoEncoding,
    VideoEncodingError,
    encode_frames,
    supported_encodings,
)

__all__ = [
    "CompressedImage",
    "ImageProcessingError",
    "ImageValidationError",
    "compress_for_transport",
    "data_url_extension",
    "decode_data_url",
    "enhance_for_comparison",
    "to_data_url",
    "validate_upload",
    "ENCODING_LADDER",
    "VideoEncoding",
    "VideoEncodingError",
    "encode_frames",
    "supported_encodings",
]
