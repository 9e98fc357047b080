"""Client modules for devices and external service integrations."""

from src.clients.camera_client import (
    CameraConstraints,
    CaptureError,
    ConstraintsUnsatisfiable,
    DeviceBusy,
    DeviceNotFound,
    NotSupported,
    OpenCVCamera,
    PermissionDenied,
    enumerate_devices
)

from src.clients.comparator_client import (
    ComparatorVerdict,
    ComparisonServiceError,
    FaceComparatorClient,
    FaceMatchError,
    InvalidInput,
    TransportError
)

from src.clients.delivery_client import (
    DeliveryFailed,
    DeliveryReceipt,
    PayloadTooLarge,
    SubmissionError,
    SubmissionMailer,
    attachments_from_data_urls
)

__all__ = [
    "CameraConstraints",
    "CaptureError",
    "ConstraintsUnsatisfiable",
    "DeviceBusy",
    "DeviceNotFound",
    "NotSupported",
    "OpenCVCamera",
    "PermissionDenied",
    "enumerate_devices",
    "ComparatorVerdict",
    "ComparisonServiceError",
    "FaceComparatorClient",
    "FaceMatchError",
    "InvalidInput",
    "TransportError",
    "DeliveryFailed",
    "DeliveryReceipt",
    "PayloadTooLarge",
    "SubmissionError",
    "SubmissionMailer",
    "attachments_from_data_urls"
]
