"""Exception hierarchy for the photo intake pipeline."""

from __future__ import annotations


class IntakeError(Exception):
    """Base class for all intake pipeline errors."""


class PreprocessError(IntakeError):
    """Image could not be decoded or re-encoded; callers fall back to the original bytes."""


class ExtractionError(IntakeError):
    """The vision call failed, timed out, or returned no usable JSON object."""


class BatchSetupError(IntakeError):
    """A batch cannot start at all (no images, bad configuration)."""


class InvalidModelError(BatchSetupError):
    """The requested vision model identifier is not supported."""

    def __init__(self, model: str) -> None:
        super().__init__(f"Unsupported vision model: {model}")
        self.model = model


class SessionError(IntakeError):
    """Base class for upload session failures."""

    def __init__(self, token: str, message: str) -> None:
        super().__init__(message)
        self.token = token


class SessionNotFound(SessionError):
    def __init__(self, token: str) -> None:
        super().__init__(token, "Session not found or expired")


class SessionExpired(SessionError):
    def __init__(self, token: str) -> None:
        super().__init__(token, "Session expired")


class SessionCancelled(SessionError):
    def __init__(self, token: str) -> None:
        super().__init__(token, "Session cancelled")


class SessionForbidden(SessionError):
    def __init__(self, token: str) -> None:
        super().__init__(token, "Access denied")


class QueueError(IntakeError):
    """Base class for pending upload queue failures."""


class RecordNotFound(QueueError):
    def __init__(self, record_id: int) -> None:
        super().__init__(f"Pending upload not found: {record_id}")
        self.record_id = record_id


class InvalidTransition(QueueError):
    def __init__(self, record_id: int, current: str, target: str) -> None:
        super().__init__(f"Pending upload {record_id} cannot move from {current} to {target}")
        self.record_id = record_id
        self.current = current
        self.target = target


class ImageStoreError(IntakeError):
    """Base class for image storage failures."""


class UnsupportedImageType(ImageStoreError):
    def __init__(self, content_type: str) -> None:
        super().__init__(
            f"Invalid file type: {content_type}. Allowed types: JPEG, PNG, WebP, HEIC"
        )
        self.content_type = content_type


class ImageTooLarge(ImageStoreError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Image is {size} bytes; the limit is {limit} bytes")
        self.size = size
        self.limit = limit


__all__ = [
    "BatchSetupError",
    "ExtractionError",
    "ImageStoreError",
    "ImageTooLarge",
    "IntakeError",
    "InvalidModelError",
    "InvalidTransition",
    "PreprocessError",
    "QueueError",
    "RecordNotFound",
    "SessionCancelled",
    "SessionError",
    "SessionExpired",
    "SessionForbidden",
    "SessionNotFound",
    "UnsupportedImageType",
]
