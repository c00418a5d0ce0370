"""Local storage for uploaded spool photos."""

from __future__ import annotations

import secrets
import time
from pathlib import Path, PurePosixPath
from typing import Optional

from common.logging import get_logger

from .errors import ImageStoreError, ImageTooLarge, UnsupportedImageType
from .preprocess import sniff_content_type

LOGGER = get_logger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}

# Aliases collapse to the type the magic bytes report.
_SNIFFED_AS = {"image/jpg": "image/jpeg", "image/heif": "image/heic"}

IMAGE_PREFIX = PurePosixPath("uploads/filaments")


class ImageStore:
    """Write uploads below ``root`` and hand out opaque relative references.

    References look like ``uploads/filaments/filament-<millis>-<hex>.jpg`` and
    are the stable key both devices use for an image.
    """

    def __init__(self, root: Path, max_bytes: int = 10 * 1024 * 1024) -> None:
        self.root = Path(root)
        self.max_bytes = max_bytes
        (self.root / IMAGE_PREFIX).mkdir(parents=True, exist_ok=True)

    def _path_for(self, image_ref: str) -> Path:
        relative = PurePosixPath(image_ref)
        if relative.parent != IMAGE_PREFIX or relative.name in ("", ".", ".."):
            raise ImageStoreError(f"Invalid image reference: {image_ref}")
        return self.root / IMAGE_PREFIX / relative.name

    def validate(self, data: bytes, content_type: Optional[str]) -> str:
        """Return the lower-cased content type or raise for a rejected upload."""
        ctype = (content_type or "").lower()
        if ctype not in ALLOWED_CONTENT_TYPES:
            raise UnsupportedImageType(ctype or "unknown")
        if len(data) > self.max_bytes:
            raise ImageTooLarge(len(data), self.max_bytes)
        sniffed = sniff_content_type(data)
        if sniffed != _SNIFFED_AS.get(ctype, ctype):
            LOGGER.warning("Upload content does not match its type", claimed=ctype, sniffed=sniffed)
            raise UnsupportedImageType(sniffed or "unknown")
        return ctype

    def save(self, data: bytes, filename: Optional[str], content_type: Optional[str]) -> str:
        """Store validated image bytes; the suffix always follows the checked type."""
        ctype = self.validate(data, content_type)
        suffix = ALLOWED_CONTENT_TYPES[ctype]
        name = f"filament-{int(time.time() * 1000)}-{secrets.token_hex(6)}{suffix}"
        image_ref = str(IMAGE_PREFIX / name)
        path = self._path_for(image_ref)

        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        LOGGER.debug(
            "Stored image", image_ref=image_ref, original_name=filename, size_bytes=len(data)
        )
        return image_ref

    def load(self, image_ref: str) -> bytes:
        path = self._path_for(image_ref)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ImageStoreError(f"Image not available: {image_ref}") from exc

    def delete(self, image_ref: str) -> None:
        self._path_for(image_ref).unlink(missing_ok=True)


__all__ = ["ALLOWED_CONTENT_TYPES", "IMAGE_PREFIX", "ImageStore"]
