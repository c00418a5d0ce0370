"""Downscale and re-encode spool photos before they are sent for extraction."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Optional

from PIL import Image, ImageOps

from common.logging import get_logger

from .errors import PreprocessError

LOGGER = get_logger(__name__)

DEFAULT_MAX_DIMENSION = 1536
DEFAULT_JPEG_QUALITY = 85

_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)

# ISO base media brands used by HEIC/HEIF stills and sequences.
_HEIF_BRANDS = (b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1")


def sniff_content_type(data: bytes) -> Optional[str]:
    """Detect the image type from its leading magic bytes."""
    for signature, content_type in _SIGNATURES:
        if data.startswith(signature):
            return content_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:8] == b"ftyp" and data[8:12] in _HEIF_BRANDS:
        return "image/heic"
    return None


@dataclass(frozen=True)
class PreparedImage:
    data: bytes
    content_type: str
    resized: bool


class ImagePreprocessor:
    """Bound photos to ``max_dimension`` on the long edge and re-encode as JPEG.

    Labels stay legible at 1536px while the upload to the vision service
    shrinks by an order of magnitude for phone photos. Any failure returns
    the original bytes untouched.
    """

    def __init__(
        self,
        max_dimension: int = DEFAULT_MAX_DIMENSION,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    ) -> None:
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality

    def prepare(self, data: bytes) -> PreparedImage:
        try:
            encoded = self._reencode(data)
        except PreprocessError as exc:
            LOGGER.warning("Failed to resize image, using original", error=str(exc))
            return PreparedImage(
                data=data,
                content_type=sniff_content_type(data) or "image/jpeg",
                resized=False,
            )
        return PreparedImage(data=encoded, content_type="image/jpeg", resized=True)

    def _reencode(self, data: bytes) -> bytes:
        if not data:
            raise PreprocessError("Image payload is empty")
        try:
            with Image.open(BytesIO(data)) as opened:
                image = ImageOps.exif_transpose(opened)
                if image.mode in ("RGBA", "LA", "P"):
                    image = image.convert("RGBA")
                    background = Image.new("RGB", image.size, (255, 255, 255))
                    background.paste(image, mask=image.getchannel("A"))
                    image = background
                elif image.mode != "RGB":
                    image = image.convert("RGB")
                image.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)
                buffer = BytesIO()
                image.save(buffer, format="JPEG", quality=self.jpeg_quality, optimize=True)
        except Exception as exc:  # noqa: BLE001
            raise PreprocessError(f"Failed to re-encode image: {exc}") from exc
        return buffer.getvalue()


__all__ = ["ImagePreprocessor", "PreparedImage", "sniff_content_type"]
