"""Pydantic schemas for extraction results and the intake API."""

from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_NUMBER_RE = re.compile(r"[-+]?\d*\.?\d+")
_HEX_STRIP_RE = re.compile(r"[^#0-9a-fA-F]")
_HEX_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

DEFAULT_CONFIDENCE = 0.5


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON while exposing snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def parse_number(value: Any) -> Optional[float]:
    """Leniently parse ``1.75``, ``"1.75"`` or ``"1.75mm"``; anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _NUMBER_RE.search(value.replace(",", "."))
        if not match:
            return None
        number = float(match.group(0))
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_color_code(value: str) -> Optional[str]:
    """Return ``#RRGGBB`` (upper case) or None when the code is not a hex color."""
    hex_code = _HEX_STRIP_RE.sub("", value.strip())
    if not hex_code.startswith("#"):
        hex_code = "#" + hex_code
    if len(hex_code) == 4:
        hex_code = "#" + "".join(ch * 2 for ch in hex_code[1:])
    if _HEX_RE.match(hex_code):
        return hex_code.upper()
    return None


class ExtractionResult(CamelModel):
    """Structured attributes read from one spool photo.

    Every field except ``confidence`` is optional. Values that cannot be
    interpreted are dropped to None instead of failing validation, so a
    noisy model reply still yields a usable partial record.
    """

    name: Optional[str] = None
    manufacturer: Optional[str] = None
    material: Optional[str] = None
    color_name: Optional[str] = None
    color_code: Optional[str] = None
    diameter: Optional[float] = None
    print_temp: Optional[str] = None
    print_speed: Optional[str] = None
    bed_temp: Optional[str] = None
    total_weight: Optional[float] = None
    is_sealed: Optional[bool] = None
    notes: Optional[str] = None
    estimated_price: Optional[float] = None
    confidence: float = DEFAULT_CONFIDENCE

    drying_temp: Optional[str] = None
    drying_time: Optional[str] = None
    sku: Optional[str] = None
    batch_number: Optional[str] = None
    production_date: Optional[str] = None
    raw_text: Optional[str] = None

    @field_validator(
        "name",
        "manufacturer",
        "material",
        "color_name",
        "print_temp",
        "print_speed",
        "bed_temp",
        "notes",
        "drying_temp",
        "drying_time",
        "sku",
        "batch_number",
        "production_date",
        mode="before",
    )
    @classmethod
    def _clean_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list, bool)):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("raw_text", mode="before")
    @classmethod
    def _keep_raw_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value) or None

    @field_validator("color_code", mode="before")
    @classmethod
    def _clean_color_code(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not value.strip():
            return None
        return normalize_color_code(value)

    @field_validator("diameter", "total_weight", "estimated_price", mode="before")
    @classmethod
    def _clean_number(cls, value: Any) -> Optional[float]:
        return parse_number(value)

    @field_validator("is_sealed", mode="before")
    @classmethod
    def _clean_flag(cls, value: Any) -> Optional[bool]:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "yes", "sealed"):
                return True
            if lowered in ("false", "no", "opened", "open"):
                return False
        return None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        number = parse_number(value)
        if number is None:
            return DEFAULT_CONFIDENCE
        return min(1.0, max(0.0, number))


class VisionModel(CamelModel):
    id: str
    name: str
    description: str


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class PendingUploadView(CamelModel):
    id: int
    image_ref: str
    original_name: Optional[str] = None
    status: str
    extracted_data: Optional[ExtractionResult] = None
    error: Optional[str] = None


class SessionCreatedResponse(CamelModel):
    success: bool = True
    session_token: str
    upload_url: str
    expires_at: datetime


class SessionStatusResponse(CamelModel):
    status: str
    image_count: int
    images: List[PendingUploadView]
    processed_count: int
    pending_count: int
    processing: bool
    expires_at: datetime


class MobileUploadResponse(CamelModel):
    success: bool = True
    uploaded: int
    total: int


class ProcessSessionRequest(CamelModel):
    ids: Optional[List[int]] = None
    model: Optional[str] = None


class ProcessSessionResponse(CamelModel):
    success: bool = True
    results: List[PendingUploadView]
    processing: bool
    processed_count: int
    total_count: int


class CancelSessionResponse(CamelModel):
    success: bool = True
    cancelled_count: int
    status: str


class PendingUploadsResponse(CamelModel):
    items: List[PendingUploadView]
    pending_count: int
    processed_count: int
    total_count: int


class UpdatePendingUploadRequest(CamelModel):
    extracted_data: ExtractionResult


class MarkImportedRequest(CamelModel):
    ids: List[int] = Field(..., min_length=1)


class MarkImportedResponse(CamelModel):
    success: bool = True
    imported: List[int]


class ExtractResponse(CamelModel):
    success: bool = True
    image_ref: str
    extracted_data: ExtractionResult


class BulkItemView(CamelModel):
    image_ref: str
    original_name: Optional[str] = None
    pending_upload_id: Optional[int] = None
    extracted_data: Optional[ExtractionResult] = None
    error: Optional[str] = None


class BulkExtractResponse(CamelModel):
    success: bool = True
    total: int
    processed: int
    failed: int
    results: List[BulkItemView]


class SuccessResponse(CamelModel):
    success: bool = True


__all__ = [
    "BulkExtractResponse",
    "BulkItemView",
    "CamelModel",
    "CancelSessionResponse",
    "DEFAULT_CONFIDENCE",
    "ExtractResponse",
    "ExtractionResult",
    "MarkImportedRequest",
    "MarkImportedResponse",
    "MobileUploadResponse",
    "PendingUploadView",
    "PendingUploadsResponse",
    "ProcessSessionRequest",
    "ProcessSessionResponse",
    "SessionCreatedResponse",
    "SessionStatusResponse",
    "SuccessResponse",
    "UpdatePendingUploadRequest",
    "VisionModel",
    "normalize_color_code",
    "parse_number",
]
