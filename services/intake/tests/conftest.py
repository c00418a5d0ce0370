# noqa: D104
"""Pytest fixtures for intake tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from io import BytesIO
from pathlib import Path
from typing import List, Optional

import pytest
from PIL import Image
from sqlalchemy.orm import Session, sessionmaker

from common.config import Settings
from common.db import build_engine, build_session_factory, init_db
from intake.errors import ExtractionError
from intake.extraction import VISION_MODELS
from intake.normalization import Normalizer, load_rule_set
from intake.schemas import ExtractionResult
from intake.service import IntakeServices
from intake.sessions import PendingUploadQueue, UploadSessionManager
from intake.storage import ImageStore


MAGIC = {
    "image/jpeg": b"\xff\xd8\xff\xe0",
    "image/png": b"\x89PNG\r\n\x1a\n",
    "image/webp": b"RIFF\x00\x00\x00\x00WEBP",
    "image/heic": b"\x00\x00\x00\x18ftypheic",
}


def image_bytes(text: str, content_type: str = "image/jpeg") -> bytes:
    """Undecodable image bytes that still carry the right magic prefix."""
    return MAGIC[content_type] + text.encode()


def payload_text(image: bytes) -> str:
    for prefix in MAGIC.values():
        if image.startswith(prefix):
            image = image[len(prefix) :]
            break
    return image.decode("utf-8", errors="ignore")


class FakeExtractor:
    """Extractor double keyed on the image payload.

    Payloads starting with ``fail`` raise :class:`ExtractionError`; anything
    else yields a Bambu Lab PLA Silk result named after the payload.
    """

    def __init__(self, delay: float = 0.01) -> None:
        self.models = VISION_MODELS
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls: List[bytes] = []

    def supports(self, model: str) -> bool:
        return any(entry.id == model for entry in self.models)

    async def extract(
        self, image: bytes, model: str, content_type: str = "image/jpeg"
    ) -> ExtractionResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.calls.append(image)
        try:
            await asyncio.sleep(self.delay)
            text = payload_text(image)
            if text.startswith("fail"):
                raise ExtractionError(f"Could not read label on {text}")
            return ExtractionResult(
                name=text,
                manufacturer="Bambu Lab",
                material="PLA Silk",
                color_name="Gold",
                color_code="#d4af37",
                total_weight="1kg",
                confidence=0.9,
            )
        finally:
            self.in_flight -= 1


class FakeClock:
    """Mutable clock for expiry tests."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at temporary storage with no window pause."""
    return Settings(
        database_url="sqlite://",
        upload_dir=tmp_path / "public",
        review_cache_dir=tmp_path / "review",
        batch_window_pause_seconds=0.0,
        log_json=False,
    )


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    """In-memory SQLite database with all tables created."""
    engine = build_engine("sqlite://")
    init_db(engine)
    return build_session_factory(engine)


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def normalizer() -> Normalizer:
    return Normalizer(load_rule_set())


@pytest.fixture
def image_store(tmp_path: Path) -> ImageStore:
    return ImageStore(tmp_path / "public")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(session_factory: sessionmaker[Session]) -> PendingUploadQueue:
    return PendingUploadQueue(session_factory)


@pytest.fixture
def manager(
    session_factory: sessionmaker[Session], queue: PendingUploadQueue, clock: FakeClock
) -> UploadSessionManager:
    return UploadSessionManager(session_factory, queue, clock=clock)


@pytest.fixture
def services(
    settings: Settings,
    session_factory: sessionmaker[Session],
    fake_extractor: FakeExtractor,
    clock: FakeClock,
) -> IntakeServices:
    """Fully wired pipeline over the fake extractor."""
    return IntakeServices.build(
        settings, session_factory=session_factory, extractor=fake_extractor, clock=clock
    )


@pytest.fixture
def jpeg_bytes() -> bytes:
    """A 3000x2000 red JPEG, larger than the preprocessing bound."""
    buffer = BytesIO()
    Image.new("RGB", (3000, 2000), (200, 30, 30)).save(buffer, format="JPEG")
    return buffer.getvalue()
