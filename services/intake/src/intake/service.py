"""Wiring of the intake components and the operations shared by API and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy.orm import Session, sessionmaker

from common.config import Settings
from common.db import build_engine, build_session_factory, init_db
from common.db.models import (
    OUTSTANDING_UPLOAD_STATUSES,
    VISIBLE_UPLOAD_STATUSES,
    PendingUpload,
    PendingUploadStatus,
    utcnow,
)
from common.logging import get_logger

from .errors import ExtractionError
from .extraction import VisionExtractionClient
from .normalization import Normalizer, load_rule_set
from .orchestrator import BatchImage, BatchItemResult, BatchOrchestrator, Extractor
from .processor import SessionProcessor
from .schemas import (
    BulkExtractResponse,
    BulkItemView,
    ExtractionResult,
    PendingUploadsResponse,
    PendingUploadView,
    SessionStatusResponse,
)
from .sessions import PendingUploadQueue, UploadSessionManager
from .storage import ImageStore

LOGGER = get_logger(__name__)

_PROCESSED = (PendingUploadStatus.ready, PendingUploadStatus.error)


@dataclass(frozen=True)
class IncomingImage:
    data: bytes
    filename: Optional[str]
    content_type: Optional[str]


def to_view(record: PendingUpload) -> PendingUploadView:
    extracted = (
        ExtractionResult.model_validate(record.extracted) if record.extracted is not None else None
    )
    return PendingUploadView(
        id=record.id,
        image_ref=record.image_ref,
        original_name=record.original_name,
        status=record.status.value,
        extracted_data=extracted,
        error=record.error_message,
    )


class IntakeServices:
    """Container for one configured pipeline instance.

    Built once per application (or CLI invocation) and passed explicitly;
    nothing here is module-global.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        extractor: Extractor,
        store: ImageStore,
        normalizer: Normalizer,
        clock: Callable = utcnow,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.extractor = extractor
        self.store = store
        self.normalizer = normalizer
        self.orchestrator = BatchOrchestrator.from_settings(settings, extractor, normalizer)
        self.queue = PendingUploadQueue(session_factory)
        self.manager = UploadSessionManager(
            session_factory,
            self.queue,
            ttl=timedelta(minutes=settings.session_ttl_minutes),
            clock=clock,
            public_base_url=settings.public_base_url,
        )
        self.processor = SessionProcessor(
            self.manager,
            self.queue,
            self.store,
            self.orchestrator,
            default_model=settings.vision_default_model,
        )

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: Optional[sessionmaker[Session]] = None,
        extractor: Optional[Extractor] = None,
        clock: Callable = utcnow,
    ) -> "IntakeServices":
        if session_factory is None:
            engine = build_engine(settings.database_url)
            init_db(engine)
            session_factory = build_session_factory(engine)
        services = cls(
            settings=settings,
            session_factory=session_factory,
            extractor=extractor or VisionExtractionClient.from_settings(settings),
            store=ImageStore(settings.upload_dir, settings.max_upload_file_size_bytes),
            normalizer=Normalizer(load_rule_set(settings.rules_path)),
            clock=clock,
        )
        # No worker survives a restart, so nothing can still be processing.
        services.queue.fail_interrupted()
        return services

    async def aclose(self) -> None:
        await self.processor.shutdown()
        closer = getattr(self.extractor, "aclose", None)
        if closer is not None:
            await closer()

    def session_status(self, token: str, owner_id: Optional[str] = None) -> SessionStatusResponse:
        upload_session = self.manager.get_session(token)
        if owner_id is not None:
            self.manager.require_owner(upload_session, owner_id)
        self.manager.require_open(upload_session)

        records = self.queue.list_by_session(upload_session.id, VISIBLE_UPLOAD_STATUSES)
        pending = [record for record in records if record.status in OUTSTANDING_UPLOAD_STATUSES]
        processed = [record for record in records if record.status in _PROCESSED]
        return SessionStatusResponse(
            status=upload_session.status.value,
            image_count=len(records),
            images=[to_view(record) for record in records],
            processed_count=len(processed),
            pending_count=len(pending),
            processing=self.processor.is_processing(token)
            or any(record.status == PendingUploadStatus.processing for record in records),
            expires_at=upload_session.expires_at,
        )

    def pending_uploads(self, owner_id: str) -> PendingUploadsResponse:
        records = self.queue.list_by_owner(owner_id)
        return PendingUploadsResponse(
            items=[to_view(record) for record in records],
            pending_count=sum(1 for r in records if r.status in OUTSTANDING_UPLOAD_STATUSES),
            processed_count=sum(1 for r in records if r.status in _PROCESSED),
            total_count=len(records),
        )

    def remove_images(self, records: Sequence[PendingUpload]) -> None:
        for record in records:
            self.store.delete(record.image_ref)

    async def extract_single(
        self, image: IncomingImage, model: Optional[str] = None
    ) -> tuple[str, ExtractionResult]:
        """Store one image and extract it without creating a queue record."""
        chosen = model or self.settings.vision_default_model
        self.orchestrator.validate([BatchImage(data=image.data)], chosen)
        image_ref = self.store.save(image.data, image.filename, image.content_type)
        results = await self.orchestrator.run(
            [BatchImage(data=image.data, filename=image.filename, image_ref=image_ref)], chosen
        )
        outcome = results[0]
        if not outcome.ok or outcome.result is None:
            raise ExtractionError(outcome.error or "Extraction failed")
        return image_ref, outcome.result

    async def extract_bulk(
        self,
        images: Sequence[IncomingImage],
        owner_id: str,
        model: Optional[str] = None,
    ) -> BulkExtractResponse:
        """Store images as direct pending records and extract them as one batch."""
        chosen = model or self.settings.vision_default_model
        self.orchestrator.validate([BatchImage(data=image.data) for image in images], chosen)
        for image in images:
            self.store.validate(image.data, image.content_type)

        stored: List[tuple[IncomingImage, str]] = []
        for image in images:
            stored.append((image, self.store.save(image.data, image.filename, image.content_type)))

        items: List[BatchImage] = []
        for image, image_ref in stored:
            record = self.queue.create(image_ref, owner_id=owner_id, original_name=image.filename)
            items.append(
                BatchImage(
                    data=image.data,
                    filename=image.filename,
                    image_ref=image_ref,
                    record_id=record.id,
                )
            )
        self.queue.mark_processing([item.record_id for item in items])

        results = await self.orchestrator.run(
            items,
            chosen,
            on_item=self.processor.record_outcome,
        )
        return self._bulk_response(results)

    @staticmethod
    def _bulk_response(results: Sequence[BatchItemResult]) -> BulkExtractResponse:
        views = [
            BulkItemView(
                image_ref=entry.image_ref or "",
                original_name=entry.filename,
                pending_upload_id=entry.record_id,
                extracted_data=entry.result,
                error=entry.error,
            )
            for entry in results
        ]
        failed = sum(1 for entry in results if not entry.ok)
        return BulkExtractResponse(
            total=len(results),
            processed=len(results) - failed,
            failed=failed,
            results=views,
        )


__all__ = ["IncomingImage", "IntakeServices", "to_view"]
