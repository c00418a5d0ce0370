"""Pending upload queue backed by the ``pending_uploads`` table.

Every transition is a conditional ``UPDATE ... WHERE status = <expected>`` so
two workers can never both claim or finish the same record.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Union

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from common.db.models import (
    VISIBLE_UPLOAD_STATUSES,
    PendingUpload,
    PendingUploadStatus,
    UploadSession,
    utcnow,
)
from common.logging import get_logger

from ..errors import InvalidTransition, RecordNotFound
from ..schemas import ExtractionResult

LOGGER = get_logger(__name__)

REMOVED = "removed"


def dump_result(result: ExtractionResult) -> dict:
    """Wire form stored in ``PendingUpload.extracted``."""
    return result.model_dump(by_alias=True, exclude_none=True, mode="json")


class PendingUploadQueue:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create(
        self,
        image_ref: str,
        owner_id: str,
        session_id: Optional[int] = None,
        original_name: Optional[str] = None,
    ) -> PendingUpload:
        with self._session_factory() as db:
            record = PendingUpload(
                session_id=session_id,
                owner_id=owner_id,
                image_ref=image_ref,
                original_name=original_name,
                status=PendingUploadStatus.pending,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
        LOGGER.info("Queued pending upload", record_id=record.id, session_id=session_id)
        return record

    def get(self, record_id: int) -> PendingUpload:
        with self._session_factory() as db:
            record = db.get(PendingUpload, record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def list_by_session(
        self,
        session: Union[int, str],
        statuses: Optional[Iterable[PendingUploadStatus]] = None,
    ) -> List[PendingUpload]:
        """Records of a session (by id or token) in upload order."""
        stmt = select(PendingUpload).order_by(PendingUpload.created_at, PendingUpload.id)
        if isinstance(session, str):
            stmt = stmt.join(UploadSession).where(UploadSession.token == session)
        else:
            stmt = stmt.where(PendingUpload.session_id == session)
        if statuses is not None:
            stmt = stmt.where(PendingUpload.status.in_(list(statuses)))
        with self._session_factory() as db:
            return list(db.execute(stmt).scalars())

    def list_by_owner(
        self,
        owner_id: str,
        statuses: Optional[Iterable[PendingUploadStatus]] = VISIBLE_UPLOAD_STATUSES,
    ) -> List[PendingUpload]:
        stmt = (
            select(PendingUpload)
            .where(PendingUpload.owner_id == owner_id)
            .order_by(PendingUpload.created_at, PendingUpload.id)
        )
        if statuses is not None:
            stmt = stmt.where(PendingUpload.status.in_(list(statuses)))
        with self._session_factory() as db:
            return list(db.execute(stmt).scalars())

    def mark_processing(self, record_ids: Sequence[int]) -> List[int]:
        """Claim pending records; returns only the ids this call moved."""
        claimed: List[int] = []
        with self._session_factory() as db:
            for record_id in record_ids:
                outcome = db.execute(
                    update(PendingUpload)
                    .where(
                        PendingUpload.id == record_id,
                        PendingUpload.status == PendingUploadStatus.pending,
                    )
                    .values(status=PendingUploadStatus.processing, updated_at=utcnow())
                )
                if outcome.rowcount == 1:
                    claimed.append(record_id)
            db.commit()
        if claimed:
            LOGGER.info("Claimed pending uploads", record_ids=claimed)
        return claimed

    def mark_ready(self, record_id: int, result: ExtractionResult) -> None:
        self._transition(
            record_id,
            PendingUploadStatus.processing,
            PendingUploadStatus.ready,
            extracted=dump_result(result),
            error_message=None,
        )

    def mark_error(self, record_id: int, message: str) -> None:
        self._transition(
            record_id,
            PendingUploadStatus.processing,
            PendingUploadStatus.error,
            extracted=None,
            error_message=message,
        )

    def fail_interrupted(self, message: str = "Processing interrupted") -> List[int]:
        """Move every record left in processing to error; returns the ids moved."""
        with self._session_factory() as db:
            stuck = list(
                db.execute(
                    select(PendingUpload.id).where(
                        PendingUpload.status == PendingUploadStatus.processing
                    )
                ).scalars()
            )
            if stuck:
                db.execute(
                    update(PendingUpload)
                    .where(
                        PendingUpload.id.in_(stuck),
                        PendingUpload.status == PendingUploadStatus.processing,
                    )
                    .values(
                        status=PendingUploadStatus.error,
                        extracted=None,
                        error_message=message,
                        updated_at=utcnow(),
                    )
                )
                db.commit()
        if stuck:
            LOGGER.warning("Recovered interrupted uploads", record_ids=stuck)
        return stuck

    def update_extracted(self, record_id: int, result: ExtractionResult) -> PendingUpload:
        """Replace the extracted data of a ready record with the user's edit."""
        self._transition(
            record_id,
            PendingUploadStatus.ready,
            PendingUploadStatus.ready,
            extracted=dump_result(result),
        )
        return self.get(record_id)

    def mark_imported(self, record_ids: Sequence[int], owner_id: Optional[str] = None) -> List[int]:
        """Move ready records to imported.

        Already-imported ids are accepted and reported again, so repeating a
        call leaves the same terminal state.
        """
        ids = list(dict.fromkeys(record_ids))
        with self._session_factory() as db:
            records = {
                record.id: record
                for record in db.execute(
                    select(PendingUpload).where(PendingUpload.id.in_(ids))
                ).scalars()
            }
            for record_id in ids:
                record = records.get(record_id)
                if record is None or (owner_id is not None and record.owner_id != owner_id):
                    raise RecordNotFound(record_id)
                if record.status not in (PendingUploadStatus.ready, PendingUploadStatus.imported):
                    raise InvalidTransition(
                        record_id, record.status.value, PendingUploadStatus.imported.value
                    )
            db.execute(
                update(PendingUpload)
                .where(
                    PendingUpload.id.in_(ids),
                    PendingUpload.status == PendingUploadStatus.ready,
                )
                .values(status=PendingUploadStatus.imported, updated_at=utcnow())
            )
            db.commit()
        LOGGER.info("Marked uploads imported", record_ids=ids)
        return ids

    def delete(self, record_id: int, owner_id: Optional[str] = None) -> PendingUpload:
        """Remove a record that has not been imported; returns the removed row."""
        with self._session_factory() as db:
            record = db.get(PendingUpload, record_id)
            if record is None or (owner_id is not None and record.owner_id != owner_id):
                raise RecordNotFound(record_id)
            if record.status == PendingUploadStatus.imported:
                raise InvalidTransition(record_id, record.status.value, REMOVED)
            db.delete(record)
            db.commit()
        LOGGER.info("Deleted pending upload", record_id=record_id)
        return record

    def delete_for_session(self, session_id: int) -> List[PendingUpload]:
        """Remove every non-imported record of a session."""
        return self._delete_where(PendingUpload.session_id == session_id)

    def clear_owner(self, owner_id: str) -> List[PendingUpload]:
        """Remove every non-imported record of an owner."""
        return self._delete_where(PendingUpload.owner_id == owner_id)

    def _delete_where(self, condition) -> List[PendingUpload]:  # noqa: ANN001
        with self._session_factory() as db:
            doomed = list(
                db.execute(
                    select(PendingUpload).where(
                        condition, PendingUpload.status != PendingUploadStatus.imported
                    )
                ).scalars()
            )
            if doomed:
                db.execute(
                    delete(PendingUpload).where(
                        PendingUpload.id.in_([record.id for record in doomed]),
                        PendingUpload.status != PendingUploadStatus.imported,
                    )
                )
                db.commit()
        return doomed

    def _transition(
        self,
        record_id: int,
        current: PendingUploadStatus,
        target: PendingUploadStatus,
        **values,
    ) -> None:
        with self._session_factory() as db:
            outcome = db.execute(
                update(PendingUpload)
                .where(PendingUpload.id == record_id, PendingUpload.status == current)
                .values(status=target, updated_at=utcnow(), **values)
            )
            db.commit()
            if outcome.rowcount == 1:
                return
            record = db.get(PendingUpload, record_id)
        if record is None:
            raise RecordNotFound(record_id)
        raise InvalidTransition(record_id, record.status.value, target.value)


__all__ = ["PendingUploadQueue", "dump_result"]
