"""Time-limited upload sessions for second-device photo capture."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from common.db.models import (
    PendingUpload,
    PendingUploadStatus,
    UploadSession,
    UploadSessionStatus,
    utcnow,
)
from common.logging import get_logger

from ..errors import (
    SessionCancelled,
    SessionExpired,
    SessionForbidden,
    SessionNotFound,
)
from .queue import PendingUploadQueue

LOGGER = get_logger(__name__)

DEFAULT_TTL = timedelta(minutes=30)
TOKEN_BYTES = 32


class UploadSessionManager:
    """Create, resolve and retire upload sessions.

    Expiry is evaluated against the injected ``clock`` on every read; an
    expired session is persisted as ``expired`` the first time it is
    observed and reported as not found from then on.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        queue: PendingUploadQueue,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
        public_base_url: str = "http://localhost:5001",
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self.ttl = ttl
        self.clock = clock
        self.public_base_url = public_base_url.rstrip("/")

    def upload_url(self, token: str) -> str:
        return f"{self.public_base_url}/mobile-upload/{token}"

    def create_session(self, owner_id: str) -> UploadSession:
        now = self.clock()
        with self._session_factory() as db:
            upload_session = UploadSession(
                token=secrets.token_hex(TOKEN_BYTES),
                owner_id=owner_id,
                status=UploadSessionStatus.created,
                expires_at=now + self.ttl,
                created_at=now,
            )
            db.add(upload_session)
            db.commit()
            db.refresh(upload_session)
        LOGGER.info(
            "Created upload session",
            session_id=upload_session.id,
            owner_id=owner_id,
            expires_at=upload_session.expires_at.isoformat(),
        )
        return upload_session

    def _load(self, db: Session, token: str) -> Optional[UploadSession]:
        return db.execute(
            select(UploadSession).where(UploadSession.token == token)
        ).scalar_one_or_none()

    def _is_expired(self, upload_session: UploadSession) -> bool:
        return (
            upload_session.status == UploadSessionStatus.expired
            or self.clock() > upload_session.expires_at
        )

    def _persist_expiry(self, db: Session, upload_session: UploadSession) -> None:
        if upload_session.status in (UploadSessionStatus.created, UploadSessionStatus.active):
            upload_session.status = UploadSessionStatus.expired
            db.commit()
            LOGGER.info("Upload session expired", session_id=upload_session.id)

    def get_session(self, token: str) -> UploadSession:
        """Resolve a live session; unknown and expired tokens are not found."""
        with self._session_factory() as db:
            upload_session = self._load(db, token)
            if upload_session is None:
                raise SessionNotFound(token)
            if self._is_expired(upload_session):
                self._persist_expiry(db, upload_session)
                raise SessionNotFound(token)
            return upload_session

    def require_owner(self, upload_session: UploadSession, owner_id: str) -> UploadSession:
        if upload_session.owner_id != owner_id:
            raise SessionForbidden(upload_session.token)
        return upload_session

    def require_open(self, upload_session: UploadSession) -> UploadSession:
        if upload_session.status == UploadSessionStatus.cancelled:
            raise SessionCancelled(upload_session.token)
        return upload_session

    def is_open(self, token: str) -> bool:
        """True while the session exists, has not expired and was not cancelled."""
        with self._session_factory() as db:
            upload_session = self._load(db, token)
            if upload_session is None:
                return False
            if self._is_expired(upload_session):
                self._persist_expiry(db, upload_session)
                return False
            return upload_session.status != UploadSessionStatus.cancelled

    def add_image(
        self, token: str, image_ref: str, original_name: Optional[str] = None
    ) -> PendingUpload:
        with self._session_factory() as db:
            upload_session = self._load(db, token)
            if upload_session is None:
                raise SessionNotFound(token)
            if self._is_expired(upload_session):
                self._persist_expiry(db, upload_session)
                raise SessionExpired(token)
            if upload_session.status == UploadSessionStatus.cancelled:
                raise SessionCancelled(token)
            if upload_session.status == UploadSessionStatus.created:
                upload_session.status = UploadSessionStatus.active
                db.commit()
            session_id = upload_session.id
            owner_id = upload_session.owner_id

        return self.queue.create(
            image_ref,
            owner_id=owner_id,
            session_id=session_id,
            original_name=original_name,
        )

    def cancel_session(self, token: str) -> int:
        """Cancel the session and drop its non-imported records; returns the count."""
        upload_session = self.get_session(token)
        with self._session_factory() as db:
            db.execute(
                update(UploadSession)
                .where(UploadSession.id == upload_session.id)
                .values(status=UploadSessionStatus.cancelled)
            )
            db.commit()
        removed = self.queue.delete_for_session(upload_session.id)
        LOGGER.info(
            "Cancelled upload session",
            session_id=upload_session.id,
            removed=len(removed),
        )
        return len(removed)

    def delete_session(self, token: str) -> int:
        """Delete the session row; imported records survive without a session."""
        with self._session_factory() as db:
            upload_session = self._load(db, token)
            if upload_session is None:
                raise SessionNotFound(token)
            session_id = upload_session.id
        removed = self.queue.delete_for_session(session_id)
        with self._session_factory() as db:
            db.execute(
                update(PendingUpload)
                .where(
                    PendingUpload.session_id == session_id,
                    PendingUpload.status == PendingUploadStatus.imported,
                )
                .values(session_id=None)
            )
            upload_session = db.get(UploadSession, session_id)
            if upload_session is not None:
                db.delete(upload_session)
            db.commit()
        LOGGER.info("Deleted upload session", session_id=session_id, removed=len(removed))
        return len(removed)


__all__ = ["DEFAULT_TTL", "UploadSessionManager"]
