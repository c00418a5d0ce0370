"""Reviewing-device reconciliation of session uploads into a local review list.

Two polling loops run against a :class:`ReviewSource`:

* the discovery loop notices new images and triggers processing for them
  exactly once, remembered in a durable "seen" set;
* the result loop merges finished records into the :class:`ReviewList`
  while work is outstanding.

Imported image references go to a durable "imported" set so a restart or
reconnect never surfaces them again.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Union

import httpx

from common.logging import get_logger

from .errors import (
    SessionCancelled,
    SessionError,
    SessionExpired,
    SessionForbidden,
    SessionNotFound,
)
from .schemas import MarkImportedResponse, PendingUploadView, SessionStatusResponse

LOGGER = get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.3
_FINISHED = ("ready", "error")


class DurableKeySet:
    """A set of string keys persisted as JSON; every change is written atomically."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._keys = set(self._load())

    def _load(self) -> List[str]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable key set", path=str(self.path), error=str(exc))
            return []
        if isinstance(raw, dict) and "keys" in raw:
            return [str(key) for key in raw["keys"]]
        return []

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps({"keys": sorted(self._keys)}, indent=2))
        tmp_path.replace(self.path)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add_many(self, keys: Iterable[str]) -> List[str]:
        """Add keys and return the ones that were new."""
        added = [key for key in dict.fromkeys(keys) if key not in self._keys]
        if added:
            self._keys.update(added)
            self._save()
        return added

    def reset(self) -> None:
        self._keys.clear()
        self._save()


@dataclass
class ReviewItem:
    record_id: int
    image_ref: str
    status: str
    extracted: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    original_name: Optional[str] = None
    selected: bool = False
    edited: bool = False

    @property
    def selectable(self) -> bool:
        return self.status == "ready" and self.extracted is not None

    @property
    def confidence(self) -> float:
        return float((self.extracted or {}).get("confidence", 0.0))


class ReviewList:
    """Insertion-ordered review items keyed by image reference."""

    def __init__(self, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> None:
        self.min_confidence = min_confidence
        self._items: Dict[str, ReviewItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, image_ref: object) -> bool:
        return image_ref in self._items

    @property
    def items(self) -> List[ReviewItem]:
        return list(self._items.values())

    def merge(self, views: Iterable[PendingUploadView]) -> List[ReviewItem]:
        """Add unseen finished records; existing items are never replaced."""
        added: List[ReviewItem] = []
        for view in views:
            if view.image_ref in self._items or view.status not in _FINISHED:
                continue
            extracted = (
                view.extracted_data.model_dump(by_alias=True, exclude_none=True, mode="json")
                if view.extracted_data is not None
                else None
            )
            item = ReviewItem(
                record_id=view.id,
                image_ref=view.image_ref,
                status=view.status,
                extracted=extracted,
                error=view.error,
                original_name=view.original_name,
            )
            item.selected = item.selectable and item.confidence > self.min_confidence
            self._items[view.image_ref] = item
            added.append(item)
        return added

    def edit(self, image_ref: str, changes: Dict[str, Any]) -> ReviewItem:
        item = self._items[image_ref]
        item.extracted = {**(item.extracted or {}), **changes}
        item.edited = True
        return item

    def select(self, image_ref: str, selected: bool = True) -> bool:
        """Set the selection flag; error items stay unselected. Returns the new flag."""
        item = self._items[image_ref]
        item.selected = selected and item.selectable
        return item.selected

    def selected(self) -> List[ReviewItem]:
        return [item for item in self._items.values() if item.selected and item.selectable]

    def remove(self, image_refs: Iterable[str]) -> None:
        for image_ref in image_refs:
            self._items.pop(image_ref, None)


class ReviewSource(Protocol):
    """Where the reviewing device reads session state and reports imports."""

    async def fetch_status(self, token: str) -> SessionStatusResponse: ...

    async def trigger(self, token: str, ids: Optional[Sequence[int]] = None) -> None: ...

    async def mark_imported(self, ids: Sequence[int]) -> List[int]: ...


class LocalReviewSource:
    """Review source over an in-process :class:`~intake.service.IntakeServices`."""

    def __init__(self, services: Any, owner_id: str = "local", model: Optional[str] = None) -> None:
        self.services = services
        self.owner_id = owner_id
        self.model = model

    async def fetch_status(self, token: str) -> SessionStatusResponse:
        return self.services.session_status(token, self.owner_id)

    async def trigger(self, token: str, ids: Optional[Sequence[int]] = None) -> None:
        await self.services.processor.trigger(token, ids=ids, model=self.model)

    async def mark_imported(self, ids: Sequence[int]) -> List[int]:
        return self.services.queue.mark_imported(ids, owner_id=self.owner_id)


class HttpReviewSource:
    """Review source talking to the intake HTTP API."""

    _SESSION_ERRORS = {
        404: SessionNotFound,
        403: SessionForbidden,
        409: SessionCancelled,
        410: SessionExpired,
    }

    def __init__(
        self,
        base_url: str,
        owner_id: str = "local",
        model: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.owner_id = owner_id
        self.model = model
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"X-Owner-Id": self.owner_id},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _raise_for_session(self, token: str, response: httpx.Response) -> None:
        error = self._SESSION_ERRORS.get(response.status_code)
        if error is not None:
            raise error(token)
        response.raise_for_status()

    async def fetch_status(self, token: str) -> SessionStatusResponse:
        client = await self._get_client()
        response = await client.get(f"/api/intake/sessions/{token}")
        self._raise_for_session(token, response)
        return SessionStatusResponse.model_validate(response.json())

    async def trigger(self, token: str, ids: Optional[Sequence[int]] = None) -> None:
        client = await self._get_client()
        payload: Dict[str, Any] = {}
        if ids is not None:
            payload["ids"] = list(ids)
        if self.model:
            payload["model"] = self.model
        response = await client.post(f"/api/intake/sessions/{token}/process", json=payload)
        self._raise_for_session(token, response)

    async def mark_imported(self, ids: Sequence[int]) -> List[int]:
        client = await self._get_client()
        response = await client.post(
            "/api/intake/pending-uploads/mark-imported", json={"ids": list(ids)}
        )
        response.raise_for_status()
        return MarkImportedResponse.model_validate(response.json()).imported


Importer = Callable[[ReviewItem], Union[None, Awaitable[None]]]


@dataclass
class ImportReport:
    imported: List[ReviewItem] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class SessionReconciler:
    """Drive the discovery and result loops for one upload session."""

    def __init__(
        self,
        source: ReviewSource,
        token: str,
        seen: DurableKeySet,
        imported: DurableKeySet,
        review: Optional[ReviewList] = None,
        discovery_interval: float = 3.0,
        result_interval: float = 2.0,
    ) -> None:
        self.source = source
        self.token = token
        self.seen = seen
        self.imported = imported
        self.review = review or ReviewList()
        self.discovery_interval = discovery_interval
        self.result_interval = result_interval
        self._discovery_task: Optional[asyncio.Task] = None
        self._result_task: Optional[asyncio.Task] = None
        self.closed_reason: Optional[str] = None

    @classmethod
    def with_cache(
        cls,
        source: ReviewSource,
        token: str,
        cache_dir: Path,
        **kwargs: Any,
    ) -> "SessionReconciler":
        """Reconciler whose seen set is per session and imported set is shared."""
        cache_dir = Path(cache_dir).expanduser()
        return cls(
            source,
            token,
            seen=DurableKeySet(cache_dir / "sessions" / f"{token}.seen.json"),
            imported=DurableKeySet(cache_dir / "imported.json"),
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return any(
            task is not None and not task.done()
            for task in (self._discovery_task, self._result_task)
        )

    async def discovery_tick(self) -> List[str]:
        """Dispatch processing once for images not yet seen; returns their refs."""
        status = await self.source.fetch_status(self.token)
        fresh = [
            image
            for image in status.images
            if image.image_ref not in self.seen and image.image_ref not in self.imported
        ]
        dispatch = [image.id for image in fresh if image.status == "pending"]
        if dispatch:
            LOGGER.info("Dispatching new uploads", count=len(dispatch))
            await self.source.trigger(self.token, ids=dispatch)
        # Marked seen only after the dispatch succeeded.
        added = self.seen.add_many(image.image_ref for image in fresh)
        if dispatch or status.pending_count or status.processing:
            self._ensure_result_loop()
        return sorted(added)

    async def result_tick(self) -> bool:
        """Merge finished records; returns True while work is still outstanding."""
        status = await self.source.fetch_status(self.token)
        added = self.review.merge(
            image for image in status.images if image.image_ref not in self.imported
        )
        if added:
            LOGGER.info("Merged review items", count=len(added), total=len(self.review))
        return status.pending_count > 0 or status.processing

    async def start(self) -> None:
        if self._discovery_task is None or self._discovery_task.done():
            self._discovery_task = asyncio.create_task(self._discovery_loop())

    async def stop(self) -> None:
        tasks = [task for task in (self._discovery_task, self._result_task) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._discovery_task = None
        self._result_task = None

    def _ensure_result_loop(self) -> None:
        if self._result_task is None or self._result_task.done():
            self._result_task = asyncio.create_task(self._result_loop())

    def _closed(self, exc: SessionError) -> None:
        self.closed_reason = str(exc)
        LOGGER.info("Review session closed", reason=self.closed_reason)
        if self._result_task is not None and self._result_task is not asyncio.current_task():
            self._result_task.cancel()

    async def _discovery_loop(self) -> None:
        while True:
            try:
                await self.discovery_tick()
            except SessionError as exc:
                self._closed(exc)
                return
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Discovery poll failed", error=str(exc))
            await asyncio.sleep(self.discovery_interval)

    async def _result_loop(self) -> None:
        while True:
            try:
                outstanding = await self.result_tick()
            except SessionError as exc:
                self._closed(exc)
                return
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Result poll failed", error=str(exc))
                outstanding = True
            if not outstanding:
                return
            await asyncio.sleep(self.result_interval)

    async def import_selected(self, importer: Importer) -> ImportReport:
        """Hand selected ready items to ``importer`` and commit the ones it accepted."""
        report = ImportReport()
        for item in self.review.selected():
            try:
                outcome = importer(item)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Import failed", image_ref=item.image_ref, error=str(exc))
                report.failed[item.image_ref] = str(exc)
                continue
            report.imported.append(item)

        if report.imported:
            await self.source.mark_imported([item.record_id for item in report.imported])
            refs = [item.image_ref for item in report.imported]
            self.imported.add_many(refs)
            self.review.remove(refs)
            LOGGER.info("Imported review items", count=len(refs))
        return report


__all__ = [
    "DEFAULT_MIN_CONFIDENCE",
    "DurableKeySet",
    "HttpReviewSource",
    "ImportReport",
    "Importer",
    "LocalReviewSource",
    "ReviewItem",
    "ReviewList",
    "ReviewSource",
    "SessionReconciler",
]
