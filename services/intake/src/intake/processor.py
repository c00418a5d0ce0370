"""Server-side processing of pending uploads that arrive through a session."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence, Set

from common.db.models import PendingUpload, PendingUploadStatus
from common.logging import get_logger

from .errors import ImageStoreError, InvalidModelError, QueueError
from .orchestrator import BatchImage, BatchItemResult, BatchOrchestrator
from .sessions import PendingUploadQueue, UploadSessionManager
from .storage import ImageStore

LOGGER = get_logger(__name__)

# ``None`` means "every pending record of the session".
_Request = Optional[Set[int]]


def _merge_requests(current: _Request, incoming: _Request) -> _Request:
    if current is None or incoming is None:
        return None
    return current | incoming


class SessionProcessor:
    """Claim pending records of a session and run them through the orchestrator.

    One background task per session token. A trigger that arrives while the
    task is alive is folded into the task's backlog, so records uploaded
    mid-batch are still picked up without starting a second worker.
    """

    def __init__(
        self,
        manager: UploadSessionManager,
        queue: PendingUploadQueue,
        store: ImageStore,
        orchestrator: BatchOrchestrator,
        default_model: str,
    ) -> None:
        self.manager = manager
        self.queue = queue
        self.store = store
        self.orchestrator = orchestrator
        self.default_model = default_model
        self._tasks: Dict[str, asyncio.Task] = {}
        self._backlog: Dict[str, _Request] = {}

    def is_processing(self, token: str) -> bool:
        task = self._tasks.get(token)
        return task is not None and not task.done()

    async def trigger(
        self,
        token: str,
        ids: Optional[Sequence[int]] = None,
        model: Optional[str] = None,
    ) -> bool:
        """Request processing; returns True when a new worker task was started."""
        upload_session = self.manager.require_open(self.manager.get_session(token))
        chosen = model or self.default_model
        if not self.orchestrator.extractor.supports(chosen):
            raise InvalidModelError(chosen)

        request: _Request = set(ids) if ids is not None else None
        if token in self._backlog:
            self._backlog[token] = _merge_requests(self._backlog[token], request)
        else:
            self._backlog[token] = request

        if self.is_processing(token):
            LOGGER.info("Processing already running", session_id=upload_session.id)
            return False

        task = asyncio.create_task(self._drain(token, upload_session.id, chosen))
        self._tasks[token] = task
        task.add_done_callback(lambda _task, key=token: self._forget(key, _task))
        return True

    async def wait(self, token: str) -> None:
        task = self._tasks.get(token)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._backlog.clear()

    def _forget(self, token: str, task: asyncio.Task) -> None:
        if self._tasks.get(token) is task:
            del self._tasks[token]
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("Session processing failed", error=str(task.exception()))

    async def _drain(self, token: str, session_id: int, model: str) -> None:
        while token in self._backlog:
            request = self._backlog.pop(token)
            if not self.manager.is_open(token):
                LOGGER.info("Session closed before processing", session_id=session_id)
                return
            pending = self.queue.list_by_session(session_id, [PendingUploadStatus.pending])
            wanted = [
                record.id for record in pending if request is None or record.id in request
            ]
            claimed = set(self.queue.mark_processing(wanted))
            records = [record for record in pending if record.id in claimed]
            if records:
                await self.process_records(token, records, model)

    async def process_records(
        self, token: str, records: Sequence[PendingUpload], model: str
    ) -> List[BatchItemResult]:
        """Run claimed records and write each outcome back as it completes."""
        items: List[BatchImage] = []
        for record in records:
            try:
                data = self.store.load(record.image_ref)
            except ImageStoreError as exc:
                self._record_error(record.id, str(exc))
                continue
            items.append(
                BatchImage(
                    data=data,
                    filename=record.original_name,
                    image_ref=record.image_ref,
                    record_id=record.id,
                )
            )
        if not items:
            return []

        finished: Set[Optional[int]] = set()

        def _on_item(outcome: BatchItemResult) -> None:
            self.record_outcome(outcome)
            finished.add(outcome.record_id)

        try:
            results = await self.orchestrator.run(
                items,
                model,
                on_item=_on_item,
                should_continue=lambda: self.manager.is_open(token),
            )
        except asyncio.CancelledError:
            self._fail_unfinished(items, finished, "Processing interrupted")
            raise

        self._fail_unfinished(items, finished, "Upload session closed before processing")
        return results

    def _fail_unfinished(
        self, items: Sequence[BatchImage], finished: Set[Optional[int]], message: str
    ) -> None:
        for item in items:
            if item.record_id is not None and item.record_id not in finished:
                self._record_error(item.record_id, message)

    def record_outcome(self, outcome: BatchItemResult) -> None:
        if outcome.record_id is None:
            return
        if outcome.ok and outcome.result is not None:
            try:
                self.queue.mark_ready(outcome.record_id, outcome.result)
            except QueueError as exc:
                LOGGER.info(
                    "Dropped result for vanished record",
                    record_id=outcome.record_id,
                    error=str(exc),
                )
        else:
            self._record_error(outcome.record_id, outcome.error or "Extraction failed")

    def _record_error(self, record_id: int, message: str) -> None:
        try:
            self.queue.mark_error(record_id, message)
        except QueueError as exc:
            LOGGER.info("Dropped error for vanished record", record_id=record_id, error=str(exc))


__all__ = ["SessionProcessor"]
