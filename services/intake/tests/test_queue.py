"""Tests for the pending upload queue state machine."""

from __future__ import annotations

import pytest

from common.db.models import PendingUploadStatus
from intake.errors import InvalidTransition, RecordNotFound
from intake.schemas import ExtractionResult
from intake.sessions import PendingUploadQueue

RESULT = ExtractionResult(manufacturer="Sunlu", material="PETG", confidence=0.8)


def _ready(queue: PendingUploadQueue, image_ref: str = "uploads/filaments/a.jpg") -> int:
    record = queue.create(image_ref, owner_id="alice")
    queue.mark_processing([record.id])
    queue.mark_ready(record.id, RESULT)
    return record.id


class TestTransitions:
    """pending -> processing -> ready|error -> imported, never backwards."""

    def test_new_record_is_pending(self, queue: PendingUploadQueue) -> None:
        record = queue.create("uploads/filaments/a.jpg", owner_id="alice", original_name="a.jpg")

        assert record.status == PendingUploadStatus.pending
        assert record.extracted is None
        assert record.error_message is None
        assert record.original_name == "a.jpg"

    def test_claim_is_exclusive(self, queue: PendingUploadQueue) -> None:
        first = queue.create("uploads/filaments/a.jpg", owner_id="alice")
        second = queue.create("uploads/filaments/b.jpg", owner_id="alice")

        assert queue.mark_processing([first.id, second.id]) == [first.id, second.id]
        assert queue.mark_processing([first.id, second.id]) == []

    def test_ready_stores_camel_case_result(self, queue: PendingUploadQueue) -> None:
        record_id = _ready(queue)

        record = queue.get(record_id)
        assert record.status == PendingUploadStatus.ready
        assert record.extracted["manufacturer"] == "Sunlu"
        assert record.extracted["confidence"] == 0.8
        assert record.error_message is None

    def test_error_stores_message(self, queue: PendingUploadQueue) -> None:
        record = queue.create("uploads/filaments/a.jpg", owner_id="alice")
        queue.mark_processing([record.id])

        queue.mark_error(record.id, "blurry")

        stored = queue.get(record.id)
        assert stored.status == PendingUploadStatus.error
        assert stored.error_message == "blurry"
        assert stored.extracted is None

    def test_ready_requires_processing(self, queue: PendingUploadQueue) -> None:
        record = queue.create("uploads/filaments/a.jpg", owner_id="alice")

        with pytest.raises(InvalidTransition):
            queue.mark_ready(record.id, RESULT)

    def test_no_regression_from_ready(self, queue: PendingUploadQueue) -> None:
        record_id = _ready(queue)

        assert queue.mark_processing([record_id]) == []
        with pytest.raises(InvalidTransition):
            queue.mark_error(record_id, "late failure")
        assert queue.get(record_id).status == PendingUploadStatus.ready

    def test_fail_interrupted_only_touches_processing(self, queue: PendingUploadQueue) -> None:
        stuck = queue.create("uploads/filaments/a.jpg", owner_id="alice")
        waiting = queue.create("uploads/filaments/b.jpg", owner_id="alice")
        queue.mark_processing([stuck.id])
        done_id = _ready(queue, "uploads/filaments/c.jpg")

        assert queue.fail_interrupted() == [stuck.id]

        assert queue.get(stuck.id).status == PendingUploadStatus.error
        assert queue.get(stuck.id).error_message == "Processing interrupted"
        assert queue.get(waiting.id).status == PendingUploadStatus.pending
        assert queue.get(done_id).status == PendingUploadStatus.ready
        assert queue.fail_interrupted() == []

    def test_unknown_record(self, queue: PendingUploadQueue) -> None:
        with pytest.raises(RecordNotFound):
            queue.get(999)
        with pytest.raises(RecordNotFound):
            queue.mark_ready(999, RESULT)


class TestMarkImported:
    """Importing is idempotent and terminal."""

    def test_idempotent(self, queue: PendingUploadQueue) -> None:
        record_id = _ready(queue)

        assert queue.mark_imported([record_id]) == [record_id]
        assert queue.mark_imported([record_id]) == [record_id]
        assert queue.get(record_id).status == PendingUploadStatus.imported

    def test_error_record_cannot_be_imported(self, queue: PendingUploadQueue) -> None:
        record = queue.create("uploads/filaments/a.jpg", owner_id="alice")
        queue.mark_processing([record.id])
        queue.mark_error(record.id, "blurry")

        with pytest.raises(InvalidTransition):
            queue.mark_imported([record.id])

    def test_other_owner_cannot_import(self, queue: PendingUploadQueue) -> None:
        record_id = _ready(queue)

        with pytest.raises(RecordNotFound):
            queue.mark_imported([record_id], owner_id="mallory")
        assert queue.get(record_id).status == PendingUploadStatus.ready

    def test_imported_record_cannot_be_deleted(self, queue: PendingUploadQueue) -> None:
        record_id = _ready(queue)
        queue.mark_imported([record_id])

        with pytest.raises(InvalidTransition):
            queue.delete(record_id)

    def test_imported_hidden_from_owner_listing(self, queue: PendingUploadQueue) -> None:
        imported_id = _ready(queue, "uploads/filaments/a.jpg")
        kept_id = _ready(queue, "uploads/filaments/b.jpg")
        queue.mark_imported([imported_id])

        assert [record.id for record in queue.list_by_owner("alice")] == [kept_id]


class TestEditsAndDeletes:
    """User edits and explicit removal."""

    def test_update_extracted_on_ready(self, queue: PendingUploadQueue) -> None:
        record_id = _ready(queue)
        edited = RESULT.model_copy(update={"color_name": "Ocean Blue"})

        updated = queue.update_extracted(record_id, edited)

        assert updated.extracted["colorName"] == "Ocean Blue"
        assert updated.status == PendingUploadStatus.ready

    def test_update_extracted_requires_ready(self, queue: PendingUploadQueue) -> None:
        record = queue.create("uploads/filaments/a.jpg", owner_id="alice")

        with pytest.raises(InvalidTransition):
            queue.update_extracted(record.id, RESULT)

    def test_delete_pending(self, queue: PendingUploadQueue) -> None:
        record = queue.create("uploads/filaments/a.jpg", owner_id="alice")

        removed = queue.delete(record.id, owner_id="alice")

        assert removed.image_ref == "uploads/filaments/a.jpg"
        with pytest.raises(RecordNotFound):
            queue.get(record.id)

    def test_delete_checks_owner(self, queue: PendingUploadQueue) -> None:
        record = queue.create("uploads/filaments/a.jpg", owner_id="alice")

        with pytest.raises(RecordNotFound):
            queue.delete(record.id, owner_id="bob")

    def test_clear_owner_keeps_imported(self, queue: PendingUploadQueue) -> None:
        imported_id = _ready(queue, "uploads/filaments/a.jpg")
        queue.mark_imported([imported_id])
        queue.create("uploads/filaments/b.jpg", owner_id="alice")
        queue.create("uploads/filaments/c.jpg", owner_id="bob")

        removed = queue.clear_owner("alice")

        assert [record.image_ref for record in removed] == ["uploads/filaments/b.jpg"]
        assert queue.get(imported_id).status == PendingUploadStatus.imported
        assert len(queue.list_by_owner("bob")) == 1
