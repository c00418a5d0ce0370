"""HTTP API tests using FastAPI's TestClient."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from common.config import Settings
from common.db.models import UploadSession
from intake.app import create_app

from .conftest import FakeExtractor, image_bytes

ALICE = {"X-Owner-Id": "alice"}


@pytest.fixture
def client(
    settings: Settings,
    session_factory: sessionmaker[Session],
    fake_extractor: FakeExtractor,
) -> Iterator[TestClient]:
    app = create_app(settings, extractor=fake_extractor, session_factory=session_factory)
    with TestClient(app) as test_client:
        yield test_client


def _jpeg(name: str, payload: str):
    return ("images", (name, image_bytes(payload), "image/jpeg"))


def _session(client: TestClient) -> str:
    response = client.post("/api/intake/sessions", headers=ALICE)
    assert response.status_code == 201
    return response.json()["sessionToken"]


def _wait_processed(client: TestClient, token: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/intake/sessions/{token}", headers=ALICE).json()
        if body["pendingCount"] == 0 and not body["processing"]:
            return body
        assert time.monotonic() < deadline, body
        time.sleep(0.02)


class TestBasics:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_models(self, client: TestClient) -> None:
        response = client.get("/api/intake/models")

        assert response.status_code == 200
        assert "gpt-4o" in [model["id"] for model in response.json()]


class TestSessions:
    """Session lifecycle over HTTP."""

    def test_create_session(self, client: TestClient) -> None:
        response = client.post("/api/intake/sessions", headers=ALICE)

        body = response.json()
        assert response.status_code == 201
        assert len(body["sessionToken"]) == 64
        assert body["uploadUrl"].endswith(f"/mobile-upload/{body['sessionToken']}")
        assert body["expiresAt"]

    def test_upload_and_status(self, client: TestClient) -> None:
        token = _session(client)

        uploaded = client.post(
            f"/api/intake/mobile-upload/{token}",
            files=[_jpeg("a.jpg", "ok-a"), _jpeg("b.jpg", "ok-b")],
        )
        status = client.get(f"/api/intake/sessions/{token}", headers=ALICE)

        assert uploaded.status_code == 200
        assert uploaded.json() == {"success": True, "uploaded": 2, "total": 2}
        assert status.headers["cache-control"].startswith("no-store")
        body = status.json()
        assert body["status"] == "active"
        assert body["imageCount"] == 2
        assert body["pendingCount"] == 2
        assert [image["originalName"] for image in body["images"]] == ["a.jpg", "b.jpg"]

    def test_uploaded_image_is_served(self, client: TestClient) -> None:
        token = _session(client)
        client.post(f"/api/intake/mobile-upload/{token}", files=[_jpeg("a.jpg", "ok-a")])
        image_ref = client.get(f"/api/intake/sessions/{token}", headers=ALICE).json()["images"][0][
            "imageRef"
        ]

        response = client.get(f"/{image_ref}")

        assert response.status_code == 200
        assert response.content == image_bytes("ok-a")

    def test_status_wrong_owner(self, client: TestClient) -> None:
        token = _session(client)

        response = client.get(f"/api/intake/sessions/{token}", headers={"X-Owner-Id": "bob"})

        assert response.status_code == 403
        assert "error" in response.json()

    def test_unknown_session(self, client: TestClient) -> None:
        assert client.get(f"/api/intake/sessions/{'0' * 64}", headers=ALICE).status_code == 404
        response = client.post(
            f"/api/intake/mobile-upload/{'0' * 64}", files=[_jpeg("a.jpg", "ok-a")]
        )
        assert response.status_code == 404

    def test_unsupported_type_rejected(self, client: TestClient) -> None:
        token = _session(client)

        response = client.post(
            f"/api/intake/mobile-upload/{token}",
            files=[("images", ("notes.txt", b"hello", "text/plain"))],
        )

        assert response.status_code == 415
        assert client.get(f"/api/intake/sessions/{token}", headers=ALICE).json()["imageCount"] == 0

    def test_mislabelled_content_rejected(self, client: TestClient) -> None:
        token = _session(client)

        response = client.post(
            f"/api/intake/mobile-upload/{token}",
            files=[("images", ("x.html", b"<script>alert(1)</script>", "image/jpeg"))],
        )

        assert response.status_code == 415
        assert client.get(f"/api/intake/sessions/{token}", headers=ALICE).json()["imageCount"] == 0

    def test_cancel_then_upload(self, client: TestClient) -> None:
        token = _session(client)
        client.post(f"/api/intake/mobile-upload/{token}", files=[_jpeg("a.jpg", "ok-a")])

        cancelled = client.post(f"/api/intake/sessions/{token}/cancel", headers=ALICE)
        upload = client.post(f"/api/intake/mobile-upload/{token}", files=[_jpeg("b.jpg", "ok-b")])

        assert cancelled.json() == {"success": True, "cancelledCount": 1, "status": "cancelled"}
        assert upload.status_code == 409
        assert client.get(f"/api/intake/sessions/{token}", headers=ALICE).status_code == 409

    def test_expired_session(
        self, client: TestClient, session_factory: sessionmaker[Session]
    ) -> None:
        token = _session(client)
        with session_factory() as db:
            row = db.query(UploadSession).filter_by(token=token).one()
            row.expires_at = datetime(2000, 1, 1)
            db.commit()

        upload = client.post(f"/api/intake/mobile-upload/{token}", files=[_jpeg("a.jpg", "ok-a")])
        status = client.get(f"/api/intake/sessions/{token}", headers=ALICE)

        assert upload.status_code == 410
        assert status.status_code == 404

    def test_delete_session(self, client: TestClient) -> None:
        token = _session(client)

        assert client.delete(f"/api/intake/sessions/{token}", headers=ALICE).json() == {
            "success": True
        }
        assert client.get(f"/api/intake/sessions/{token}", headers=ALICE).status_code == 404

    def test_process_session(self, client: TestClient) -> None:
        token = _session(client)
        client.post(
            f"/api/intake/mobile-upload/{token}",
            files=[_jpeg("a.jpg", "ok-a"), _jpeg("b.jpg", "fail-b")],
        )

        response = client.post(f"/api/intake/sessions/{token}/process", headers=ALICE)
        body = _wait_processed(client, token)

        assert response.status_code == 200
        assert response.json()["totalCount"] == 2
        assert [image["status"] for image in body["images"]] == ["ready", "error"]
        assert body["images"][0]["extractedData"]["manufacturer"] == "Bambu Lab"
        assert "fail-b" in body["images"][1]["error"]

    def test_process_unknown_model(self, client: TestClient) -> None:
        token = _session(client)

        response = client.post(
            f"/api/intake/sessions/{token}/process", headers=ALICE, json={"model": "nope"}
        )

        assert response.status_code == 400


class TestDirectExtraction:
    def test_extract_single(self, client: TestClient) -> None:
        response = client.post(
            "/api/intake/extract",
            files={"image": ("a.jpg", image_bytes("ok-a"), "image/jpeg")},
            data={"model": "gpt-4o"},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["imageRef"].startswith("uploads/filaments/")
        assert body["extractedData"]["colorCode"] == "#d4af37"

    def test_extract_unknown_model(self, client: TestClient) -> None:
        response = client.post(
            "/api/intake/extract",
            files={"image": ("a.jpg", image_bytes("ok-a"), "image/jpeg")},
            data={"model": "not-a-model"},
        )

        assert response.status_code == 400
        assert "not-a-model" in response.json()["error"]

    def test_extract_failure_is_bad_gateway(self, client: TestClient) -> None:
        response = client.post(
            "/api/intake/extract", files={"image": ("a.jpg", image_bytes("fail-a"), "image/jpeg")}
        )

        assert response.status_code == 502

    def test_extract_bulk(self, client: TestClient) -> None:
        response = client.post(
            "/api/intake/extract-bulk",
            headers=ALICE,
            files=[_jpeg("a.jpg", "ok-a"), _jpeg("b.jpg", "fail-b"), _jpeg("c.jpg", "ok-c")],
        )

        body = response.json()
        assert response.status_code == 200
        assert (body["total"], body["processed"], body["failed"]) == (3, 2, 1)
        assert [item["originalName"] for item in body["results"]] == ["a.jpg", "b.jpg", "c.jpg"]
        assert body["results"][1]["error"]


class TestPendingUploads:
    """Owner-level pending upload queue."""

    @pytest.fixture
    def records(self, client: TestClient) -> dict:
        client.post(
            "/api/intake/extract-bulk",
            headers=ALICE,
            files=[_jpeg("a.jpg", "ok-a"), _jpeg("b.jpg", "fail-b")],
        )
        items = client.get("/api/intake/pending-uploads", headers=ALICE).json()["items"]
        return {item["status"]: item["id"] for item in items}

    def test_listing(self, client: TestClient, records: dict) -> None:
        response = client.get("/api/intake/pending-uploads", headers=ALICE)

        body = response.json()
        assert response.headers["cache-control"].startswith("no-store")
        assert body["totalCount"] == 2
        assert body["processedCount"] == 2
        assert client.get("/api/intake/pending-uploads").json()["totalCount"] == 0

    def test_mark_imported_idempotent(self, client: TestClient, records: dict) -> None:
        payload = {"ids": [records["ready"]]}

        first = client.post("/api/intake/pending-uploads/mark-imported", headers=ALICE, json=payload)
        second = client.post("/api/intake/pending-uploads/mark-imported", headers=ALICE, json=payload)

        assert first.json() == {"success": True, "imported": [records["ready"]]}
        assert second.status_code == 200
        listing = client.get("/api/intake/pending-uploads", headers=ALICE).json()
        assert [item["id"] for item in listing["items"]] == [records["error"]]

    def test_mark_imported_error_record(self, client: TestClient, records: dict) -> None:
        response = client.post(
            "/api/intake/pending-uploads/mark-imported",
            headers=ALICE,
            json={"ids": [records["ready"], records["error"]]},
        )

        assert response.status_code == 409
        statuses = {
            item["id"]: item["status"]
            for item in client.get("/api/intake/pending-uploads", headers=ALICE).json()["items"]
        }
        assert statuses[records["ready"]] == "ready"

    def test_mark_imported_requires_ids(self, client: TestClient) -> None:
        response = client.post("/api/intake/pending-uploads/mark-imported", json={"ids": []})

        assert response.status_code == 422

    def test_patch_extracted(self, client: TestClient, records: dict) -> None:
        response = client.patch(
            f"/api/intake/pending-uploads/{records['ready']}",
            headers=ALICE,
            json={"extractedData": {"colorName": "Ocean Blue", "confidence": 0.9}},
        )

        assert response.status_code == 200
        assert response.json()["extractedData"]["colorName"] == "Ocean Blue"

    def test_patch_other_owner(self, client: TestClient, records: dict) -> None:
        response = client.patch(
            f"/api/intake/pending-uploads/{records['ready']}",
            headers={"X-Owner-Id": "bob"},
            json={"extractedData": {"confidence": 0.5}},
        )

        assert response.status_code == 404

    def test_delete_one(self, client: TestClient, records: dict) -> None:
        response = client.delete(f"/api/intake/pending-uploads/{records['error']}", headers=ALICE)

        assert response.json() == {"success": True}
        assert client.get("/api/intake/pending-uploads", headers=ALICE).json()["totalCount"] == 1
        missing = client.delete(f"/api/intake/pending-uploads/{records['error']}", headers=ALICE)
        assert missing.status_code == 404

    def test_clear_all(self, client: TestClient, records: dict) -> None:
        assert client.delete("/api/intake/pending-uploads", headers=ALICE).status_code == 200

        assert client.get("/api/intake/pending-uploads", headers=ALICE).json()["totalCount"] == 0
