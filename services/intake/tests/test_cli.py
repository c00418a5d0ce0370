"""Tests for the ``spool-intake`` command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from intake import cli

from .conftest import FakeExtractor

runner = CliRunner()


class _FakeClient(FakeExtractor):
    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> _FakeClient:
    client = _FakeClient(delay=0)
    monkeypatch.setattr(cli.VisionExtractionClient, "from_settings", lambda settings: client)
    return client


def test_models_lists_catalogue() -> None:
    result = runner.invoke(cli.app, ["models"])

    assert result.exit_code == 0
    assert "gpt-4o" in result.output


def test_extract_json(tmp_path: Path, fake_client: _FakeClient) -> None:
    good = tmp_path / "good.jpg"
    good.write_bytes(b"ok-good")
    bad = tmp_path / "bad.jpg"
    bad.write_bytes(b"fail-bad")

    result = runner.invoke(cli.app, ["extract", str(good), str(bad), "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.output[result.output.index("[") :])
    assert [entry["file"] for entry in payload] == ["good.jpg", "bad.jpg"]
    assert payload[0]["extractedData"]["manufacturer"] == "Bambu Lab"
    assert payload[1]["extractedData"] is None
    assert "fail-bad" in payload[1]["error"]


def test_extract_unknown_model(tmp_path: Path, fake_client: _FakeClient) -> None:
    photo = tmp_path / "a.jpg"
    photo.write_bytes(b"ok-a")

    result = runner.invoke(cli.app, ["extract", str(photo), "--model", "nope"])

    assert result.exit_code == 1
    assert fake_client.calls == []
