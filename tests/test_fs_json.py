from __future__ import annotations

import os
from pathlib import Path

import pytest

from marketplace_core.canonical import fingerprint, to_canonical_json, to_document_json
from marketplace_core.errors import CorruptDocument, TransientIOFailure
from marketplace_core.fs_json import atomic_write_text, locked_file, read_json, write_json


def test_read_missing_file_returns_default(tmp_path: Path) -> None:
    assert read_json(tmp_path / "absent.json") is None
    assert read_json(tmp_path / "absent.json", default=[]) == []


def test_write_creates_parent_directories_and_round_trips(tmp_path: Path) -> None:
    target = tmp_path / "a" / "b" / "doc.json"
    write_json(target, {"b": 2, "a": [1, 2, 3]})
    assert read_json(target) == {"a": [1, 2, 3], "b": 2}


def test_writing_same_value_twice_yields_identical_bytes(tmp_path: Path) -> None:
    target = tmp_path / "doc.json"
    write_json(target, {"z": 1, "a": {"y": 2, "x": 3}})
    first = target.read_bytes()
    write_json(target, {"a": {"x": 3, "y": 2}, "z": 1})
    assert target.read_bytes() == first


@pytest.mark.parametrize("content", ["", "   \n", "{not json", "[1, 2"])
def test_unparseable_file_raises_corrupt_document(tmp_path: Path, content: str) -> None:
    target = tmp_path / "broken.json"
    target.write_text(content, encoding="utf-8")
    with pytest.raises(CorruptDocument):
        read_json(target, default={})


def test_invalid_utf8_raises_corrupt_document(tmp_path: Path) -> None:
    target = tmp_path / "binary.json"
    target.write_bytes(b"\xff\xfe\x00garbage")
    with pytest.raises(CorruptDocument):
        read_json(target)


def test_failed_replace_keeps_previous_version(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "doc.json"
    write_json(target, {"version": 1})

    def failing_replace(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", failing_replace)
    with pytest.raises(TransientIOFailure):
        atomic_write_text(target, '{"version": 2}')

    assert read_json(target) == {"version": 1}
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_locked_file_uses_sidecar_and_can_be_disabled(tmp_path: Path) -> None:
    target = tmp_path / "doc.json"
    with locked_file(target, enabled=False):
        pass
    assert not (tmp_path / "doc.json.lock").exists()

    with locked_file(target):
        write_json(target, {"ok": True})
    assert (tmp_path / "doc.json.lock").exists()
    assert read_json(target) == {"ok": True}


def test_canonical_json_is_key_order_independent() -> None:
    left = {"type": "milestone_payment_sent", "entityId": "P-1_INV-1", "targetId": 7}
    right = {"targetId": 7, "entityId": "P-1_INV-1", "type": "milestone_payment_sent"}
    assert to_canonical_json(left) == to_canonical_json(right)
    assert fingerprint(left) == fingerprint(right)
    assert len(fingerprint(left)) == 64


def test_document_json_is_sorted_and_newline_terminated() -> None:
    rendered = to_document_json({"b": 1, "a": "é"})
    assert rendered == '{\n  "a": "é",\n  "b": 1\n}\n'
