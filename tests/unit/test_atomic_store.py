from __future__ import annotations

import os
from pathlib import Path
import threading

import pytest

from pxlcensor.storage.atomic import AtomicFileStore


@pytest.mark.unit
def test_write_creates_parents_and_read_returns_payload(tmp_path: Path) -> None:
    store = AtomicFileStore(root=tmp_path)

    target = store.write("originals/2024/01/a.jpg", b"jpeg-bytes")

    assert target == (tmp_path / "originals/2024/01/a.jpg").resolve()
    assert store.read("originals/2024/01/a.jpg") == b"jpeg-bytes"
    assert store.read("/originals/2024/01/a.jpg") == b"jpeg-bytes"


@pytest.mark.unit
def test_read_of_missing_path_returns_none(tmp_path: Path) -> None:
    store = AtomicFileStore(root=tmp_path)

    assert store.read("processed/missing.jpg") is None


@pytest.mark.unit
def test_overwrite_replaces_whole_content_and_leaves_no_temp_files(tmp_path: Path) -> None:
    store = AtomicFileStore(root=tmp_path)
    store.write("processed/a.png", b"old content")

    store.write("processed/a.png", b"new")

    assert store.read("processed/a.png") == b"new"
    assert sorted(p.name for p in (tmp_path / "processed").iterdir()) == ["a.png"]


@pytest.mark.unit
def test_crash_before_rename_keeps_previous_complete_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = AtomicFileStore(root=tmp_path)
    store.write("originals/x.jpg", b"complete old version")

    def _crash(src: object, dst: object) -> None:
        raise OSError("power lost")

    monkeypatch.setattr(os, "replace", _crash)

    with pytest.raises(OSError, match="power lost"):
        store.write("originals/x.jpg", b"half-written new version")

    assert store.read("originals/x.jpg") == b"complete old version"
    assert [p.name for p in (tmp_path / "originals").iterdir()] == ["x.jpg"]


@pytest.mark.unit
def test_crash_before_rename_on_new_file_leaves_nothing_visible(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = AtomicFileStore(root=tmp_path)

    def _crash(src: object, dst: object) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr(os, "replace", _crash)

    with pytest.raises(KeyboardInterrupt):
        store.write("processed/new.jpg", b"payload")

    assert store.read("processed/new.jpg") is None
    assert list((tmp_path / "processed").iterdir()) == []


@pytest.mark.unit
def test_delete_is_best_effort(tmp_path: Path) -> None:
    store = AtomicFileStore(root=tmp_path)
    store.write("processed/a.jpg", b"x")

    assert store.delete("processed/a.jpg") is True
    assert store.delete("processed/a.jpg") is False
    assert store.delete("../outside.jpg") is False


@pytest.mark.unit
@pytest.mark.parametrize("path", ["", "/", "../etc/passwd", "originals/../../escape"])
def test_paths_outside_root_are_rejected(tmp_path: Path, path: str) -> None:
    store = AtomicFileStore(root=tmp_path / "media")

    with pytest.raises(ValueError):
        store.write(path, b"x")


@pytest.mark.unit
def test_concurrent_reader_never_sees_a_partial_write(tmp_path: Path) -> None:
    store = AtomicFileStore(root=tmp_path)
    payloads = [bytes([idx]) * (2 * 1024 * 1024) for idx in range(1, 5)]
    store.write("processed/big.jpg", payloads[0])
    stop = threading.Event()
    torn: list[int] = []
    reads: list[int] = []

    def _reader() -> None:
        while not stop.is_set():
            current = store.read("processed/big.jpg")
            reads.append(1)
            if current not in payloads:
                torn.append(len(current or b""))

    reader = threading.Thread(target=_reader)
    reader.start()
    try:
        for round_idx in range(20):
            store.write("processed/big.jpg", payloads[round_idx % len(payloads)])
    finally:
        stop.set()
        reader.join(timeout=10)

    assert torn == []
    assert reads
    assert sorted(p.name for p in (tmp_path / "processed").iterdir()) == ["big.jpg"]


@pytest.mark.unit
def test_sweep_removes_leftover_temp_files_only(tmp_path: Path) -> None:
    store = AtomicFileStore(root=tmp_path)
    store.write("originals/2024/01/a.jpg", b"kept")
    leftover = tmp_path / "originals/2024/01/.a.jpg.01HX0000000000000000000000.tmp"
    leftover.write_bytes(b"half")
    (tmp_path / "processed").mkdir()
    (tmp_path / "processed/.b.png.01HX0000000000000000000001.tmp").write_bytes(b"half")

    assert store.sweep_temp_files() == 2
    assert store.sweep_temp_files() == 0
    assert store.read("originals/2024/01/a.jpg") == b"kept"
    assert not leftover.exists()


@pytest.mark.unit
def test_sweep_on_missing_root_is_a_no_op(tmp_path: Path) -> None:
    assert AtomicFileStore(root=tmp_path / "absent").sweep_temp_files() == 0
