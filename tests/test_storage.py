import io
import os

import pytest

from filevault.core.errors import (
    ConflictError,
    NotFoundError,
    PathViolationError,
    StorageFailureError,
)
from filevault.services.storage import StorageAdapter


def test_resolve_stays_under_root(storage):
    assert storage.resolve("reports/2024/q1.pdf") == storage.root / "reports" / "2024" / "q1.pdf"
    assert storage.resolve("") == storage.root
    assert storage.resolve("reports\\q1.pdf") == storage.root / "reports" / "q1.pdf"


@pytest.mark.parametrize("bad", ["../etc/passwd", "a/../../outside", "/etc/passwd", "..\\secret"])
def test_resolve_rejects_paths_outside_root(storage, bad):
    with pytest.raises(PathViolationError):
        storage.resolve(bad)


def test_resolve_rejects_symlink_escape(storage, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (storage.root / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(PathViolationError):
        storage.resolve("link/file.txt")


def test_delete_directory_refuses_root(storage):
    with pytest.raises(PathViolationError):
        storage.delete_directory("")
    assert storage.root.is_dir()


def test_delete_directory_missing_is_not_an_error(storage):
    assert storage.delete_directory("never/created") is False


def test_delete_directory_removes_subtree(storage):
    storage.create_directory("a/b/c")
    storage.write_file("a/b/c/file.txt", io.BytesIO(b"data"))

    assert storage.delete_directory("a") is True
    assert not (storage.root / "a").exists()


def test_move_directory_creates_destination_parent(storage):
    storage.create_directory("a/b")
    storage.write_file("a/b/file.txt", io.BytesIO(b"data"))

    storage.move_directory("a/b", "x/y/b")

    assert (storage.root / "x" / "y" / "b" / "file.txt").read_bytes() == b"data"
    assert not (storage.root / "a" / "b").exists()


def test_move_directory_into_itself_is_a_conflict(storage):
    storage.create_directory("a/b")
    with pytest.raises(ConflictError):
        storage.move_directory("a", "a/b/a")


def test_move_directory_onto_existing_is_a_conflict(storage):
    storage.create_directory("a")
    storage.create_directory("b")
    with pytest.raises(ConflictError):
        storage.move_directory("a", "b")


def test_write_file_never_overwrites(storage):
    assert storage.write_file("doc.txt", io.BytesIO(b"first")) == 5
    with pytest.raises(ConflictError):
        storage.write_file("doc.txt", io.BytesIO(b"second"))
    assert storage.read_file("doc.txt") == b"first"


def test_place_file_moves_staged_bytes(storage, tmp_path):
    staged = tmp_path / "upload.tmp"
    staged.write_bytes(b"payload")

    storage.place_file(staged, "folder/payload.bin")

    assert not staged.exists()
    assert storage.read_file("folder/payload.bin") == b"payload"


def test_unlink_missing(storage):
    assert storage.unlink("nothing.txt") is False
    with pytest.raises(NotFoundError):
        storage.unlink("nothing.txt", missing_ok=False)


def test_read_missing_file(storage):
    with pytest.raises(NotFoundError):
        storage.read_file("nothing.txt")


def _deny(full):
    raise PermissionError(13, "Permission denied", str(full))


def test_permission_fallback_serves_scratch_copy(storage, monkeypatch):
    storage.write_file("locked.txt", io.BytesIO(b"secret bytes"))
    monkeypatch.setattr(storage, "_probe", _deny)

    path = storage.readable_path("locked.txt")

    assert path.parent == storage.scratch_dir
    assert path.read_bytes() == b"secret bytes"


def test_scratch_copy_is_reused_across_reads(storage, monkeypatch):
    storage.write_file("locked.txt", io.BytesIO(b"secret bytes"))
    monkeypatch.setattr(storage, "_probe", _deny)

    paths = {storage.readable_path("locked.txt") for _ in range(5)}

    assert len(paths) == 1
    assert list(storage.scratch_dir.iterdir()) == list(paths)


def test_scratch_copy_follows_changed_object(storage, monkeypatch):
    storage.write_file("locked.txt", io.BytesIO(b"secret bytes"))
    monkeypatch.setattr(storage, "_probe", _deny)
    first = storage.readable_path("locked.txt")

    full = storage.resolve("locked.txt")
    full.write_bytes(b"rotated secret")
    mtime = full.stat().st_mtime_ns + 5_000_000_000
    os.utime(full, ns=(mtime, mtime))
    second = storage.readable_path("locked.txt")

    assert second != first
    assert list(storage.scratch_dir.iterdir()) == [second]
    assert second.read_bytes() == b"rotated secret"


def test_permission_fallback_disabled(settings, monkeypatch):
    storage = StorageAdapter(settings.storage_root, scratch_dir=settings.scratch_dir, permission_fallback=False)
    storage.write_file("locked.txt", io.BytesIO(b"secret bytes"))
    monkeypatch.setattr(storage, "_probe", _deny)

    with pytest.raises(StorageFailureError):
        storage.readable_path("locked.txt")
