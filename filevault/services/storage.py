"""
Path/storage adapter: the only code that touches the physical tree.

Translates root-relative logical paths ("reports/2024/q1.pdf") into absolute
locations under one storage root and performs directory and file mutations
there. Every resolution is checked against the root: a target outside it
raises PathViolationError before anything is touched.

Degraded-access fallback:
    When ``permission_fallback`` is enabled and a read probe fails with
    PermissionError, the object is copied to ``scratch_dir`` and callers are
    served from the copy instead of failing. With the policy disabled the
    error surfaces as StorageFailureError.

OS errors are translated at this boundary:
    FileNotFoundError → NotFoundError
    FileExistsError   → ConflictError
    other OSError     → StorageFailureError
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

from werkzeug.security import safe_join

from filevault.core.config import Settings
from filevault.core.errors import (
    ConflictError,
    NotFoundError,
    PathViolationError,
    StorageFailureError,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class StorageAdapter:
    """
    Filesystem access confined to a single storage root.

    The root is injected at construction so that several roots can coexist
    (one per test, one per tenant deployment).
    """

    def __init__(
        self,
        root: PathLike,
        scratch_dir: Optional[PathLike] = None,
        permission_fallback: bool = True,
        chunk_size: int = 64 * 1024,
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.scratch_dir = (
            Path(scratch_dir) if scratch_dir else self.root.parent / f".{self.root.name}-scratch"
        )
        self.permission_fallback = permission_fallback
        self.chunk_size = chunk_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorageAdapter":
        return cls(
            settings.storage_root,
            scratch_dir=settings.scratch_dir,
            permission_fallback=settings.permission_fallback,
            chunk_size=settings.chunk_size,
        )

    # -------------------------------------------------------------------
    # Path resolution
    # -------------------------------------------------------------------

    @staticmethod
    def normalize(relative_path: PathLike) -> str:
        """Logical paths always use forward slashes."""
        return str(relative_path).replace("\\", "/")

    def resolve(self, relative_path: PathLike) -> Path:
        """
        Return the absolute location of ``relative_path`` inside the root.

        Raises PathViolationError for absolute paths, ``..`` traversal, or
        symlinks leading outside the root.
        """
        rel = self.normalize(relative_path)
        if not rel:
            return self.root

        joined = safe_join(str(self.root), rel)
        if joined is None:
            raise PathViolationError(
                f"Path '{rel}' escapes the storage root", path=rel
            )

        resolved = Path(joined).resolve()
        if resolved != self.root and not resolved.is_relative_to(self.root):
            raise PathViolationError(
                f"Path '{rel}' resolves outside the storage root", path=rel
            )
        return resolved

    @contextmanager
    def _os_errors(self, operation: str, relative_path: PathLike) -> Iterator[None]:
        try:
            yield
        except FileNotFoundError as e:
            raise NotFoundError(
                f"{operation}: '{relative_path}' does not exist",
                path=relative_path, operation=operation,
            ) from e
        except FileExistsError as e:
            raise ConflictError(
                f"{operation}: '{relative_path}' already exists",
                path=relative_path, operation=operation,
            ) from e
        except OSError as e:
            logger.error(f"{operation} failed for '{relative_path}': {e}")
            raise StorageFailureError(
                f"{operation} failed for '{relative_path}': {e.strerror or e}",
                path=relative_path, operation=operation,
            ) from e

    # -------------------------------------------------------------------
    # Directories
    # -------------------------------------------------------------------

    def create_directory(self, relative_path: PathLike) -> Path:
        full = self.resolve(relative_path)
        with self._os_errors("create_directory", relative_path):
            full.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory: {full}")
        return full

    def delete_directory(self, relative_path: PathLike) -> bool:
        """
        Remove a directory and everything below it.

        Refuses the root itself. A missing directory is not an error (the
        database and the filesystem may have drifted); returns False then.
        """
        full = self.resolve(relative_path)
        if full == self.root:
            raise PathViolationError("Refusing to delete the storage root", path=str(relative_path))

        if not full.exists():
            logger.warning(f"Directory already absent: {full}")
            return False

        with self._os_errors("delete_directory", relative_path):
            shutil.rmtree(full)
        logger.info(f"Deleted directory: {full}")
        return True

    def move_directory(self, old_path: PathLike, new_path: PathLike) -> Path:
        """Create the destination parent, then rename in one step."""
        src = self.resolve(old_path)
        dst = self.resolve(new_path)
        if self.root in (src, dst):
            raise PathViolationError("The storage root cannot be moved", path=str(old_path))
        if dst.is_relative_to(src):
            raise ConflictError(
                f"Cannot move '{old_path}' into itself", path=str(new_path)
            )
        if dst.exists():
            raise ConflictError(f"Destination '{new_path}' already exists", path=str(new_path))

        with self._os_errors("move_directory", old_path):
            dst.parent.mkdir(parents=True, exist_ok=True)
            if src.exists():
                src.rename(dst)
            else:
                logger.warning(f"Source directory missing, creating destination: {src} -> {dst}")
                dst.mkdir()
        logger.info(f"Moved directory: {old_path} -> {new_path}")
        return dst

    # -------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------

    def exists(self, relative_path: PathLike) -> bool:
        return self.resolve(relative_path).exists()

    def write_file(self, relative_path: PathLike, stream: BinaryIO) -> int:
        """Stream ``stream`` into a new object. Never overwrites."""
        full = self.resolve(relative_path)
        written = 0
        with self._os_errors("write_file", relative_path):
            full.parent.mkdir(parents=True, exist_ok=True)
            with open(full, "xb") as out:
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
        return written

    def place_file(self, staged_path: PathLike, relative_path: PathLike) -> Path:
        """Move a staged upload (outside the root) to its final location."""
        dst = self.resolve(relative_path)
        if dst.exists():
            raise ConflictError(f"'{relative_path}' already exists", path=str(relative_path))
        with self._os_errors("place_file", relative_path):
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(staged_path), dst)
        return dst

    def move_file(self, old_path: PathLike, new_path: PathLike) -> Path:
        src = self.resolve(old_path)
        dst = self.resolve(new_path)
        if dst.exists():
            raise ConflictError(f"'{new_path}' already exists", path=str(new_path))
        with self._os_errors("move_file", old_path):
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.rename(src, dst)
        return dst

    def copy_file(self, src_path: PathLike, dst_path: PathLike) -> Path:
        src = self.readable_path(src_path)
        dst = self.resolve(dst_path)
        if dst.exists():
            raise ConflictError(f"'{dst_path}' already exists", path=str(dst_path))
        with self._os_errors("copy_file", src_path):
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
        return dst

    def unlink(self, relative_path: PathLike, missing_ok: bool = True) -> bool:
        """Remove one object. Returns False when it was already absent."""
        full = self.resolve(relative_path)
        try:
            full.unlink()
        except FileNotFoundError:
            if not missing_ok:
                raise NotFoundError(f"'{relative_path}' does not exist", path=str(relative_path))
            logger.warning(f"File already absent on disk: {full}")
            return False
        except OSError as e:
            raise StorageFailureError(
                f"unlink failed for '{relative_path}': {e.strerror or e}",
                path=str(relative_path),
            ) from e
        return True

    def read_file(self, relative_path: PathLike) -> bytes:
        path = self.readable_path(relative_path)
        with self._os_errors("read_file", relative_path):
            return path.read_bytes()

    # -------------------------------------------------------------------
    # Degraded-access fallback
    # -------------------------------------------------------------------

    @staticmethod
    def _probe(full: Path) -> None:
        with open(full, "rb") as handle:
            handle.read(1)

    def readable_path(self, relative_path: PathLike) -> Path:
        """
        Return a path that can actually be read for ``relative_path``.

        Normally the object itself; a scratch copy when the object is not
        readable in place and the fallback policy is enabled.
        """
        full = self.resolve(relative_path)
        try:
            self._probe(full)
            return full
        except PermissionError as e:
            if not self.permission_fallback:
                raise StorageFailureError(
                    f"Permission denied reading '{relative_path}'",
                    path=str(relative_path),
                ) from e
            return self._copy_to_scratch(full, relative_path)
        except FileNotFoundError as e:
            raise NotFoundError(f"'{relative_path}' not found on disk", path=str(relative_path)) from e
        except OSError as e:
            raise StorageFailureError(
                f"Cannot read '{relative_path}': {e.strerror or e}", path=str(relative_path)
            ) from e

    def _copy_to_scratch(self, full: Path, relative_path: PathLike) -> Path:
        # one copy per object, named after its mtime; a changed object replaces it
        key = hashlib.sha256(str(full).encode()).hexdigest()[:16]
        with self._os_errors("scratch_copy", relative_path):
            stat = full.stat()
            target = self.scratch_dir / f"{key}-{stat.st_mtime_ns}-{full.name}"
            if target.exists() and target.stat().st_size == stat.st_size:
                return target

            self.scratch_dir.mkdir(parents=True, exist_ok=True)
            for stale in self.scratch_dir.glob(f"{key}-*"):
                stale.unlink(missing_ok=True)
            partial = target.with_name(f"{target.name}.{uuid.uuid4().hex}.part")
            try:
                shutil.copyfile(full, partial)
                os.replace(partial, target)
            finally:
                partial.unlink(missing_ok=True)
        logger.warning(f"Permission denied on {full}; serving scratch copy {target}")
        return target

    def __repr__(self) -> str:
        return f"<StorageAdapter root='{self.root}'>"
