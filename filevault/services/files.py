"""
File version manager.

Owns the per-folder file records: versioned naming, duplicate-content
detection, the version chain (original → versions), the current-version flag
and restore-to-previous-version.

Naming:
    version 1   report.pdf
    version 2   report(1).pdf
    version N   report(N-1).pdf
If the computed name is taken in the folder the counter keeps increasing
until a free name is found (bounded by ``max_name_attempts``).

Version allocation (read max, then insert) is serialized per
``(folder, original_filename)`` by an in-process lock and backed by the
``(folder_id, filename)`` unique constraint; a constraint violation rolls
back, removes the placed bytes and surfaces as ConflictError.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import String, cast, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from filevault.core.config import Settings
from filevault.core.errors import (
    AccessDeniedError,
    ConflictError,
    FileVaultError,
    InvalidError,
    NotFoundError,
    PathViolationError,
    StorageFailureError,
)
from filevault.core.security import Principal
from filevault.models.file import APPROVAL_STATUSES, FileMeta
from filevault.models.folder import Folder
from filevault.services import approval
from filevault.services.folders import FolderManager, join_path
from filevault.services.hashing import ALGORITHM, hash_file
from filevault.services.storage import StorageAdapter

logger = logging.getLogger(__name__)

FILENAME_RE = re.compile(r"^[\w\-. ()]+$")


def validate_filename(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidError("Filename is required")
    if not FILENAME_RE.match(name) or name in (".", ".."):
        raise InvalidError(f"'{name}' contains invalid characters", name=name)
    return name


def versioned_name(original_name: str, version: int) -> str:
    if version <= 1:
        return original_name
    stem, ext = os.path.splitext(original_name)
    return f"{stem}({version - 1}){ext}"


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class LineageLocks:
    """
    One lock per (folder, original filename).

    An entry lives only while some caller holds or waits for its lock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[int, str], _LockEntry] = {}

    @contextmanager
    def __call__(self, folder_id: int, original_name: str) -> Iterator[None]:
        key = (folder_id, original_name)
        with self._guard:
            entry = self._locks.setdefault(key, _LockEntry())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if not entry.users:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


_lineage_locks = LineageLocks()


@dataclass
class StagedUpload:
    """Bytes already staged outside the root, with a validated MIME type."""

    path: Path
    original_name: str
    mimetype: str
    size: Optional[int] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class UploadOutcome:
    file: FileMeta
    duplicate: bool = False


@dataclass
class UploadBatch:
    outcomes: List[UploadOutcome] = field(default_factory=list)
    failures: List[Tuple[str, FileVaultError]] = field(default_factory=list)

    @property
    def saved(self) -> List[FileMeta]:
        return [o.file for o in self.outcomes if not o.duplicate]

    @property
    def duplicates(self) -> List[FileMeta]:
        return [o.file for o in self.outcomes if o.duplicate]


class FileManager:
    def __init__(self, db: Session, storage: StorageAdapter, settings: Settings):
        self.db = db
        self.storage = storage
        self.settings = settings

    # -------------------------------------------------------------------
    # Lookup and access
    # -------------------------------------------------------------------

    def get(self, file_id: int) -> FileMeta:
        record = self.db.get(FileMeta, file_id)
        if not record:
            raise NotFoundError("File not found", file_id=file_id)
        return record

    @staticmethod
    def can_access(record: FileMeta, principal: Principal) -> bool:
        return (
            principal.is_admin
            or record.owner_id == principal.id
            or record.uploaded_by_id == principal.id
            or (record.folder is not None and FolderManager.has_access(record.folder, principal))
        )

    def require_view(self, record: FileMeta, principal: Principal) -> None:
        if not (self.can_access(record, principal) and approval.can_view(record, principal)):
            raise AccessDeniedError(
                "You do not have permission to view this file",
                user_id=principal.id, file_id=record.id,
            )

    def require_modify(self, record: FileMeta, principal: Principal) -> None:
        if not self.can_access(record, principal):
            raise AccessDeniedError("Access denied", user_id=principal.id, file_id=record.id)

    def _active(self, folder_id: int):
        return self.db.query(FileMeta).filter(
            FileMeta.folder_id == folder_id, FileMeta.is_deleted.is_(False)
        )

    def _lineage_members(self, folder_id: int, original_name: str) -> List[FileMeta]:
        return (
            self._active(folder_id)
            .filter(FileMeta.original_filename == original_name)
            .order_by(FileMeta.version, FileMeta.id)
            .all()
        )

    def _name_taken(self, folder_id: int, filename: str, exclude_id: Optional[int] = None) -> bool:
        # every record counts here, the unique constraint does not know about soft deletes
        query = self.db.query(FileMeta.id).filter(
            FileMeta.folder_id == folder_id, FileMeta.filename == filename
        )
        if exclude_id is not None:
            query = query.filter(FileMeta.id != exclude_id)
        return query.first() is not None

    def _free_name(self, folder_id: int, original_name: str, version: int) -> str:
        counter = version
        for _ in range(self.settings.max_name_attempts):
            candidate = versioned_name(original_name, counter)
            if not self._name_taken(folder_id, candidate):
                return candidate
            counter += 1
        raise ConflictError(
            f"No free name for '{original_name}' after {self.settings.max_name_attempts} attempts",
            folder_id=folder_id,
        )

    # -------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------

    def validate_mimetype(self, mimetype: Optional[str]) -> str:
        if not mimetype or mimetype not in self.settings.allowed_mime_types:
            raise InvalidError(f"Unsupported file type: {mimetype}", mimetype=mimetype)
        return mimetype

    def upload(self, folder: Folder, item: StagedUpload, uploader: Principal) -> UploadOutcome:
        """
        Store one staged upload as a new version in ``folder``.

        Identical content already present in the folder is not stored again:
        the existing record comes back with ``duplicate=True``.
        """
        name = validate_filename(item.original_name)
        mimetype = self.validate_mimetype(item.mimetype)
        size = item.size if item.size is not None else os.path.getsize(item.path)
        if size > self.settings.max_upload_size_bytes:
            raise InvalidError(
                f"File exceeds the {self.settings.max_upload_size_bytes} byte upload limit",
                name=name, size=size,
            )

        file_hash = hash_file(item.path, self.settings.chunk_size)
        existing = self._active(folder.id).filter(FileMeta.file_hash == file_hash).first()
        if existing:
            logger.info(f"Duplicate file detected (same content): {name} -> file {existing.id}")
            return UploadOutcome(existing, duplicate=True)

        with _lineage_locks(folder.id, name):
            lineage = self._lineage_members(folder.id, name)
            next_version = max(m.version for m in lineage) + 1 if lineage else 1
            filename = self._free_name(folder.id, name, next_version)
            rel_path = join_path(folder.path, filename)

            if self.storage.exists(rel_path):
                logger.warning(f"Physical file already exists: {rel_path}")
                raise ConflictError("Physical file already exists", path=rel_path)

            self.storage.create_directory(folder.path)
            self.storage.place_file(item.path, rel_path)

            record = FileMeta(
                filename=filename,
                original_filename=name,
                path=rel_path,
                size=size,
                mimetype=mimetype,
                extension=os.path.splitext(name)[1].lower(),
                description=item.description,
                tags=list(item.tags),
                folder_id=folder.id,
                owner_id=uploader.id,
                uploaded_by_id=uploader.id,
                file_hash=file_hash,
                checksum_algorithm=ALGORITHM,
                version=next_version,
                is_current_version=True,
                previous_versions=[m.id for m in lineage],
                original_file_id=lineage[0].lineage_root_id if lineage else None,
            )
            approval.apply_state(record, approval.initial_state(uploader))
            self.db.add(record)
            for member in lineage:
                member.is_current_version = False

            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                self.storage.unlink(rel_path)
                raise ConflictError(f"'{filename}' already exists in folder", path=rel_path) from e

        self.db.refresh(record)
        logger.info(f"File saved with versioning: {filename} (version {next_version})")
        return UploadOutcome(record)

    def upload_many(
        self, folder: Folder, items: List[StagedUpload], uploader: Principal
    ) -> UploadBatch:
        """
        Upload several staged files; one item's conflict does not stop the rest.

        Raises ConflictError only when no item produced a record. Path
        violations and storage failures abort the batch.
        """
        if not FolderManager.can_write(folder, uploader):
            raise AccessDeniedError(
                "Write access required", user_id=uploader.id, folder_id=folder.id,
                required_permission="write",
            )
        if not items:
            raise InvalidError("No files uploaded")

        batch = UploadBatch()
        for item in items:
            try:
                batch.outcomes.append(self.upload(folder, item, uploader))
            except (PathViolationError, StorageFailureError):
                raise
            except FileVaultError as e:
                logger.warning(f"Skipped '{item.original_name}': {e.message}")
                batch.failures.append((item.original_name, e))

        if not batch.outcomes:
            raise ConflictError(
                "No new files were uploaded (duplicates or conflicts detected)",
                failures=[f"{name}: {err.message}" for name, err in batch.failures],
            )
        return batch

    # -------------------------------------------------------------------
    # Rename
    # -------------------------------------------------------------------

    def rename(self, file_id: int, new_name: str) -> FileMeta:
        """
        Rename in place; the version number is left alone.

        The renamed record leaves its lineage and starts one of its own under
        the new name, so lineage names and ``original_file_id`` chains always
        agree. The old lineage is repaired as on delete.
        """
        record = self.get(file_id)
        new_name = validate_filename(new_name)
        if new_name == record.filename:
            return record

        folder = record.folder
        new_path = join_path(folder.path, new_name)

        with ExitStack() as stack:
            for name in sorted({record.original_filename, new_name}):
                stack.enter_context(_lineage_locks(folder.id, name))

            if self._name_taken(folder.id, new_name, exclude_id=record.id):
                raise ConflictError(f"'{new_name}' already exists in folder", path=new_path)
            if any(m.id != record.id for m in self._lineage_members(folder.id, new_name)):
                raise ConflictError(
                    f"Other versions of '{new_name}' already exist in folder", path=new_path
                )

            old_path = record.path
            self.storage.move_file(old_path, new_path)

            self._detach(record)
            record.filename = new_name
            record.original_filename = new_name
            record.extension = os.path.splitext(new_name)[1].lower()
            record.path = new_path
            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                self.storage.move_file(new_path, old_path)
                raise ConflictError(f"'{new_name}' already exists in folder", path=new_path) from e

        self.db.refresh(record)
        logger.info(f"Renamed file {record.id}: '{old_path}' -> '{new_path}'")
        return record

    def _detach(self, record: FileMeta) -> None:
        """Take ``record`` out of its lineage as the sole, current member of a new one."""
        self._repair_lineage(record)
        record.original_file_id = None
        record.previous_versions = []
        record.is_current_version = True

    # -------------------------------------------------------------------
    # Versions
    # -------------------------------------------------------------------

    def find_versions(self, file_id: int) -> List[FileMeta]:
        """Every active record of the lineage, oldest first."""
        record = self.get(file_id)
        root_id = record.lineage_root_id
        return (
            self.db.query(FileMeta)
            .filter(
                or_(FileMeta.id == root_id, FileMeta.original_file_id == root_id),
                FileMeta.is_deleted.is_(False),
            )
            .order_by(FileMeta.version, FileMeta.id)
            .all()
        )

    def restore(self, file_id: int, by: Principal) -> FileMeta:
        """
        Make the content of ``file_id`` current again as a new version.

        The copy always lands in the lineage's own folder under the lineage
        name, numbered after the current version, and stays linked to the
        lineage original.
        """
        target = self.get(file_id)
        versions = self.find_versions(file_id)
        if not versions:
            raise NotFoundError("File not found or no versions available", file_id=file_id)

        current = next((v for v in versions if v.is_current_version), versions[-1])
        folder = current.folder
        lineage_name = current.original_filename

        with _lineage_locks(folder.id, lineage_name):
            new_version = max(v.version for v in versions) + 1
            filename = self._free_name(folder.id, lineage_name, new_version)
            rel_path = join_path(folder.path, filename)
            if self.storage.exists(rel_path):
                raise ConflictError("Physical file already exists", path=rel_path)

            self.storage.copy_file(target.path, rel_path)

            record = FileMeta(
                filename=filename,
                original_filename=lineage_name,
                path=rel_path,
                size=target.size,
                mimetype=target.mimetype,
                extension=target.extension,
                description=target.description,
                tags=list(target.tags or []),
                folder_id=folder.id,
                owner_id=current.owner_id,
                uploaded_by_id=by.id,
                file_hash=target.file_hash,
                checksum_algorithm=target.checksum_algorithm,
                version=new_version,
                is_current_version=True,
                previous_versions=list(current.previous_versions or []) + [current.id],
                original_file_id=versions[0].lineage_root_id,
            )
            approval.apply_state(record, approval.initial_state(by))
            self.db.add(record)
            for version in versions:
                version.is_current_version = False

            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                self.storage.unlink(rel_path)
                raise ConflictError(f"'{filename}' already exists in folder", path=rel_path) from e

        self.db.refresh(record)
        logger.info(
            f"Restored file {target.id} (v{target.version}) as {filename} (version {new_version})"
        )
        return record

    # -------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------

    def delete(self, file_id: int) -> None:
        """Remove the object and its record; an already-absent object is fine."""
        record = self.get(file_id)
        path = record.path
        self.storage.unlink(path, missing_ok=True)
        self._repair_lineage(record)
        self.db.delete(record)
        self.db.commit()
        logger.info(f"Deleted file {file_id} ('{path}')")

    def _repair_lineage(self, record: FileMeta) -> None:
        root_id = record.lineage_root_id
        others = (
            self.db.query(FileMeta)
            .filter(
                or_(FileMeta.id == root_id, FileMeta.original_file_id == root_id),
                FileMeta.id != record.id,
            )
            .order_by(FileMeta.version, FileMeta.id)
            .all()
        )
        if not others:
            return

        if record.id == root_id:
            new_root = others[0]
            new_root.original_file_id = None
            for member in others[1:]:
                member.original_file_id = new_root.id

        for member in others:
            if record.id in (member.previous_versions or []):
                member.previous_versions = [v for v in member.previous_versions if v != record.id]

        active = [m for m in others if not m.is_deleted]
        if record.is_current_version and active:
            active[-1].is_current_version = True

    def delete_folder_records(self, folder_id: int, commit: bool = True) -> int:
        """Remove every file record of a folder whose directory is already gone."""
        query = self.db.query(FileMeta).filter(FileMeta.folder_id == folder_id)
        for record in query.all():
            self.storage.unlink(record.path, missing_ok=True)
        query.update({FileMeta.original_file_id: None}, synchronize_session=False)
        count = query.delete(synchronize_session=False)
        if commit:
            self.db.commit()
        logger.info(f"Removed {count} file records of folder {folder_id}")
        return count

    # -------------------------------------------------------------------
    # Approval and listings
    # -------------------------------------------------------------------

    def set_approval(
        self, file_id: int, status: str, by: Principal, reason: Optional[str] = None
    ) -> FileMeta:
        if not by.is_reviewer:
            raise AccessDeniedError("Reviewer role required", user_id=by.id)
        record = self.get(file_id)
        approval.set_approval(record, status, by.id, reason)
        self.db.commit()
        self.db.refresh(record)
        logger.info(f"File {file_id} {status} by user {by.id}")
        return record

    def list_by_status(self, status: str = "all", search: Optional[str] = None) -> List[FileMeta]:
        if status != "all" and status not in APPROVAL_STATUSES:
            raise InvalidError(
                "Invalid status. Must be: pending, approved, disapproved, or all"
            )
        query = self.db.query(FileMeta).filter(FileMeta.is_deleted.is_(False))
        if status != "all":
            query = query.filter(FileMeta.approval_status == status)
        if search and search.strip():
            term = f"%{search.strip().lower()}%"
            query = query.filter(
                or_(
                    func.lower(FileMeta.filename).like(term),
                    func.lower(FileMeta.description).like(term),
                    func.lower(cast(FileMeta.tags, String)).like(term),
                )
            )
        return query.order_by(FileMeta.uploaded_at.desc(), FileMeta.id.desc()).all()

    def record_download(self, record: FileMeta) -> None:
        self.db.query(FileMeta).filter(FileMeta.id == record.id).update(
            {FileMeta.download_count: FileMeta.download_count + 1},
            synchronize_session=False,
        )
        self.db.commit()
