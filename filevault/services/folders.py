"""
Folder tree manager for the hierarchical namespace.

Folders live in the database as nodes addressed by id; the physical tree
under the storage root mirrors their ``path``. Every mutation changes the
filesystem first and commits metadata second, so a crash in between leaves
an orphaned directory rather than a record without its data.

Rename/move rewrites ``path`` and ``depth`` of every transitive descendant
with an explicit queue (no recursion), visiting each descendant exactly once,
and rewrites the stored path of every file under the moved subtree.

Deleting a folder orphans its children without touching their paths; an
orphaned subtree is re-rooted by ``heal`` before anything is created in it
or moved within it.

Subtree mutations are serialized by an in-process lock. Two processes
sharing the same database can still interleave; the unique constraint on
``folders.path`` turns the worst of those races into a ConflictError.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from filevault.core.errors import (
    AccessDeniedError,
    ConflictError,
    FileVaultError,
    InvalidError,
    NotFoundError,
)
from filevault.core.security import Principal
from filevault.models.file import FileMeta
from filevault.models.folder import PERMISSIONS, Folder, FolderAccess
from filevault.models.user import User
from filevault.services import approval
from filevault.services.storage import StorageAdapter

logger = logging.getLogger(__name__)

FOLDER_NAME_RE = re.compile(r"^[\w\-]+$")

# Distinguishes "parent not given" from "move to root" (None)
UNSET: Any = object()

_tree_lock = threading.RLock()


def join_path(parent_path: Optional[str], name: str) -> str:
    return f"{parent_path}/{name}" if parent_path else name


def validate_folder_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidError("Folder name is required")
    if not FOLDER_NAME_RE.match(name):
        raise InvalidError(f"'{name}' contains invalid characters", name=name)
    return name


class FolderManager:
    def __init__(self, db: Session, storage: StorageAdapter):
        self.db = db
        self.storage = storage

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get(self, folder_id: int) -> Folder:
        folder = self.db.get(Folder, folder_id)
        if not folder:
            raise NotFoundError("Folder not found", folder_id=folder_id)
        return folder

    def children(self, folder_id: int) -> List[Folder]:
        return (
            self.db.query(Folder)
            .filter(Folder.parent_id == folder_id)
            .order_by(Folder.name)
            .all()
        )

    def list(self, principal: Principal, parent_id: Any = UNSET) -> List[Folder]:
        """Folders visible to ``principal``, optionally only those under ``parent_id``."""
        query = self.db.query(Folder)
        if parent_id is not UNSET:
            query = query.filter(Folder.parent_id == parent_id) if parent_id is not None \
                else query.filter(Folder.parent_id.is_(None))

        if not principal.is_admin:
            query = query.filter(
                or_(
                    Folder.created_by_id == principal.id,
                    Folder.access.any(FolderAccess.user_id == principal.id),
                    Folder.is_system_folder.is_(True),
                )
            )
        return query.order_by(Folder.path).all()

    def contents(self, folder_id: int, principal: Principal) -> Dict[str, Any]:
        """Folder with its child folders and the files ``principal`` may see."""
        folder = self.get(folder_id)
        self.require_access(folder, principal)

        files = (
            self.db.query(FileMeta)
            .filter(
                FileMeta.folder_id == folder.id,
                FileMeta.is_deleted.is_(False),
                approval.visibility_clause(principal),
            )
            .order_by(FileMeta.uploaded_at.desc(), FileMeta.id.desc())
            .all()
        )
        return {
            "folder": folder,
            "child_folders": self.children(folder.id),
            "files": files,
            "file_count": len(files),
            "permissions": {
                "can_upload": self.can_write(folder, principal),
                "can_approve": principal.is_reviewer,
            },
        }

    # -------------------------------------------------------------------
    # Access evaluation
    # -------------------------------------------------------------------

    @staticmethod
    def has_access(folder: Folder, principal: Principal) -> bool:
        return (
            principal.is_admin
            or folder.created_by_id == principal.id
            or folder.access_for(principal.id) is not None
            or bool(folder.is_system_folder)
        )

    @staticmethod
    def can_write(folder: Folder, principal: Principal) -> bool:
        if principal.is_admin or folder.created_by_id == principal.id:
            return True
        entry = folder.access_for(principal.id)
        return entry is not None and entry.permission in ("write", "admin")

    def require_access(self, folder: Folder, principal: Principal, write: bool = False) -> None:
        allowed = self.can_write(folder, principal) if write else self.has_access(folder, principal)
        if not allowed:
            raise AccessDeniedError(
                "Write access required" if write else "Access denied",
                user_id=principal.id,
                folder_id=folder.id,
                required_permission="write" if write else "read",
            )

    # -------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------

    def create(
        self,
        name: str,
        creator: Principal,
        parent_id: Optional[int] = None,
        system: bool = False,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Folder:
        name = validate_folder_name(name)
        with _tree_lock:
            parent = self.heal(self.get(parent_id)) if parent_id is not None else None

            path = join_path(parent.path if parent else None, name)
            if self._path_taken(path):
                raise ConflictError("Folder path already exists", path=path)

            self.storage.create_directory(path)

            folder = Folder(
                name=name,
                path=path,
                parent_id=parent.id if parent else None,
                depth=parent.depth + 1 if parent else 0,
                is_system_folder=system,
                meta=dict(metadata or {}),
                created_by_id=creator.id,
            )
            self.db.add(folder)
            self._commit("Folder path already exists", path=path)
            self.db.refresh(folder)

        logger.info(f"Created folder '{path}' (id={folder.id}, depth={folder.depth})")
        return folder

    def ensure_system_folder(self, name: str, creator: Principal) -> Folder:
        """Create a root-level system folder once; later calls return it."""
        name = validate_folder_name(name)
        existing = self.db.query(Folder).filter(Folder.path == name).first()
        if existing:
            self.storage.create_directory(existing.path)
            return existing
        return self.create(name, creator, system=True)

    # -------------------------------------------------------------------
    # Rename / move
    # -------------------------------------------------------------------

    def update(
        self,
        folder_id: int,
        name: Optional[str] = None,
        parent_id: Any = UNSET,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Folder:
        """
        Rename and/or re-parent a folder.

        ``parent_id=None`` moves the folder to the root; leaving it UNSET
        keeps the current parent.
        """
        with _tree_lock:
            folder = self.heal(self.get(folder_id))
            new_name = validate_folder_name(name) if name is not None else folder.name

            if parent_id is UNSET:
                new_parent = self.db.get(Folder, folder.parent_id) if folder.parent_id else None
            elif parent_id is None:
                new_parent = None
            else:
                new_parent = self.get(parent_id)
                if self._is_self_or_descendant(new_parent, folder):
                    raise ConflictError(
                        "Cannot move folder into itself or its children",
                        folder_id=folder.id, parent_id=new_parent.id,
                    )
                self.heal(new_parent)

            if metadata is not None:
                folder.meta = dict(metadata)

            old_path = folder.path
            new_path = join_path(new_parent.path if new_parent else None, new_name)
            new_parent_id = new_parent.id if new_parent else None

            if new_path == old_path and new_parent_id == folder.parent_id:
                self._commit("Folder update failed", folder_id=folder.id)
                return folder

            if new_path != old_path and self._path_taken(new_path, exclude_id=folder.id):
                raise ConflictError("Folder path already exists", path=new_path)

            moved = False
            if new_path != old_path:
                self.storage.move_directory(old_path, new_path)
                moved = True

            try:
                folder.name = new_name
                folder.parent_id = new_parent_id
                folder.path = new_path
                folder.depth = new_parent.depth + 1 if new_parent else 0
                folder.updated_at = datetime.utcnow()
                rewritten = self._propagate(folder)
                self._commit("Folder path already exists", path=new_path)
            except Exception:
                self.db.rollback()
                if moved:
                    self._undo_move(new_path, old_path)
                raise

            self.db.refresh(folder)
            logger.info(
                f"Moved folder {folder.id}: '{old_path}' -> '{new_path}' "
                f"({rewritten} descendants rewritten)"
            )
            return folder

    def _propagate(self, root: Folder) -> int:
        """Rewrite path/depth below ``root``; returns the number of descendants visited."""
        visited = {root.id}
        queue = deque([root])
        self._rewrite_file_paths(root)
        count = 0

        while queue:
            parent = queue.popleft()
            for child in self.db.query(Folder).filter(Folder.parent_id == parent.id).all():
                if child.id in visited:
                    logger.warning(f"Cycle detected at folder {child.id}; skipping")
                    continue
                visited.add(child.id)
                child.path = join_path(parent.path, child.name)
                child.depth = parent.depth + 1
                self._rewrite_file_paths(child)
                queue.append(child)
                count += 1
        return count

    def _rewrite_file_paths(self, folder: Folder) -> None:
        for record in self.db.query(FileMeta).filter(FileMeta.folder_id == folder.id).all():
            record.path = join_path(folder.path, record.filename)

    def _is_self_or_descendant(self, candidate: Folder, folder: Folder) -> bool:
        if candidate.id == folder.id:
            return True
        if candidate.path == folder.path or candidate.path.startswith(folder.path + "/"):
            return True

        # walk up by id as well; stored paths of orphans may be stale
        seen = set()
        current = candidate
        while current is not None and current.parent_id is not None:
            if current.parent_id == folder.id:
                return True
            if current.parent_id in seen:
                break
            seen.add(current.parent_id)
            current = self.db.get(Folder, current.parent_id)
        return False

    def _undo_move(self, new_path: str, old_path: str) -> None:
        try:
            self.storage.move_directory(new_path, old_path)
        except FileVaultError:
            logger.exception(f"Could not restore directory '{new_path}' -> '{old_path}'")

    # -------------------------------------------------------------------
    # Orphan paths
    # -------------------------------------------------------------------

    def heal(self, folder: Folder) -> Folder:
        """
        Re-root the orphaned top of ``folder``'s chain if its paths are stale.

        Deleting a folder only clears ``parent_id`` on its children, so an
        orphaned subtree keeps paths under the removed folder until it is next
        written to. Anything that builds a path from a folder calls this first.
        """
        with _tree_lock:
            top, seen = folder, {folder.id}
            while top.parent_id is not None and top.parent_id not in seen:
                seen.add(top.parent_id)
                parent = self.db.get(Folder, top.parent_id)
                if parent is None:
                    break
                top = parent
            if top.parent_id is not None or top.path == top.name:
                return folder

            old_path, new_path = top.path, top.name
            if self._path_taken(new_path, exclude_id=top.id):
                raise ConflictError(
                    "Orphaned folder cannot be re-rooted, path already exists",
                    path=new_path, folder_id=top.id,
                )

            self.storage.move_directory(old_path, new_path)
            try:
                top.path = new_path
                top.depth = 0
                top.updated_at = datetime.utcnow()
                rewritten = self._propagate(top)
                self._commit("Folder path already exists", path=new_path)
            except Exception:
                self.db.rollback()
                self._undo_move(new_path, old_path)
                raise

            subtree = (
                self.db.query(Folder)
                .filter(or_(Folder.path == new_path, Folder.path.startswith(new_path + "/", autoescape=True)))
                .all()
            )
            for member in subtree:
                self.storage.create_directory(member.path)

        logger.info(
            f"Re-rooted orphaned folder {top.id}: '{old_path}' -> '{new_path}' "
            f"({rewritten} descendants rewritten)"
        )
        return folder

    # -------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------

    def delete(
        self,
        folder_id: int,
        on_delete: Optional[Callable[[Folder], None]] = None,
    ) -> List[Folder]:
        """
        Delete a folder: physical directory first, then the record.

        Direct children are orphaned (``parent_id = None``), never deleted.
        ``on_delete`` runs inside the same transaction before the record goes
        away, which is where callers remove the folder's file records.
        Returns the orphaned children.
        """
        with _tree_lock:
            folder = self.get(folder_id)
            path = folder.path
            if folder.is_system_folder:
                raise AccessDeniedError(
                    "System folder cannot be deleted", folder_id=folder.id
                )

            self.storage.delete_directory(path)

            orphans = self.db.query(Folder).filter(Folder.parent_id == folder.id).all()
            for child in orphans:
                child.parent_id = None

            if on_delete is not None:
                on_delete(folder)

            self.db.delete(folder)
            self._commit("Folder delete failed", folder_id=folder_id)

        logger.info(f"Deleted folder {folder_id} ('{path}'), orphaned {len(orphans)} children")
        return orphans

    # -------------------------------------------------------------------
    # Access set
    # -------------------------------------------------------------------

    def grant_access(self, folder_id: int, user_id: int, permission: str) -> Folder:
        if permission not in PERMISSIONS:
            raise InvalidError(
                f"Invalid permission '{permission}'. Must be one of {', '.join(PERMISSIONS)}"
            )
        folder = self.get(folder_id)
        if not self.db.get(User, user_id):
            raise NotFoundError("User not found", user_id=user_id)

        entry = folder.access_for(user_id)
        if entry:
            entry.permission = permission
            entry.granted_at = datetime.utcnow()
        else:
            folder.access.append(FolderAccess(user_id=user_id, permission=permission))

        self._commit("Failed to update access", folder_id=folder_id)
        self.db.refresh(folder)
        return folder

    def revoke_access(self, folder_id: int, user_id: int) -> Folder:
        folder = self.get(folder_id)
        entry = folder.access_for(user_id)
        if entry:
            folder.access.remove(entry)
            self._commit("Failed to remove access", folder_id=folder_id)
            self.db.refresh(folder)
        return folder

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _path_taken(self, path: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(Folder.id).filter(Folder.path == path)
        if exclude_id is not None:
            query = query.filter(Folder.id != exclude_id)
        return query.first() is not None

    def _commit(self, conflict_message: str, **context: Any) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(conflict_message, **context) from e
