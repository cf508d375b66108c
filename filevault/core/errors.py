"""
filevault error hierarchy.

Every failure the storage engine reports carries a stable ``kind`` that the
HTTP boundary maps to a status code, plus a human-readable message and
whatever context the raising site attached.

Hierarchy:
    FileVaultError
    ├── NotFoundError           folder/file/user absent
    ├── ConflictError           path/name collision, concurrent mutation
    ├── AccessDeniedError       capability check failed
    ├── InvalidError            malformed name, missing field, bad MIME type
    ├── PathViolationError      resolved path escapes the storage root
    └── StorageFailureError     filesystem operation failed
"""

from __future__ import annotations

from typing import Any, Dict


class FileVaultError(Exception):
    """Base error for all storage engine failures."""

    kind: str = "error"
    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(message)

    def to_dict(self, include_context: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if include_context and self.context:
            d["context"] = {k: str(v) for k, v in self.context.items()}
        return d

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.kind}: {self.message})"


class NotFoundError(FileVaultError):
    kind = "not_found"
    status_code = 404


class ConflictError(FileVaultError):
    kind = "conflict"
    status_code = 409


class AccessDeniedError(FileVaultError):
    """
    Capability check failed.
    Carries the principal and the permission that was required when known.
    """

    kind = "access_denied"
    status_code = 403

    def __init__(self, message: str, **context: Any):
        self.user_id = context.get("user_id")
        self.required_permission = context.get("required_permission")
        super().__init__(message, **context)


class InvalidError(FileVaultError):
    kind = "invalid"
    status_code = 400


class PathViolationError(FileVaultError):
    """Resolved path escapes the storage root. Never retried."""

    kind = "path_violation"
    status_code = 400


class StorageFailureError(FileVaultError):
    kind = "storage_failure"
    status_code = 500
