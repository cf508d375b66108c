"""
Approval gate for file versions.

The status column and its annotation columns are only ever read and written
together, through one of three states:

    Pending
    Approved(by, at)
    Disapproved(by, at, reason)

Writing a state clears the columns of the other branch, so a record cannot be
approved and still carry a rejection reason.

Transitions: pending → approved, pending → disapproved, and re-review in
both directions between approved and disapproved.

Visibility: approved files are visible to everybody with folder access;
pending and disapproved files only to their uploader, their owner, and
reviewers (admin / sub-admin).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import or_

from filevault.core.errors import InvalidError
from filevault.core.security import Principal
from filevault.models.file import FileMeta


@dataclass(frozen=True)
class Pending:
    status = "pending"


@dataclass(frozen=True)
class Approved:
    by: int
    at: datetime
    status = "approved"


@dataclass(frozen=True)
class Disapproved:
    by: int
    at: datetime
    reason: str
    status = "disapproved"


ApprovalState = Union[Pending, Approved, Disapproved]


def approval_state(record: FileMeta) -> ApprovalState:
    if record.approval_status == "approved":
        return Approved(by=record.approved_by_id, at=record.approved_at)
    if record.approval_status == "disapproved":
        return Disapproved(
            by=record.rejected_by_id,
            at=record.rejected_at,
            reason=record.disapproval_reason or "",
        )
    return Pending()


def apply_state(record: FileMeta, state: ApprovalState) -> FileMeta:
    record.approval_status = state.status
    record.approved_by_id = state.by if isinstance(state, Approved) else None
    record.approved_at = state.at if isinstance(state, Approved) else None
    record.rejected_by_id = state.by if isinstance(state, Disapproved) else None
    record.rejected_at = state.at if isinstance(state, Disapproved) else None
    record.disapproval_reason = state.reason if isinstance(state, Disapproved) else None
    return record


def initial_state(uploader: Principal) -> ApprovalState:
    """Reviewers' uploads are approved on arrival; everybody else waits."""
    if uploader.is_reviewer:
        return Approved(by=uploader.id, at=datetime.utcnow())
    return Pending()


def approve(record: FileMeta, by: int) -> FileMeta:
    return apply_state(record, Approved(by=by, at=datetime.utcnow()))


def disapprove(record: FileMeta, by: int, reason: Optional[str]) -> FileMeta:
    reason = (reason or "").strip()
    if not reason:
        raise InvalidError("Reason is required when disapproving a file")
    return apply_state(record, Disapproved(by=by, at=datetime.utcnow(), reason=reason))


def set_approval(record: FileMeta, status: str, by: int, reason: Optional[str] = None) -> FileMeta:
    if status == "approved":
        return approve(record, by)
    if status == "disapproved":
        return disapprove(record, by, reason)
    raise InvalidError('Invalid status. Must be "approved" or "disapproved"', status=status)


def can_view(record: FileMeta, principal: Principal) -> bool:
    return (
        record.approval_status == "approved"
        or principal.is_reviewer
        or record.uploaded_by_id == principal.id
        or record.owner_id == principal.id
    )


def visibility_clause(principal: Principal):
    """SQL filter equivalent of ``can_view``."""
    if principal.is_reviewer:
        return FileMeta.id.isnot(None)
    return or_(
        FileMeta.approval_status == "approved",
        FileMeta.uploaded_by_id == principal.id,
        FileMeta.owner_id == principal.id,
    )
