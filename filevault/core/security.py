# filevault/core/security.py
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from filevault.models.database import get_db
from filevault.models.user import User

REVIEWER_ROLES = ("admin", "sub-admin")


@dataclass(frozen=True)
class Principal:
    """The resolved caller: who they are and which role they hold."""

    id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_reviewer(self) -> bool:
        return self.role in REVIEWER_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(id=user.id, role=user.role or "user")


# --- helper: get current logged in user id from cookie ---
def get_current_user_id(request: Request) -> int | None:
    user_id = request.cookies.get("user_id")
    if not user_id:
        return None
    try:
        return int(user_id)
    except ValueError:
        return None


def get_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    user_id = get_current_user_id(request)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return Principal.from_user(user)


def require_roles(*roles: str):
    """Dependency factory rejecting principals whose role is not listed."""

    def _check(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return principal

    return _check
