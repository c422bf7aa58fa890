from __future__ import annotations

from sqlalchemy.orm import Session

from makerspace.models.shop_models import User, UserRole
from makerspace.services.eligibility_service import load_active_user
from makerspace.services.errors import AuthorizationError


DEFAULT_ROLE = UserRole.MEMBER.value

RIGHTS_BY_ROLE = {
    "admin": {
        "manageMachines": True,
        "manageCheckouts": True,
        "manageAvailability": True,
        "reviewReservations": True,
        "manageSettings": True,
    },
    "manager": {
        "manageMachines": False,
        "manageCheckouts": True,
        "manageAvailability": True,
        "reviewReservations": True,
        "manageSettings": False,
    },
    "member": {
        "manageMachines": False,
        "manageCheckouts": False,
        "manageAvailability": False,
        "reviewReservations": False,
        "manageSettings": False,
    },
}


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in RIGHTS_BY_ROLE:
        return role
    return DEFAULT_ROLE


def rights_for(user: User) -> dict[str, bool]:
    return dict(RIGHTS_BY_ROLE[normalize_role(user.Role)])


def is_admin(user: User) -> bool:
    return normalize_role(user.Role) == UserRole.ADMIN.value


def require_right(db: Session, user_id: int, right: str, message: str | None = None) -> User:
    """Load an active actor and ensure their role grants ``right``."""
    user = load_active_user(db, user_id)
    if not rights_for(user).get(right):
        raise AuthorizationError(message or f"Missing permission: {right}")
    return user
