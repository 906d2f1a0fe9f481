from __future__ import annotations

from dataclasses import dataclass

from src.db.records import ROLE_ADMIN, ROLES
from src.engine.errors import ForbiddenError, UnauthorizedError, ValidationError


@dataclass(frozen=True)
class Identity:
    """An already-verified caller, as supplied by the identity collaborator."""

    user_id: str
    role: str

    def __post_init__(self) -> None:
        if not str(self.user_id).strip():
            raise ValidationError("Identity requires a user id.", field="user_id")
        if self.role not in ROLES:
            raise ValidationError(f"Unknown role '{self.role}'.", field="role")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def require_identity(actor: Identity | None) -> Identity:
    if actor is None:
        raise UnauthorizedError()
    return actor


def require_admin(actor: Identity | None) -> Identity:
    identity = require_identity(actor)
    if not identity.is_admin:
        raise ForbiddenError("Admin role required.")
    return identity
