"""Typed records returned by the stores.

Rows are validated here, at the store boundary, so the rest of the code never
handles raw driver rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.engine.errors import CorruptRecordError

STATUS_SCHEDULED = "scheduled"
STATUS_OPEN = "open"
STATUS_CLOSED = "closed"
SESSION_STATUSES = (STATUS_SCHEDULED, STATUS_OPEN, STATUS_CLOSED)

VOTE_VALUES = (-1, 0, 1)

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise CorruptRecordError(f"Unreadable timestamp: {value!r}")


def _required_timestamp(row: dict[str, Any], key: str) -> datetime:
    parsed = parse_timestamp(row.get(key))
    if parsed is None:
        raise CorruptRecordError(f"Missing timestamp column '{key}'")
    return parsed


def _vote_value(row: dict[str, Any]) -> int:
    value = int(row["value"])
    if value not in VOTE_VALUES:
        raise CorruptRecordError(f"Vote value out of range: {value}")
    return value


@dataclass(frozen=True)
class Session:
    id: str
    title: str
    starts_at: datetime
    ends_at: datetime
    status: str
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == STATUS_CLOSED

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Session:
        status = str(row["status"])
        if status not in SESSION_STATUSES:
            raise CorruptRecordError(f"Unknown session status: {status}")
        return cls(
            id=str(row["id"]),
            title=str(row["title"]),
            starts_at=_required_timestamp(row, "starts_at"),
            ends_at=_required_timestamp(row, "ends_at"),
            status=status,
            created_at=_required_timestamp(row, "created_at"),
            updated_at=_required_timestamp(row, "updated_at"),
            closed_at=parse_timestamp(row.get("closed_at")),
        )


@dataclass(frozen=True)
class Position:
    session_id: str
    user_id: str
    value: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Position:
        return cls(
            session_id=str(row["session_id"]),
            user_id=str(row["user_id"]),
            value=_vote_value(row),
            created_at=_required_timestamp(row, "created_at"),
            updated_at=_required_timestamp(row, "updated_at"),
        )


@dataclass(frozen=True)
class Action:
    id: int
    session_id: str
    user_id: str
    value: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Action:
        return cls(
            id=int(row["id"]),
            session_id=str(row["session_id"]),
            user_id=str(row["user_id"]),
            value=_vote_value(row),
            created_at=_required_timestamp(row, "created_at"),
        )


@dataclass(frozen=True)
class User:
    id: str
    email: str
    role: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> User:
        role = str(row["role"])
        if role not in ROLES:
            raise CorruptRecordError(f"Unknown role: {role}")
        return cls(
            id=str(row["id"]),
            email=str(row["email"]),
            role=role,
            created_at=_required_timestamp(row, "created_at"),
        )
