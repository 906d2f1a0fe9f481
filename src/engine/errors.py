"""Error kinds raised by the voting core.

Every error is terminal for the call that raised it. The request layer maps
``code`` to a response and shows ``message``; nothing here is retried.
"""

from __future__ import annotations


class VotingError(Exception):
    """Base class for all voting-core errors."""

    code = "VOTING_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(VotingError, ValueError):
    """Malformed input: a missing field or an out-of-range vote value."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(VotingError):
    """The referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: str, message: str | None = None) -> None:
        super().__init__(message or f"{entity} '{identifier}' not found")
        self.entity = entity
        self.identifier = identifier


class ConflictError(VotingError):
    """A lifecycle invariant would be violated, e.g. a second open session."""

    code = "CONFLICT"


class NoOpenSessionError(VotingError):
    code = "NO_OPEN_SESSION"

    def __init__(self, message: str = "No vote session is open.") -> None:
        super().__init__(message)


class RateLimitedError(VotingError):
    """Daily-limit mode: the user already acted in this session today."""

    code = "RATE_LIMITED"


class UnauthorizedError(VotingError):
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required.") -> None:
        super().__init__(message)


class ForbiddenError(VotingError):
    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden.") -> None:
        super().__init__(message)


class CorruptRecordError(VotingError):
    """A stored row failed validation when read back."""

    code = "CORRUPT_RECORD"
