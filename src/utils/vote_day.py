"""Calendar-day helpers for daily-limit voting.

Vote day policy:
- A vote day is a UTC calendar day, midnight to midnight.
- Two actions share a vote day when their creation times fall between the
  same pair of UTC midnights, whatever the voter's local time zone.

All inputs and outputs use UTC; naive datetimes are treated as UTC.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def vote_day(utc_now: datetime) -> date:
    """Return the UTC calendar date a vote cast at ``utc_now`` counts against."""
    return _as_utc(utc_now).date()


def vote_day_bounds(utc_now: datetime) -> tuple[datetime, datetime]:
    """Return the half-open ``[start, end)`` UTC interval of the vote day."""
    day = vote_day(utc_now)
    start = datetime(day.year, day.month, day.day, tzinfo=UTC)
    return start, start + timedelta(days=1)


def next_vote_day_start(utc_now: datetime) -> datetime:
    """Return when a rate-limited voter may act again."""
    return vote_day_bounds(utc_now)[1]
