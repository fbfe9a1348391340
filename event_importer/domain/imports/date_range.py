"""
Date window checks shared by the CSV worker and the quota tracker.

Event timestamps arrive as ``yyyy-MM-dd HH:mm:ss`` strings in UTC. The allowed
window is expressed in whole days: the earliest day counts from its first
second, the latest day until its last.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Optional

EVENT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"


class InvalidDateRangeError(ValueError):
    """Raised when an allowed-date window cannot be parsed."""


def parse_event_timestamp(value: Any) -> Optional[datetime]:
    """Parse an event timestamp into an aware UTC datetime, or None when malformed."""
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.strptime(value.strip(), EVENT_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def parse_day(value: str) -> date:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except (TypeError, ValueError):
        raise InvalidDateRangeError(f"Invalid date: {value!r} (expected yyyy-MM-dd)")


@dataclass(frozen=True)
class AllowedDateRange:
    earliest_allowed_date: str
    latest_allowed_date: str

    def to_dict(self) -> dict:
        return {
            "earliestAllowedDate": self.earliest_allowed_date,
            "latestAllowedDate": self.latest_allowed_date,
        }


class DateRangeFilter:
    """Accepts timestamps that fall inside ``[earliest 00:00:00, latest 23:59:59.999999]``."""

    def __init__(self, earliest_allowed_date: str, latest_allowed_date: str):
        try:
            earliest_day = parse_day(earliest_allowed_date)
        except InvalidDateRangeError:
            raise InvalidDateRangeError(f"Invalid earliest allowed date: {earliest_allowed_date}")
        try:
            latest_day = parse_day(latest_allowed_date)
        except InvalidDateRangeError:
            raise InvalidDateRangeError(f"Invalid latest allowed date: {latest_allowed_date}")

        self.earliest = datetime.combine(earliest_day, time.min, tzinfo=timezone.utc)
        self.latest = datetime.combine(latest_day, time.max, tzinfo=timezone.utc)

    @classmethod
    def from_range(cls, allowed: AllowedDateRange) -> "DateRangeFilter":
        return cls(allowed.earliest_allowed_date, allowed.latest_allowed_date)

    def accepts(self, created_at: Any) -> bool:
        timestamp = parse_event_timestamp(created_at)
        if timestamp is None:
            return False
        return self.earliest <= timestamp <= self.latest

    def __repr__(self) -> str:
        return f"DateRangeFilter({self.earliest.date()} .. {self.latest.date()})"
