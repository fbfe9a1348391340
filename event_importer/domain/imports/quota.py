"""
Per-organization import quota.

An organization may import historical events for a trailing window of
calendar months. Each month has a capacity (the organization's monthly event
limit) and a usage (events already stored for that month). A tracker is built
for a single request: it seeds usage from one consistent read and then
decrements its own in-memory remaining capacity as events are admitted, so a
month filling up partway through a batch rejects the rest of that batch's
events for the month.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import extract, func
from sqlalchemy.orm import Session

from event_importer.core.config import settings
from event_importer.db.models import Event, Organization, Site
from event_importer.domain.imports.date_range import DATE_FORMAT, AllowedDateRange, parse_event_timestamp

logger = logging.getLogger(__name__)

MonthKey = Tuple[int, int]


@dataclass(frozen=True)
class QuotaSummary:
    months_at_capacity: int
    total_months_in_window: int


def month_window(now: datetime, months: int) -> List[MonthKey]:
    """Return ``months`` (year, month) keys ending at ``now``'s month, oldest first."""
    keys = []
    year, month = now.year, now.month
    for _ in range(months):
        keys.append((year, month))
        month -= 1
        if month == 0:
            year -= 1
            month = 12
    keys.reverse()
    return keys


class ImportQuotaTracker:
    def __init__(
        self,
        monthly_usage: Mapping[MonthKey, int],
        monthly_limit: Optional[int],
        *,
        window_months: int = 12,
        now: Optional[datetime] = None,
    ):
        if window_months < 1:
            raise ValueError("window_months must be at least 1")

        self.now = now or datetime.now(timezone.utc)
        self.monthly_limit = monthly_limit
        self.window: List[MonthKey] = month_window(self.now, window_months)
        # None means unlimited.
        self._remaining: Dict[MonthKey, Optional[int]] = {}
        for key in self.window:
            if monthly_limit is None:
                self._remaining[key] = None
            else:
                self._remaining[key] = max(monthly_limit - int(monthly_usage.get(key, 0)), 0)

    @classmethod
    def create(
        cls,
        db: Session,
        organization_id: str,
        *,
        window_months: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> "ImportQuotaTracker":
        """Seed a tracker from the organization's stored events and plan limit."""
        window_months = window_months or settings.import_history_months
        now = now or datetime.now(timezone.utc)

        organization = db.query(Organization).filter(Organization.id == organization_id).first()
        monthly_limit = settings.default_monthly_event_limit
        if organization is not None and organization.monthly_event_limit is not None:
            monthly_limit = organization.monthly_event_limit

        usage: Dict[MonthKey, int] = {}
        if monthly_limit is not None:
            usage = load_monthly_usage(db, organization_id, month_window(now, window_months)[0])

        tracker = cls(usage, monthly_limit, window_months=window_months, now=now)
        logger.debug(
            "Quota tracker for organization %s: limit=%s, window=%s..%s",
            organization_id,
            monthly_limit,
            tracker.window[0],
            tracker.window[-1],
        )
        return tracker

    def _month_key(self, created_at: Any) -> Optional[MonthKey]:
        timestamp = parse_event_timestamp(created_at)
        if timestamp is None:
            return None
        key = (timestamp.year, timestamp.month)
        if key not in self._remaining:
            return None
        return key

    def can_import_event(self, created_at: Any) -> bool:
        key = self._month_key(created_at)
        if key is None:
            return False

        remaining = self._remaining[key]
        if remaining is None:
            return True
        if remaining <= 0:
            return False
        self._remaining[key] = remaining - 1
        return True

    def remaining_for_month(self, year: int, month: int) -> Optional[int]:
        return self._remaining.get((year, month), 0)

    def get_summary(self) -> QuotaSummary:
        at_capacity = sum(1 for remaining in self._remaining.values() if remaining is not None and remaining <= 0)
        return QuotaSummary(months_at_capacity=at_capacity, total_months_in_window=len(self.window))

    def get_allowed_date_range(self) -> AllowedDateRange:
        """
        Dates the client should bother uploading: from the first day of the
        oldest month that still has capacity through today.
        """
        earliest_key = self.window[0]
        for key in self.window:
            remaining = self._remaining[key]
            if remaining is None or remaining > 0:
                earliest_key = key
                break

        earliest = date(earliest_key[0], earliest_key[1], 1)
        return AllowedDateRange(
            earliest_allowed_date=earliest.strftime(DATE_FORMAT),
            latest_allowed_date=self.now.date().strftime(DATE_FORMAT),
        )


def load_monthly_usage(db: Session, organization_id: str, since: MonthKey) -> Dict[MonthKey, int]:
    """Count stored events per calendar month for every site of the organization."""
    year_col = extract("year", Event.timestamp)
    month_col = extract("month", Event.timestamp)
    window_start = datetime(since[0], since[1], 1)

    rows = (
        db.query(year_col.label("year"), month_col.label("month"), func.count(Event.id))
        .join(Site, Site.site_id == Event.site_id)
        .filter(Site.organization_id == organization_id, Event.timestamp >= window_start)
        .group_by(year_col, month_col)
        .all()
    )
    return {(int(year), int(month)): int(count) for year, month, count in rows}
