from datetime import datetime, timezone

import pytest

from event_importer.core.config import settings
from event_importer.db.models import Event, Organization
from event_importer.domain.imports.quota import ImportQuotaTracker, QuotaSummary, load_monthly_usage, month_window

NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def test_month_window_ends_at_current_month_and_crosses_years():
    window = month_window(NOW, 12)
    assert window[0] == (2023, 7)
    assert window[-1] == (2024, 6)
    assert len(window) == 12


def test_zero_capacity_month_rejected_regardless_of_order():
    march = ["2024-03-01 00:00:00", "2024-03-31 23:59:59", "2024-03-15 10:00:00"]
    april = ["2024-04-02 00:00:00", "2024-04-20 18:00:00"]
    interleaved = [march[0], april[0], march[1], april[1], march[2]]

    for batch in (interleaved, list(reversed(interleaved))):
        tracker = ImportQuotaTracker({(2024, 3): 100}, 100, window_months=12, now=NOW)
        decisions = {created_at: tracker.can_import_event(created_at) for created_at in batch}
        assert all(decisions[created_at] is False for created_at in march)
        assert all(decisions[created_at] is True for created_at in april)


def test_capacity_exhausted_partway_through_a_batch():
    tracker = ImportQuotaTracker({(2024, 5): 8}, 10, now=NOW)

    results = [tracker.can_import_event("2024-05-10 00:00:00") for _ in range(4)]

    assert results == [True, True, False, False]
    assert tracker.remaining_for_month(2024, 5) == 0


@pytest.mark.parametrize(
    "created_at",
    ["2023-06-30 23:59:59", "2024-07-01 00:00:00", "2010-01-01 00:00:00", "", "2024-05-10", None],
)
def test_outside_window_or_unparseable_rejected(created_at):
    tracker = ImportQuotaTracker({}, None, now=NOW)
    assert tracker.can_import_event(created_at) is False


def test_unlimited_capacity_still_enforces_window():
    tracker = ImportQuotaTracker({(2024, 1): 10_000_000}, None, now=NOW)
    assert all(tracker.can_import_event("2024-01-05 00:00:00") for _ in range(100))
    assert tracker.can_import_event("2023-06-05 00:00:00") is False
    assert tracker.get_summary() == QuotaSummary(months_at_capacity=0, total_months_in_window=12)


def test_summary_counts_months_at_capacity():
    usage = {(2024, 1): 50, (2024, 2): 60, (2024, 3): 10}
    tracker = ImportQuotaTracker(usage, 50, now=NOW)

    assert tracker.get_summary() == QuotaSummary(months_at_capacity=2, total_months_in_window=12)


def test_allowed_date_range_starts_at_first_month_with_capacity():
    usage = {(2023, 7): 5, (2023, 8): 5}
    tracker = ImportQuotaTracker(usage, 5, now=NOW)

    allowed = tracker.get_allowed_date_range()

    assert allowed.earliest_allowed_date == "2023-09-01"
    assert allowed.latest_allowed_date == "2024-06-15"


def test_allowed_date_range_falls_back_to_window_start_when_full():
    usage = {key: 1 for key in month_window(NOW, 3)}
    tracker = ImportQuotaTracker(usage, 1, window_months=3, now=NOW)
    assert tracker.get_allowed_date_range().earliest_allowed_date == "2024-04-01"


def test_create_seeds_usage_from_stored_events(db_session, seeded, monkeypatch):
    monkeypatch.setattr(settings, "default_monthly_event_limit", 1000)
    db_session.query(Organization).filter(Organization.id == "org-1").update({"monthly_event_limit": 3})
    db_session.add_all(
        [
            Event(site_id=1, timestamp=datetime(2024, 5, 1, 10), type="pageview"),
            Event(site_id=2, timestamp=datetime(2024, 5, 20, 10), type="pageview"),
            Event(site_id=1, timestamp=datetime(2024, 4, 3, 10), type="pageview"),
            Event(site_id=1, timestamp=datetime(2020, 1, 1, 10), type="pageview"),
        ]
    )
    db_session.commit()

    usage = load_monthly_usage(db_session, "org-1", (2023, 7))
    assert usage == {(2024, 5): 2, (2024, 4): 1}

    tracker = ImportQuotaTracker.create(db_session, "org-1", now=NOW)
    assert tracker.monthly_limit == 3
    assert tracker.remaining_for_month(2024, 5) == 1
    assert tracker.remaining_for_month(2024, 4) == 2
    assert tracker.remaining_for_month(2024, 6) == 3


def test_create_uses_default_limit_when_organization_has_none(db_session, seeded, monkeypatch):
    monkeypatch.setattr(settings, "default_monthly_event_limit", 7)
    tracker = ImportQuotaTracker.create(db_session, "org-1", now=NOW)
    assert tracker.monthly_limit == 7

    monkeypatch.setattr(settings, "default_monthly_event_limit", None)
    tracker = ImportQuotaTracker.create(db_session, "org-1", now=NOW)
    assert tracker.monthly_limit is None
