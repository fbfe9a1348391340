"""
End-to-end tests for the import endpoints: start, batch upload, list, status, delete.
"""
import io
from datetime import datetime, timedelta, timezone

import pytest

from event_importer.client.api import ImportApiError
from event_importer.client.types import ImportPhase
from event_importer.client.worker_manager import CSVWorkerManager
from event_importer.core.config import settings
from event_importer.db.models import Event, ImportStatus, Organization
from event_importer.domain.imports.batch import EventInsertError, SqlEventStore
from tests.utils.umami_csv import build_csv, make_event, umami_row


def _recent(minutes_ago: int = 0) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)).strftime("%Y-%m-%d %H:%M:%S")


def _start(client, headers, site_id=1):
    response = client.post(f"/api/import-site/{site_id}", json={"fileName": "export.csv"}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["importId"]


def _upload(client, headers, import_id, events, *, last=False, site_id=1):
    return client.post(
        f"/api/batch-import-events/{site_id}/{import_id}",
        json={"events": events, "isLastBatch": last},
        headers=headers,
    )


def _record(db_session, import_id):
    db_session.expire_all()
    return db_session.query(ImportStatus).filter(ImportStatus.import_id == import_id).first()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_start_import_returns_allowed_range(client, auth_headers, db_session):
    response = client.post("/api/import-site/1", json={"fileName": "export.csv"}, headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    assert body["allowedDateRange"]["latestAllowedDate"] == today
    assert body["allowedDateRange"]["earliestAllowedDate"].endswith("-01")

    record = _record(db_session, body["importId"])
    assert record.status == "pending"
    assert record.file_name == "export.csv"


def test_start_import_without_body(client, auth_headers):
    response = client.post("/api/import-site/1", headers=auth_headers)
    assert response.status_code == 200


def test_start_import_requires_site_admin(client, outsider_headers):
    response = client.post("/api/import-site/1", headers=outsider_headers)
    assert response.status_code == 403


def test_full_import_flow(client, auth_headers, db_session):
    import_id = _start(client, auth_headers)

    first = _upload(client, auth_headers, import_id, [make_event(created_at=_recent(5)), make_event(created_at=_recent(4))])
    assert first.status_code == 200
    assert first.json() == {"success": True, "importedCount": 2, "message": "Imported 2 events"}

    record = _record(db_session, import_id)
    assert record.status == "processing"
    assert record.platform == "umami"
    assert record.imported_events == 2

    last = _upload(client, auth_headers, import_id, [make_event(created_at=_recent(3), event_type="2", event_name="signup")], last=True)
    assert last.status_code == 200
    assert last.json()["importedCount"] == 1

    record = _record(db_session, import_id)
    assert record.status == "completed"
    assert record.imported_events == 3
    assert record.completed_at is not None

    events = db_session.query(Event).filter(Event.import_id == import_id).order_by(Event.timestamp).all()
    assert len(events) == 3
    assert events[0].pathname == "/pricing"
    assert events[0].referrer == "https://google.com/search?q=acme"
    assert events[2].type == "custom_event"
    assert events[2].event_name == "signup"


@pytest.mark.parametrize("terminal, error", [("completed", "Import already completed"), ("failed", "Import has failed")])
def test_batches_for_finished_imports_are_rejected(client, auth_headers, db_session, terminal, error):
    import_id = _start(client, auth_headers)
    record = _record(db_session, import_id)
    record.status = terminal
    db_session.commit()

    response = _upload(client, auth_headers, import_id, [make_event(created_at=_recent())], last=True)

    assert response.status_code == 400
    assert response.json() == {"error": error}
    assert _record(db_session, import_id).status == terminal
    assert db_session.query(Event).count() == 0


def test_empty_last_batch_completes_import(client, auth_headers, db_session):
    import_id = _start(client, auth_headers)

    response = _upload(client, auth_headers, import_id, [], last=True)

    assert response.status_code == 200
    assert response.json() == {"success": True, "importedCount": 0, "message": "No events in batch"}
    assert _record(db_session, import_id).status == "completed"


@pytest.mark.parametrize(
    "payload",
    [
        {"events": []},
        {"events": "nope"},
        {"isLastBatch": True},
        {"events": [{"created_at": 123}]},
    ],
)
def test_malformed_bodies_are_rejected(client, auth_headers, db_session, payload):
    import_id = _start(client, auth_headers)

    response = client.post(f"/api/batch-import-events/1/{import_id}", json=payload, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "Validation error"
    assert _record(db_session, import_id).status == "pending"


def test_oversized_batch_is_rejected(client, auth_headers, monkeypatch):
    monkeypatch.setattr(settings, "import_max_batch_events", 5)
    import_id = _start(client, auth_headers)

    response = _upload(client, auth_headers, import_id, [make_event(created_at=_recent())] * 6)

    assert response.status_code == 400
    assert "at most 5 events" in response.json()["message"]


def test_non_numeric_site_and_bad_import_id(client, auth_headers):
    assert _upload(client, auth_headers, "6f1c2a56-3f8e-4bb0-9d1f-0d7f3c1b9a10", [make_event()], site_id="abc").status_code == 400
    assert _upload(client, auth_headers, "not-a-uuid", [make_event()]).status_code == 400


def test_unknown_import_is_404(client, auth_headers):
    response = _upload(client, auth_headers, "6f1c2a56-3f8e-4bb0-9d1f-0d7f3c1b9a10", [make_event()])
    assert response.status_code == 404
    assert response.json() == {"error": "Import not found"}


def test_import_from_another_site_is_rejected(client, auth_headers, db_session):
    import_id = _start(client, auth_headers, site_id=1)

    response = _upload(client, auth_headers, import_id, [make_event(created_at=_recent())], site_id=2)

    assert response.status_code == 400
    assert response.json() == {"error": "Import does not belong to this site"}


def test_outsider_cannot_upload(client, auth_headers, outsider_headers, db_session):
    import_id = _start(client, auth_headers)

    response = _upload(client, outsider_headers, import_id, [make_event(created_at=_recent())])

    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden"}
    assert db_session.query(Event).count() == 0


def test_unrecognised_events_leave_import_untouched(client, auth_headers, db_session):
    import_id = _start(client, auth_headers)

    response = _upload(client, auth_headers, import_id, [{"timestamp": "2024-01-01", "path": "/"}])

    assert response.status_code == 400
    assert response.json() == {"error": "Unable to detect platform from event structure"}
    record = _record(db_session, import_id)
    assert record.status == "pending"
    assert record.platform is None


def test_later_event_with_wrong_shape_rejects_whole_batch(client, auth_headers, db_session):
    import_id = _start(client, auth_headers)

    response = _upload(client, auth_headers, import_id, [make_event(created_at=_recent()), {"foo": "bar"}])

    assert response.status_code == 400
    assert response.json()["error"] == "Validation error"
    assert _record(db_session, import_id).status == "pending"
    assert db_session.query(Event).count() == 0


def test_quota_partially_then_fully_exceeded(client, auth_headers, db_session):
    db_session.query(Organization).filter(Organization.id == "org-1").update({"monthly_event_limit": 1})
    db_session.commit()
    import_id = _start(client, auth_headers)

    events = [make_event(created_at=_recent(1)), make_event(created_at=_recent(2)), make_event(created_at=_recent(3))]
    partial = _upload(client, auth_headers, import_id, events)
    assert partial.json() == {
        "success": True,
        "importedCount": 1,
        "message": "Imported 1 events (2 skipped due to quota)",
    }

    full = _upload(client, auth_headers, import_id, [make_event(created_at=_recent())], last=True)
    body = full.json()
    assert full.status_code == 200
    assert body["importedCount"] == 0
    assert body["quotaExceeded"] is True
    assert body["message"].startswith("All 1 events exceeded monthly quotas")

    record = _record(db_session, import_id)
    assert record.status == "completed"
    assert record.imported_events == 1


def test_events_outside_history_window_are_skipped(client, auth_headers, db_session):
    import_id = _start(client, auth_headers)
    old = (datetime.now(timezone.utc) - timedelta(days=800)).strftime("%Y-%m-%d %H:%M:%S")

    response = _upload(client, auth_headers, import_id, [make_event(created_at=old), make_event(created_at=_recent())])

    assert response.json()["importedCount"] == 1
    assert db_session.query(Event).count() == 1


def test_insert_failure_marks_import_failed(client, auth_headers, db_session, monkeypatch):
    import_id = _start(client, auth_headers)
    assert _upload(client, auth_headers, import_id, [make_event(created_at=_recent())]).status_code == 200

    def broken_insert(self, db, rows):
        raise EventInsertError("connection reset")

    monkeypatch.setattr(SqlEventStore, "insert", broken_insert)
    response = _upload(client, auth_headers, import_id, [make_event(created_at=_recent())])

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Failed to insert events", "message": "connection reset"}
    record = _record(db_session, import_id)
    assert record.status == "failed"
    assert record.imported_events == 1
    assert "connection reset" in record.error_message

    monkeypatch.undo()
    retry = _upload(client, auth_headers, import_id, [make_event(created_at=_recent())], last=True)
    assert retry.status_code == 400
    assert retry.json() == {"error": "Import has failed"}


def test_list_status_and_delete(client, auth_headers, outsider_headers, db_session):
    import_id = _start(client, auth_headers)
    _upload(client, auth_headers, import_id, [make_event(created_at=_recent())])

    listed = client.get("/api/get-site-imports/1", headers=auth_headers).json()
    assert listed["totalCount"] == 1
    assert listed["data"][0]["importId"] == import_id
    assert listed["data"][0]["status"] == "processing"

    status_body = client.get(f"/api/import-status/{import_id}", headers=auth_headers).json()
    assert status_body["data"]["importedEvents"] == 1
    assert client.get(f"/api/import-status/{import_id}", headers=outsider_headers).status_code == 403

    active = client.delete(f"/api/delete-site-import/1/{import_id}", headers=auth_headers)
    assert active.status_code == 400

    _upload(client, auth_headers, import_id, [], last=True)
    deleted = client.delete(f"/api/delete-site-import/1/{import_id}", headers=auth_headers)
    assert deleted.status_code == 200
    assert db_session.query(Event).count() == 0
    assert client.get(f"/api/import-status/{import_id}", headers=auth_headers).status_code == 404


class _TestClientUploader:
    """Uploads batches through the FastAPI test client, raising like ImportApiClient."""

    def __init__(self, client, headers):
        self.client = client
        self.headers = headers
        self.calls = []

    def upload_batch(self, site_id, import_id, events, *, is_last_batch=False):
        self.calls.append((len(events), is_last_batch))
        response = _upload(self.client, self.headers, import_id, events, last=is_last_batch, site_id=site_id)
        if response.status_code >= 400:
            raise ImportApiError(response.json().get("error", f"HTTP {response.status_code}"), status_code=response.status_code)
        return response.json()


def test_client_quota_stop_closes_server_import(client, auth_headers, db_session):
    db_session.query(Organization).filter(Organization.id == "org-1").update({"monthly_event_limit": 0})
    db_session.commit()
    started = client.post("/api/import-site/1", headers=auth_headers).json()
    import_id = started["importId"]
    allowed = started["allowedDateRange"]

    uploader = _TestClientUploader(client, auth_headers)
    manager = CSVWorkerManager(uploader, batch_size=2)
    csv_text = build_csv([umami_row(created_at=_recent(minutes)) for minutes in range(5)])

    final = manager.start_import(
        io.StringIO(csv_text),
        1,
        import_id,
        allowed["earliestAllowedDate"],
        allowed["latestAllowedDate"],
    )

    assert uploader.calls == [(2, False), (0, True)]
    assert final.status == ImportPhase.COMPLETED
    record = _record(db_session, import_id)
    assert record.status == "completed"
    assert record.imported_events == 0

    deleted = client.delete(f"/api/delete-site-import/1/{import_id}", headers=auth_headers)
    assert deleted.status_code == 200
