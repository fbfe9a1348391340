"""
Batch ingestion for client-driven imports.

The client parses the export file itself and uploads records in sequential
batches. Every batch goes through the same steps:

1. Check the import session (exists, belongs to the site, not finished).
2. Resolve the source platform, sniffing it from the first event on the
   session's first batch.
3. Move the session to ``processing`` and persist the detected platform.
   Nothing is written before every rejection check has passed.
4. Admit events month by month against the organization's quota.
5. Transform admitted events and insert them with one bulk statement.
6. Bump the session's counter and finalize it on the last batch.

Batches carry no sequence number, so the server relies on the client never
sending two batches for the same import at once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import insert
from sqlalchemy.orm import Session

from event_importer.db.models import Event, ImportStatusValue, Site
from event_importer.domain.imports.mappings import ImportMapper, detect_platform, get_mapper
from event_importer.domain.imports.quota import ImportQuotaTracker
from event_importer.domain.imports.status import (
    ImportStateError,
    get_import_by_id,
    set_import_platform,
    update_import_progress,
    update_import_status,
)

logger = logging.getLogger(__name__)


class BatchImportError(Exception):
    """A rejected batch; rendered by the API as ``{"error": ..., "message": ...}``."""

    def __init__(self, status_code: int, error: str, message: Optional[str] = None, *, include_success: bool = False):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.include_success = include_success
        super().__init__(message or error)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.include_success:
            payload["success"] = False
        payload["error"] = self.error
        if self.message is not None:
            payload["message"] = self.message
        return payload


class EventInsertError(Exception):
    """The event store rejected a bulk insert."""


@dataclass
class BatchImportResult:
    imported_count: int
    quota_exceeded: bool = False
    message: Optional[str] = None
    skipped_due_to_quota: int = 0

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": True, "importedCount": self.imported_count}
        if self.quota_exceeded:
            payload["quotaExceeded"] = True
        if self.message is not None:
            payload["message"] = self.message
        return payload


class SqlEventStore:
    """Writes event rows to the ``events`` table in a single statement."""

    def insert(self, db: Session, rows: List[Dict[str, Any]]) -> None:
        try:
            db.execute(insert(Event), rows)
            db.commit()
        except Exception as exc:
            db.rollback()
            raise EventInsertError(str(exc)) from exc


TrackerFactory = Callable[[Session, str], ImportQuotaTracker]


def _default_tracker_factory(db: Session, organization_id: str) -> ImportQuotaTracker:
    return ImportQuotaTracker.create(db, organization_id)


def _resolve_mapper(platform: Optional[str], events: Sequence[Mapping[str, Any]]) -> Optional[ImportMapper]:
    if platform:
        mapper = get_mapper(platform)
        if mapper is None:
            raise BatchImportError(400, f"Unsupported import platform: {platform}")
        return mapper

    if not events:
        return None

    mapper = detect_platform(events[0])
    if mapper is None:
        raise BatchImportError(400, "Unable to detect platform from event structure")
    return mapper


def _quota_message(event_count: int, tracker: ImportQuotaTracker) -> str:
    summary = tracker.get_summary()
    return (
        f"All {event_count} events exceeded monthly quotas or fell outside the "
        f"{summary.total_months_in_window}-month historical window. "
        f"{summary.months_at_capacity} of {summary.total_months_in_window} months are at full capacity."
    )


def _finalize(db: Session, import_id: str, message: Optional[str]) -> None:
    update_import_status(db, import_id, ImportStatusValue.COMPLETED.value, message)


def ingest_batch(
    db: Session,
    *,
    site_id: int,
    import_id: str,
    events: Sequence[Mapping[str, Any]],
    is_last_batch: bool = False,
    tracker_factory: TrackerFactory = _default_tracker_factory,
    store: Optional[SqlEventStore] = None,
) -> BatchImportResult:
    """Validate, quota-filter and store one batch of raw import events."""
    store = store or SqlEventStore()

    record = get_import_by_id(db, import_id)
    if record is None:
        raise BatchImportError(404, "Import not found")
    if record.site_id != site_id:
        raise BatchImportError(400, "Import does not belong to this site")
    if record.status == ImportStatusValue.COMPLETED.value:
        raise BatchImportError(400, "Import already completed")
    if record.status == ImportStatusValue.FAILED.value:
        raise BatchImportError(400, "Import has failed")

    site = db.query(Site).filter(Site.site_id == site_id).first()
    if site is None:
        raise BatchImportError(404, "Site not found")

    detected_now = not record.platform
    mapper = _resolve_mapper(record.platform, events)
    if mapper is not None:
        for index, event in enumerate(events):
            if not mapper.matches(event):
                raise BatchImportError(
                    400,
                    "Validation error",
                    f"Event {index} does not match the {mapper.platform} export format",
                )

    was_pending = record.status == ImportStatusValue.PENDING.value
    organization_id = site.organization_id

    try:
        if mapper is not None and detected_now:
            set_import_platform(db, import_id, mapper.platform)
            logger.info("Detected platform '%s' for import %s", mapper.platform, import_id)
        if was_pending:
            update_import_status(db, import_id, ImportStatusValue.PROCESSING.value)
    except ImportStateError as exc:
        raise BatchImportError(400, exc.message)

    if not events:
        if is_last_batch:
            _finalize(db, import_id, None)
        return BatchImportResult(imported_count=0, message="No events in batch")

    try:
        tracker = tracker_factory(db, organization_id)

        events_within_quota = []
        skipped_due_to_quota = 0
        for event in events:
            created_at = event.get("created_at")
            if not created_at:
                continue
            if tracker.can_import_event(created_at):
                events_within_quota.append(event)
            else:
                skipped_due_to_quota += 1

        if not events_within_quota:
            quota_message = _quota_message(len(events), tracker)
            if is_last_batch:
                _finalize(db, import_id, quota_message)
            logger.info("Import %s: batch of %d events fully rejected by quota", import_id, len(events))
            return BatchImportResult(
                imported_count=0,
                quota_exceeded=True,
                message=quota_message,
                skipped_due_to_quota=skipped_due_to_quota,
            )

        rows = mapper.transform(events_within_quota, site_id, import_id)
        if not rows:
            if is_last_batch:
                _finalize(db, import_id, "No valid events found in the final batch")
            return BatchImportResult(imported_count=0, message="No valid events in batch")

        store.insert(db, rows)
        update_import_progress(db, import_id, len(rows))

        if is_last_batch:
            final_message = None
            if skipped_due_to_quota > 0:
                final_message = f"Import completed. {skipped_due_to_quota} events were skipped due to quota limits."
            _finalize(db, import_id, final_message)

    except EventInsertError as exc:
        logger.error("Import %s: failed to insert %d events: %s", import_id, len(events), exc)
        update_import_status(db, import_id, ImportStatusValue.FAILED.value, f"Failed to insert events: {exc}")
        raise BatchImportError(500, "Failed to insert events", str(exc), include_success=True)
    except BatchImportError:
        raise
    except Exception as exc:
        logger.exception("Import %s: unexpected error while processing batch", import_id)
        db.rollback()
        update_import_status(db, import_id, ImportStatusValue.FAILED.value, f"Import failed: {exc}")
        raise BatchImportError(500, "Internal server error")

    message = f"Imported {len(rows)} events"
    if skipped_due_to_quota > 0:
        message += f" ({skipped_due_to_quota} skipped due to quota)"

    logger.info("Import %s: stored %d events (last batch: %s)", import_id, len(rows), is_last_batch)
    return BatchImportResult(
        imported_count=len(rows),
        message=message,
        skipped_due_to_quota=skipped_due_to_quota,
    )
