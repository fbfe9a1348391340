"""
Persistent tracking for batch import sessions.

Lifecycle: ``pending`` on creation, ``processing`` once the first batch is
accepted, then ``completed`` or ``failed``. Terminal sessions never change
status again.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from event_importer.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Event,
    ImportStatus,
    ImportStatusValue,
)

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    ImportStatusValue.PENDING.value: {
        ImportStatusValue.PROCESSING.value,
        ImportStatusValue.COMPLETED.value,
        ImportStatusValue.FAILED.value,
    },
    ImportStatusValue.PROCESSING.value: {
        ImportStatusValue.COMPLETED.value,
        ImportStatusValue.FAILED.value,
    },
}


class ImportStateError(Exception):
    """Raised when an import session cannot make the requested transition."""

    def __init__(self, import_id: str, message: str):
        self.import_id = import_id
        self.message = message
        super().__init__(message)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_import(
    db: Session,
    *,
    site_id: int,
    organization_id: str,
    file_name: Optional[str] = None,
) -> ImportStatus:
    record = ImportStatus(
        import_id=str(uuid.uuid4()),
        site_id=site_id,
        organization_id=organization_id,
        status=ImportStatusValue.PENDING.value,
        imported_events=0,
        file_name=file_name,
        started_at=_utcnow(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Created import %s for site %s", record.import_id, site_id)
    return record


def get_import_by_id(db: Session, import_id: str) -> Optional[ImportStatus]:
    return db.query(ImportStatus).filter(ImportStatus.import_id == import_id).first()


def list_site_imports(db: Session, site_id: int, *, limit: int = 50, offset: int = 0) -> Tuple[List[ImportStatus], int]:
    """List a site's imports, newest first."""
    query = db.query(ImportStatus).filter(ImportStatus.site_id == site_id)
    total = query.count()
    records = (
        query.order_by(ImportStatus.started_at.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return records, total


def update_import_status(
    db: Session,
    import_id: str,
    status: str,
    error_message: Optional[str] = None,
) -> ImportStatus:
    """Move an import to ``status``; rejects transitions out of terminal states."""
    record = get_import_by_id(db, import_id)
    if record is None:
        raise ImportStateError(import_id, "Import not found")

    if record.status != status:
        allowed = _ALLOWED_TRANSITIONS.get(record.status, set())
        if status not in allowed:
            raise ImportStateError(
                import_id,
                f"Cannot move import from '{record.status}' to '{status}'",
            )
        record.status = status

    if error_message is not None:
        record.error_message = error_message
    if status in TERMINAL_STATUSES and record.completed_at is None:
        record.completed_at = _utcnow()

    db.commit()
    db.refresh(record)
    logger.info("Import %s is now %s", import_id, status)
    return record


def set_import_platform(db: Session, import_id: str, platform: str) -> None:
    """Record the detected source platform; an already-set platform is kept."""
    db.execute(
        update(ImportStatus)
        .where(ImportStatus.import_id == import_id, ImportStatus.platform.is_(None))
        .values(platform=platform)
    )
    db.commit()


def update_import_progress(db: Session, import_id: str, imported_count: int) -> None:
    """Add ``imported_count`` to the session's counter in a single UPDATE."""
    db.execute(
        update(ImportStatus)
        .where(ImportStatus.import_id == import_id)
        .values(imported_events=ImportStatus.imported_events + imported_count)
    )
    db.commit()


def delete_import(db: Session, import_id: str) -> bool:
    """
    Delete a finished import and every event it stored.

    Returns False when the import does not exist. Active imports cannot be
    deleted because batches may still be arriving.
    """
    record = get_import_by_id(db, import_id)
    if record is None:
        return False
    if record.status in ACTIVE_STATUSES:
        raise ImportStateError(import_id, "Cannot delete an import that is still in progress")

    deleted_events = (
        db.query(Event)
        .filter(Event.import_id == import_id, Event.site_id == record.site_id)
        .delete(synchronize_session=False)
    )
    db.delete(record)
    db.commit()
    logger.info("Deleted import %s and %d events", import_id, deleted_events)
    return True
