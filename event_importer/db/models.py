"""
ORM models for organizations, sites, import sessions and the event store.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from event_importer.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class ImportStatusValue(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = {ImportStatusValue.PENDING.value, ImportStatusValue.PROCESSING.value}
TERMINAL_STATUSES = {ImportStatusValue.COMPLETED.value, ImportStatusValue.FAILED.value}


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # Events accepted per calendar month; NULL falls back to settings.default_monthly_event_limit.
    monthly_event_limit = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class Site(Base):
    __tablename__ = "sites"

    site_id = Column(Integer, primary_key=True)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    domain = Column(String, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class Member(Base):
    """Organization membership; ``role`` is one of owner, admin, member."""
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    role = Column(String, nullable=False, default="member")


class ImportStatus(Base):
    """One row per import attempt."""
    __tablename__ = "import_status"

    import_id = Column(String, primary_key=True)
    site_id = Column(Integer, nullable=False, index=True)
    organization_id = Column(String, nullable=False)
    platform = Column(String, nullable=True)
    status = Column(String, nullable=False, default=ImportStatusValue.PENDING.value)
    imported_events = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    file_name = Column(String, nullable=True)
    started_at = Column(DateTime, default=_utcnow)
    completed_at = Column(DateTime, nullable=True)


class Event(Base):
    """Analytics event store row."""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(Integer, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    session_id = Column(String, default="")
    user_id = Column(String, default="")
    hostname = Column(String, default="")
    pathname = Column(Text, default="")
    querystring = Column(Text, default="")
    page_title = Column(Text, default="")
    referrer = Column(Text, default="")
    browser = Column(String, default="")
    operating_system = Column(String, default="")
    device_type = Column(String, default="")
    screen_width = Column(Integer, default=0)
    screen_height = Column(Integer, default=0)
    language = Column(String, default="")
    country = Column(String, default="")
    region = Column(String, default="")
    city = Column(String, default="")
    type = Column(String, nullable=False, default="pageview")
    event_name = Column(String, default="")
    import_id = Column(String, nullable=True, index=True)


def row_to_import(record: ImportStatus) -> dict:
    return {
        "importId": record.import_id,
        "siteId": record.site_id,
        "platform": record.platform,
        "status": record.status,
        "importedEvents": record.imported_events,
        "errorMessage": record.error_message,
        "fileName": record.file_name,
        "startedAt": record.started_at.isoformat() if record.started_at else None,
        "completedAt": record.completed_at.isoformat() if record.completed_at else None,
    }
