"""
Site import endpoints: start an import, receive its batches, list and delete imports.
"""
import logging
import uuid
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from event_importer.api.schemas.imports import (
    BatchImportRequest,
    ImportListResponse,
    StartImportRequest,
    StartImportResponse,
)
from event_importer.core.security import User, get_current_user, user_has_admin_access_to_site
from event_importer.db.models import Site, row_to_import
from event_importer.db.session import get_db
from event_importer.domain.imports.batch import BatchImportError, ingest_batch
from event_importer.domain.imports.quota import ImportQuotaTracker
from event_importer.domain.imports.status import (
    ImportStateError,
    create_import,
    delete_import,
    get_import_by_id,
    list_site_imports,
)

router = APIRouter(prefix="/api", tags=["imports"])

logger = logging.getLogger(__name__)


def _require_site_admin(db: Session, user: User, site_id: int) -> None:
    if not user_has_admin_access_to_site(db, user, site_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def _get_site_or_404(db: Session, site_id: int) -> Site:
    site = db.query(Site).filter(Site.site_id == site_id).first()
    if site is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Site not found")
    return site


def _parse_batch_request(site: str, import_id: str, payload) -> Tuple[int, BatchImportRequest]:
    """Validate path params and body; any problem is a 400 before state is touched."""
    try:
        site_id = int(site)
    except (TypeError, ValueError):
        raise BatchImportError(400, "Validation error", "site must be a numeric site id")

    try:
        uuid.UUID(import_id)
    except ValueError:
        raise BatchImportError(400, "Validation error", "importId must be a UUID")

    try:
        body = BatchImportRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        raise BatchImportError(400, "Validation error", first.get("msg"))

    return site_id, body


@router.post("/import-site/{site_id}", response_model=StartImportResponse)
async def start_site_import_endpoint(
    site_id: int,
    body: Optional[StartImportRequest] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Open a new import session for a site.

    Returns the import id and the date range the organization's quota still
    accepts, so the client can skip rows the server would reject anyway.
    """
    _require_site_admin(db, current_user, site_id)
    site = _get_site_or_404(db, site_id)

    tracker = ImportQuotaTracker.create(db, site.organization_id)
    record = create_import(
        db,
        site_id=site_id,
        organization_id=site.organization_id,
        file_name=body.file_name if body else None,
    )
    allowed = tracker.get_allowed_date_range()
    logger.info(
        "Import %s started for site %s (allowed %s..%s)",
        record.import_id,
        site_id,
        allowed.earliest_allowed_date,
        allowed.latest_allowed_date,
    )
    return {"importId": record.import_id, "allowedDateRange": allowed.to_dict()}


@router.post("/batch-import-events/{site}/{import_id}")
async def batch_import_events_endpoint(
    site: str,
    import_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Receive one batch of raw export records for an import session.

    Batches must be sent one at a time; ``isLastBatch`` closes the session.
    Errors are returned as ``{"error": ..., "message": ...}``.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise BatchImportError(400, "Validation error", "Request body must be JSON")

    site_id, body = _parse_batch_request(site, import_id, payload)

    if not user_has_admin_access_to_site(db, current_user, site_id):
        raise BatchImportError(403, "Forbidden")

    result = ingest_batch(
        db,
        site_id=site_id,
        import_id=import_id,
        events=body.events,
        is_last_batch=body.is_last_batch,
    )
    return result.to_dict()


@router.get("/get-site-imports/{site_id}", response_model=ImportListResponse)
async def list_site_imports_endpoint(
    site_id: int,
    limit: int = 50,
    offset: int = 0,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_site_admin(db, current_user, site_id)
    records, total = list_site_imports(db, site_id, limit=limit, offset=offset)
    return {
        "data": [row_to_import(record) for record in records],
        "totalCount": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/import-status/{import_id}")
async def get_import_status_endpoint(
    import_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    record = get_import_by_id(db, import_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Import not found")
    _require_site_admin(db, current_user, record.site_id)
    return {"data": row_to_import(record)}


@router.delete("/delete-site-import/{site_id}/{import_id}")
async def delete_site_import_endpoint(
    site_id: int,
    import_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_site_admin(db, current_user, site_id)

    record = get_import_by_id(db, import_id)
    if record is None or record.site_id != site_id:
        raise HTTPException(status_code=404, detail="Import not found")

    try:
        delete_import(db, import_id)
    except ImportStateError as e:
        raise HTTPException(status_code=400, detail=e.message)

    return {"success": True}
