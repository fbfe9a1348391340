"""
HTTP transport for the import API.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from event_importer.core.config import settings
from event_importer.domain.imports.date_range import AllowedDateRange

logger = logging.getLogger(__name__)


class ImportApiError(Exception):
    """A request to the import API failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class StartImportResult:
    import_id: str
    allowed_date_range: AllowedDateRange


class ImportApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = timeout or settings.upload_timeout_seconds
        self.session = session or requests.Session()
        token = token if token is not None else settings.api_token
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ImportApiError(str(e)) from e

        if not response.ok:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            message = error_data.get("error") or error_data.get("detail") or f"HTTP {response.status_code}"
            logger.warning("%s %s failed with %s: %s", method, path, response.status_code, message)
            raise ImportApiError(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise ImportApiError(f"Invalid JSON response from {path}") from e

    def start_import(self, site_id: int, file_name: Optional[str] = None) -> StartImportResult:
        data = self._request("POST", f"/api/import-site/{site_id}", json={"fileName": file_name})
        allowed = data["allowedDateRange"]
        return StartImportResult(
            import_id=data["importId"],
            allowed_date_range=AllowedDateRange(
                earliest_allowed_date=allowed["earliestAllowedDate"],
                latest_allowed_date=allowed["latestAllowedDate"],
            ),
        )

    def upload_batch(
        self,
        site_id: int,
        import_id: str,
        events: List[Dict[str, str]],
        *,
        is_last_batch: bool = False,
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/api/batch-import-events/{site_id}/{import_id}",
            json={"events": events, "isLastBatch": is_last_batch},
        )

    def list_imports(self, site_id: int, *, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        return self._request(
            "GET",
            f"/api/get-site-imports/{site_id}",
            params={"limit": limit, "offset": offset},
        )
