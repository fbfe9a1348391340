"""
Umami export mapping.

Umami's website-event CSV export has a fixed column layout. The client maps
columns by position (header names differ between Umami versions) and keeps
only the twenty fields below; the server turns those records into rows for
the ``events`` table.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from event_importer.domain.imports.date_range import parse_event_timestamp
from event_importer.domain.imports.mappings.base import ImportMapper

logger = logging.getLogger(__name__)

# Position -> canonical field; None marks columns with no destination.
UMAMI_COLUMNS: Tuple[Optional[str], ...] = (
    None,  # website_id
    "session_id",
    None,  # visit_id
    None,  # event_id
    "hostname",
    "browser",
    "os",
    "device",
    "screen",
    "language",
    "country",
    "region",
    "city",
    "url_path",
    "url_query",
    None,  # utm_source
    None,  # utm_medium
    None,  # utm_campaign
    None,  # utm_content
    None,  # utm_term
    "referrer_path",
    "referrer_query",
    "referrer_domain",
    "page_title",
    None,  # gclid
    None,  # fbclid
    None,  # msclkid
    None,  # ttclid
    None,  # li_fat_id
    None,  # twclid
    "event_type",
    "event_name",
    None,  # tag
    "distinct_id",
    "created_at",
    None,  # job_id
)

UMAMI_FIELDS: Tuple[str, ...] = (
    "session_id",
    "hostname",
    "browser",
    "os",
    "device",
    "screen",
    "language",
    "country",
    "region",
    "city",
    "url_path",
    "url_query",
    "referrer_path",
    "referrer_query",
    "referrer_domain",
    "page_title",
    "event_type",
    "event_name",
    "distinct_id",
    "created_at",
)

UMAMI_PAGEVIEW_EVENT_TYPE = "1"
UMAMI_CUSTOM_EVENT_TYPE = "2"

_SCREEN_RE = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")
_DEVICE_TYPES = {"desktop": "Desktop", "laptop": "Desktop", "mobile": "Mobile", "tablet": "Tablet"}


def column_name_for_position(index: int, header: str) -> Optional[str]:
    """
    Resolve the canonical field for a CSV column.

    Returns None for known positions without a destination; columns past the
    end of the table keep their header so they can be dropped by name.
    """
    if index < len(UMAMI_COLUMNS):
        return UMAMI_COLUMNS[index]
    return header


def parse_screen(screen: str) -> Tuple[int, int]:
    match = _SCREEN_RE.match(screen or "")
    if not match:
        return 0, 0
    return int(match.group(1)), int(match.group(2))


def build_referrer(domain: str, path: str, query: str) -> str:
    if not domain:
        return ""
    referrer = domain if "://" in domain else f"https://{domain}"
    if path:
        referrer += path if path.startswith("/") else f"/{path}"
    if query:
        referrer += query if query.startswith("?") else f"?{query}"
    return referrer


class UmamiImportMapper(ImportMapper):
    platform = "umami"
    fields = UMAMI_FIELDS

    def transform_event(self, event: Mapping[str, Any], site_id: int, import_id: str) -> Optional[Dict[str, Any]]:
        record = self.normalize(event)
        timestamp = parse_event_timestamp(record["created_at"])
        if timestamp is None:
            return None

        screen_width, screen_height = parse_screen(record["screen"])
        is_custom_event = record["event_type"] == UMAMI_CUSTOM_EVENT_TYPE

        return {
            "site_id": site_id,
            # Stored as naive UTC.
            "timestamp": timestamp.replace(tzinfo=None),
            "session_id": record["session_id"],
            "user_id": record["distinct_id"],
            "hostname": record["hostname"],
            "pathname": record["url_path"],
            "querystring": record["url_query"],
            "page_title": record["page_title"],
            "referrer": build_referrer(
                record["referrer_domain"], record["referrer_path"], record["referrer_query"]
            ),
            "browser": record["browser"],
            "operating_system": record["os"],
            "device_type": _DEVICE_TYPES.get(record["device"].lower(), record["device"].capitalize()),
            "screen_width": screen_width,
            "screen_height": screen_height,
            "language": record["language"],
            "country": record["country"].upper()[:2],
            "region": record["region"],
            "city": record["city"],
            "type": "custom_event" if is_custom_event else "pageview",
            "event_name": record["event_name"] if is_custom_event else "",
            "import_id": import_id,
        }

    def transform(self, events: Iterable[Mapping[str, Any]], site_id: int, import_id: str) -> List[Dict[str, Any]]:
        rows = []
        dropped = 0
        for event in events:
            row = self.transform_event(event, site_id, import_id)
            if row is None:
                dropped += 1
                continue
            rows.append(row)

        if dropped:
            logger.info("Dropped %d Umami events with unparseable timestamps (import %s)", dropped, import_id)
        return rows
