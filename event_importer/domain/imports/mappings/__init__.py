"""
Source-platform mappers and schema-based platform detection.
"""
from typing import Any, Dict, Optional

from event_importer.domain.imports.mappings.base import ImportMapper, coerce_str, normalize_record
from event_importer.domain.imports.mappings.umami import UmamiImportMapper

MAPPERS: Dict[str, ImportMapper] = {
    mapper.platform: mapper
    for mapper in (UmamiImportMapper(),)
}


def get_mapper(platform: str) -> Optional[ImportMapper]:
    return MAPPERS.get(platform)


def detect_platform(event: Any) -> Optional[ImportMapper]:
    """Return the first registered mapper whose schema matches ``event``."""
    for mapper in MAPPERS.values():
        if mapper.matches(event):
            return mapper
    return None


__all__ = [
    "ImportMapper",
    "MAPPERS",
    "UmamiImportMapper",
    "coerce_str",
    "detect_platform",
    "get_mapper",
    "normalize_record",
]
