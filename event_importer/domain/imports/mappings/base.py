"""
Base class for source-platform import mappers.

Each mapper knows the wire shape of one analytics platform's export and how
to turn those records into rows for the ``events`` table. The ingestion
handler picks a mapper by sniffing the first event of an import.
"""
from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Sequence


def coerce_str(value: Any) -> str:
    """Coerce a loosely-typed CSV cell to a string; missing values become ''."""
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def normalize_record(raw: Mapping[str, Any], fields: Sequence[str]) -> Dict[str, str]:
    """Project ``raw`` onto ``fields``, dropping everything else."""
    return {field: coerce_str(raw.get(field)) for field in fields}


class ImportMapper:
    """Interface implemented by every supported source platform."""

    platform: str = ""
    fields: Sequence[str] = ()

    def matches(self, event: Any) -> bool:
        """Return True when ``event`` carries every key of this platform's schema as a string."""
        if not isinstance(event, Mapping):
            return False
        for field in self.fields:
            if field not in event or not isinstance(event[field], str):
                return False
        return True

    def normalize(self, raw: Mapping[str, Any]) -> Dict[str, str]:
        return normalize_record(raw, self.fields)

    def transform(self, events: Iterable[Mapping[str, Any]], site_id: int, import_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError
