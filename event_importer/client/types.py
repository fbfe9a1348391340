"""
Messages exchanged between the CSV worker thread and the upload coordinator,
plus the progress snapshot reported to callers.
"""
from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Union


class ImportPhase(str, enum.Enum):
    IDLE = "idle"
    PARSING = "parsing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ImportProgress:
    status: ImportPhase = ImportPhase.IDLE
    parsed_rows: int = 0
    skipped_rows: int = 0
    imported_events: int = 0
    errors: int = 0

    def copy(self) -> "ImportProgress":
        return ImportProgress(**asdict(self))

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "parsedRows": self.parsed_rows,
            "skippedRows": self.skipped_rows,
            "importedEvents": self.imported_events,
            "errors": self.errors,
        }


@dataclass
class ChunkReady:
    """A batch of accepted records plus running totals at the time it was cut."""
    events: List[Dict[str, str]]
    parsed: int
    skipped: int
    errors: int
    is_last_batch: bool = False


@dataclass
class ParseComplete:
    parsed: int
    skipped: int
    errors: int


@dataclass
class ParseError:
    message: str
    details: Dict[str, str] = field(default_factory=dict)


WorkerMessage = Union[ChunkReady, ParseComplete, ParseError]
