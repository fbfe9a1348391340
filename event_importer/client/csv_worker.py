"""
Streaming CSV parser for Umami event exports.

The worker reads the export in chunks with pandas, maps each row onto the
canonical Umami fields by column position, drops rows the server would
reject (missing timestamp or outside the allowed date window) and cuts the
accepted rows into fixed-size batches. It runs on its own thread and hands
batches to the upload coordinator through a bounded queue.
"""
from __future__ import annotations

import csv
import io
import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import IO, Any, Dict, Iterator, List, Mapping, Optional, Union

import pandas as pd

from event_importer.client.types import ChunkReady, ParseComplete, ParseError, WorkerMessage
from event_importer.core.config import settings
from event_importer.domain.imports.date_range import DateRangeFilter
from event_importer.domain.imports.mappings.umami import UmamiImportMapper, column_name_for_position

logger = logging.getLogger(__name__)

SNIFF_SAMPLE_BYTES = 64 * 1024
SNIFF_DELIMITERS = ",\t;|"
DEFAULT_READ_CHUNK_SIZE = 1000
QUEUE_PUT_POLL_SECONDS = 0.1
MAX_FILENAME_LENGTH = 255
ALLOWED_EXTENSIONS = (".csv",)

CSVSource = Union[str, "os.PathLike[str]", IO[str], IO[bytes]]


class CSVParseError(Exception):
    """The export file cannot be parsed as CSV at all."""


class ImportFileError(ValueError):
    """The selected file is not acceptable for import."""


def validate_import_file(path: Union[str, "os.PathLike[str]"], max_size_mb: Optional[int] = None) -> None:
    """Apply the upload form's checks: CSV extension, name length and size limit."""
    max_size_mb = max_size_mb if max_size_mb is not None else settings.import_max_file_size_mb
    name = os.path.basename(os.fspath(path))

    if not os.path.isfile(path):
        raise ImportFileError(f"File not found: {path}")
    if not name.lower().endswith(ALLOWED_EXTENSIONS):
        raise ImportFileError("Only CSV files are accepted")
    if len(name) > MAX_FILENAME_LENGTH:
        raise ImportFileError("Filename is too long")
    if os.path.getsize(path) > max_size_mb * 1024 * 1024:
        raise ImportFileError(f"File size must be less than {max_size_mb} MB")


@dataclass
class ParseStats:
    """Running totals for one parse; owned by a single worker."""
    parsed: int = 0
    skipped: int = 0
    errors: int = 0


def sniff_delimiter(sample: str) -> str:
    if not sample.strip():
        return ","
    try:
        return csv.Sniffer().sniff(sample, delimiters=SNIFF_DELIMITERS).delimiter
    except csv.Error:
        return ","


class CSVImportWorker:
    def __init__(
        self,
        source: CSVSource,
        date_range: DateRangeFilter,
        *,
        batch_size: Optional[int] = None,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.source = source
        self.date_range = date_range
        self.batch_size = batch_size or settings.import_batch_size
        self.read_chunk_size = read_chunk_size
        self.cancel_event = cancel_event or threading.Event()
        self.mapper = UmamiImportMapper()
        self.stats = ParseStats()
        self._batch: List[Dict[str, str]] = []

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def _on_bad_line(self, fields: List[str]) -> None:
        self.stats.errors += 1
        logger.debug("Skipping malformed CSV row with %d fields", len(fields))
        return None

    def _open_text(self) -> IO[str]:
        if isinstance(self.source, (str, os.PathLike)):
            return open(self.source, "r", encoding="utf-8-sig", newline="")
        if isinstance(self.source, io.TextIOBase):
            return self.source
        return io.TextIOWrapper(self.source, encoding="utf-8-sig", newline="")

    def _iter_raw_records(self) -> Iterator[Dict[str, Any]]:
        try:
            handle = self._open_text()
        except OSError as exc:
            raise CSVParseError(f"Unable to open file: {exc}") from exc

        try:
            sample = handle.read(SNIFF_SAMPLE_BYTES)
            if not sample.strip():
                return
            handle.seek(0)
            delimiter = sniff_delimiter(sample)
            logger.debug("Detected CSV delimiter %r", delimiter)

            reader = pd.read_csv(
                handle,
                sep=delimiter,
                header=0,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                engine="python",
                on_bad_lines=self._on_bad_line,
                chunksize=self.read_chunk_size,
            )
            with reader:
                for chunk in reader:
                    keep = [
                        (index, name)
                        for index, name in (
                            (i, column_name_for_position(i, str(header)))
                            for i, header in enumerate(chunk.columns)
                        )
                        if name in self.mapper.fields
                    ]
                    # Rows with too few fields are padded with NaN; present-but-empty cells are "".
                    short_rows = chunk.iloc[:, -1].isna().tolist()
                    selected = chunk.iloc[:, [index for index, _ in keep]]
                    selected.columns = [name for _, name in keep]
                    for record, is_short in zip(selected.to_dict("records"), short_rows):
                        if is_short:
                            self.stats.errors += 1
                        yield record
                        if self.cancelled:
                            return
        except pd.errors.EmptyDataError:
            return
        except (pd.errors.ParserError, UnicodeDecodeError, csv.Error) as exc:
            raise CSVParseError(str(exc)) from exc
        finally:
            if isinstance(self.source, (str, os.PathLike)):
                handle.close()
            elif handle is not self.source:
                # Leave the caller's binary stream open.
                handle.detach()

    def handle_row(self, raw: Mapping[str, Any]) -> bool:
        """Map, filter and buffer one row. Returns True when the row was accepted."""
        event = self.mapper.normalize(raw)

        if not event["created_at"]:
            self.stats.skipped += 1
            return False
        if not self.date_range.accepts(event["created_at"]):
            self.stats.skipped += 1
            return False

        self._batch.append(event)
        self.stats.parsed += 1
        return True

    def _cut_batch(self, is_last_batch: bool) -> ChunkReady:
        batch, self._batch = self._batch, []
        return ChunkReady(
            events=batch,
            parsed=self.stats.parsed,
            skipped=self.stats.skipped,
            errors=self.stats.errors,
            is_last_batch=is_last_batch,
        )

    def iter_messages(self) -> Iterator[WorkerMessage]:
        """
        Parse the whole source, yielding full batches as they fill up.

        The final batch is always yielded (possibly empty) with
        ``is_last_batch=True``, followed by ``ParseComplete``. Nothing more is
        yielded once the worker is cancelled.
        """
        self.stats = ParseStats()
        self._batch = []

        try:
            for raw in self._iter_raw_records():
                if self.cancelled:
                    return
                self.handle_row(raw)
                if len(self._batch) >= self.batch_size:
                    yield self._cut_batch(is_last_batch=False)
        except CSVParseError as exc:
            logger.error("CSV parsing failed: %s", exc)
            yield ParseError(message=str(exc))
            return

        if self.cancelled:
            return

        yield self._cut_batch(is_last_batch=True)
        yield ParseComplete(parsed=self.stats.parsed, skipped=self.stats.skipped, errors=self.stats.errors)
        logger.info(
            "Finished parsing: %d accepted, %d skipped, %d malformed rows",
            self.stats.parsed,
            self.stats.skipped,
            self.stats.errors,
        )

    def _put(self, outbox: "queue.Queue[WorkerMessage]", message: WorkerMessage) -> bool:
        while not self.cancelled:
            try:
                outbox.put(message, timeout=QUEUE_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def run(self, outbox: "queue.Queue[WorkerMessage]") -> None:
        """Thread entry point: parse and post every message to ``outbox``."""
        try:
            for message in self.iter_messages():
                if not self._put(outbox, message):
                    logger.info("CSV worker cancelled")
                    return
        except Exception as exc:
            logger.exception("CSV worker crashed")
            self._put(outbox, ParseError(message=f"Worker error: {exc}"))
