"""
Coordinates a client-side import: runs the CSV worker on a background thread
and uploads its batches one at a time.

Uploads are strictly sequential. Only one request is ever in flight for an
import, and the worker can get at most one batch ahead because it hands
batches over through a single-slot queue. A failed upload ends the import
immediately; batches carry no idempotency key, so retrying could store the
same events twice.

When the server reports that the quota is exhausted, parsing stops and an
empty final batch is sent so the server-side import is closed as completed.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional, Protocol

from event_importer.client.api import ImportApiError
from event_importer.client.csv_worker import CSVImportWorker, CSVSource
from event_importer.client.types import (
    ChunkReady,
    ImportPhase,
    ImportProgress,
    ParseComplete,
    ParseError,
    WorkerMessage,
)
from event_importer.domain.imports.date_range import DateRangeFilter, InvalidDateRangeError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ImportProgress], None]
CompleteCallback = Callable[[bool, str], None]

MESSAGE_POLL_SECONDS = 0.1
WORKER_JOIN_TIMEOUT_SECONDS = 5.0


class BatchUploader(Protocol):
    def upload_batch(
        self,
        site_id: int,
        import_id: str,
        events: List[Dict[str, str]],
        *,
        is_last_batch: bool = False,
    ) -> dict:
        ...


class CSVWorkerManager:
    def __init__(
        self,
        api: BatchUploader,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        *,
        batch_size: Optional[int] = None,
    ):
        self.api = api
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.batch_size = batch_size
        self.progress = ImportProgress()
        self.site_id = 0
        self.import_id = ""
        self.upload_in_progress = False
        self.parsing_complete = False
        self.quota_exceeded = False
        self.finished = False
        self.result_message: Optional[str] = None
        self._cancel_event = threading.Event()
        self._worker_thread: Optional[threading.Thread] = None

    def start_import(
        self,
        file: CSVSource,
        site_id: int,
        import_id: str,
        earliest_allowed_date: str,
        latest_allowed_date: str,
    ) -> ImportProgress:
        """Parse and upload ``file``; blocks until the import reaches a final state."""
        self.site_id = site_id
        self.import_id = import_id
        self.parsing_complete = False
        self.upload_in_progress = False
        self.quota_exceeded = False
        self.finished = False
        self.result_message = None
        self._cancel_event = threading.Event()
        self.progress = ImportProgress(status=ImportPhase.PARSING)

        try:
            date_range = DateRangeFilter(earliest_allowed_date, latest_allowed_date)
        except InvalidDateRangeError as e:
            self._fail(str(e))
            return self.get_progress()

        worker = CSVImportWorker(
            file,
            date_range,
            batch_size=self.batch_size,
            cancel_event=self._cancel_event,
        )
        outbox: "queue.Queue[WorkerMessage]" = queue.Queue(maxsize=1)
        self._worker_thread = threading.Thread(
            target=worker.run,
            args=(outbox,),
            name=f"csv-import-{import_id}",
            daemon=True,
        )
        self._worker_thread.start()
        logger.info("Started import %s for site %s", import_id, site_id)
        self._notify_progress()

        try:
            self._process_messages(outbox)
        finally:
            self.terminate()

        return self.get_progress()

    def _process_messages(self, outbox: "queue.Queue[WorkerMessage]") -> None:
        while not self.finished:
            try:
                message = outbox.get(timeout=MESSAGE_POLL_SECONDS)
            except queue.Empty:
                if self._cancel_event.is_set():
                    self._fail("Import cancelled")
                elif not self._worker_thread.is_alive() and outbox.empty():
                    self._fail("Worker error: CSV worker stopped unexpectedly")
                continue
            self._handle_worker_message(message)

    def _handle_worker_message(self, message: WorkerMessage) -> None:
        if isinstance(message, ChunkReady):
            self.progress.parsed_rows = message.parsed
            self.progress.skipped_rows = message.skipped
            self.progress.errors = message.errors

            if self._cancel_event.is_set():
                self._fail("Import cancelled")
                return

            self.progress.status = ImportPhase.UPLOADING
            self._notify_progress()
            self._upload_batch(message.events, message.is_last_batch)

        elif isinstance(message, ParseComplete):
            self.parsing_complete = True
            self.progress.parsed_rows = message.parsed
            self.progress.skipped_rows = message.skipped
            self.progress.errors = message.errors
            self._notify_progress()
            self._check_completion()

        elif isinstance(message, ParseError):
            self._fail(message.message)

        else:
            logger.warning("Unknown worker message: %r", message)

    def _upload_batch(self, events: List[Dict[str, str]], is_last_batch: bool) -> None:
        self.upload_in_progress = True
        try:
            data = self.api.upload_batch(
                self.site_id,
                self.import_id,
                events,
                is_last_batch=is_last_batch,
            )
            imported_count = int(data.get("importedCount", len(events)))
            quota_exceeded = bool(data.get("quotaExceeded"))
            server_message = data.get("message")
        except ImportApiError as error:
            self.upload_in_progress = False
            logger.error("Import %s: batch upload failed: %s", self.import_id, error)
            self._fail(f"Upload failed: {error}")
            return
        except Exception as error:
            self.upload_in_progress = False
            logger.exception("Import %s: unexpected error while uploading a batch", self.import_id)
            self._fail(f"Upload failed: {error}")
            return
        self.upload_in_progress = False

        self.progress.imported_events += imported_count

        if quota_exceeded:
            self.quota_exceeded = True
            self._cancel_event.set()
            message = server_message or "Import stopped: monthly quota exceeded"
            logger.info("Import %s stopped early: %s", self.import_id, message)
            if not is_last_batch:
                self._close_session()
            self._finish(True, message)
            return

        if not self.parsing_complete:
            self.progress.status = ImportPhase.PARSING
        self._notify_progress()
        self._check_completion()

    def _close_session(self) -> None:
        """Send the empty final batch so the server marks the import completed."""
        try:
            self.api.upload_batch(self.site_id, self.import_id, [], is_last_batch=True)
        except ImportApiError as error:
            # Events already stored stay stored; the quota outcome is still reported.
            logger.warning("Import %s: could not close import after quota stop: %s", self.import_id, error)

    def _check_completion(self) -> None:
        if self.finished:
            return
        if self.parsing_complete and not self.upload_in_progress and not self.quota_exceeded:
            self._finish(
                True,
                f"Import completed successfully: {self.progress.imported_events} events imported",
            )

    def _finish(self, success: bool, message: str) -> None:
        self.finished = True
        self.result_message = message
        self.progress.status = ImportPhase.COMPLETED if success else ImportPhase.FAILED
        self._notify_progress()
        if self.on_complete:
            self.on_complete(success, message)

    def _fail(self, message: str) -> None:
        if self.finished:
            return
        self._cancel_event.set()
        self.progress.errors += 1
        logger.error("Import %s failed: %s", self.import_id, message)
        self._finish(False, message)

    def _notify_progress(self) -> None:
        if self.on_progress:
            self.on_progress(self.progress.copy())

    def get_progress(self) -> ImportProgress:
        return self.progress.copy()

    def cancel(self) -> None:
        """
        Stop the import cooperatively: no new batches are parsed or uploaded,
        but an upload already in flight is allowed to finish.
        """
        self._cancel_event.set()

    def terminate(self) -> None:
        self._cancel_event.set()
        if self._worker_thread is not None:
            self._worker_thread.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)
            self._worker_thread = None
