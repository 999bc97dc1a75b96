"""Bounded-concurrency scheduling of single-file uploads."""

import logging
import queue
import threading
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any

from jzfs_upload.services.errors import UploadCancelled
from jzfs_upload.services.files import FileDescriptor
from jzfs_upload.services.log_service import get_log_service
from jzfs_upload.services.strategy import (
    Destination,
    Failed,
    Succeeded,
    UploadOutcome,
    UploadStrategy,
)
from jzfs_upload.services.transport import CancellationToken, ProgressCallback
from jzfs_upload.services.utils import destination_path

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


class FileStatus(Enum):
    """Lifecycle of one file in a batch."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    DONE = "done"
    ERROR = "error"


_ALLOWED_TRANSITIONS: dict[FileStatus, set[FileStatus]] = {
    FileStatus.QUEUED: {FileStatus.UPLOADING},
    FileStatus.UPLOADING: {FileStatus.UPLOADING, FileStatus.DONE, FileStatus.ERROR},
    FileStatus.DONE: set(),
    FileStatus.ERROR: set(),
}


@dataclass(frozen=True)
class FileUploadState:
    """Immutable state of a single file; replaced, never mutated."""

    status: FileStatus = FileStatus.QUEUED
    percent: int = 0
    error_message: str = ""

    @classmethod
    def uploading(cls, percent: int) -> "FileUploadState":
        return cls(FileStatus.UPLOADING, max(0, min(100, percent)))

    @classmethod
    def done(cls) -> "FileUploadState":
        return cls(FileStatus.DONE, 100)

    @classmethod
    def error(cls, message: str) -> "FileUploadState":
        return cls(FileStatus.ERROR, 0, message)

    @property
    def is_terminal(self) -> bool:
        return self.status in (FileStatus.DONE, FileStatus.ERROR)

    def can_become(self, other: "FileUploadState") -> bool:
        """Check that moving to another state keeps the lifecycle monotonic."""
        if other.status not in _ALLOWED_TRANSITIONS[self.status]:
            return False
        if self.status == other.status == FileStatus.UPLOADING:
            return other.percent >= self.percent
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {"status": self.status.value, "percent": self.percent}
        if self.error_message:
            data["error_message"] = self.error_message
        return data


@dataclass(frozen=True)
class FileEvent:
    """A state transition of one file, identified by its index in the batch."""

    file_id: int
    file: FileDescriptor
    state: FileUploadState


class BatchOutcome(Enum):
    """How a batch run ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


def upload_file(
    strategy: UploadStrategy,
    destination: Destination,
    key: str,
    file: FileDescriptor,
    on_progress: ProgressCallback | None = None,
    token: CancellationToken | None = None,
) -> UploadOutcome:
    """Upload a single file, turning any error into a Failed outcome.

    Not idempotent: every call is a new transfer attempt.
    """
    try:
        return strategy.upload(destination, key, file, on_progress, token)
    except Exception as e:
        logger.debug("Upload of %s failed", key, exc_info=True)
        return Failed(e)


class BatchScheduler:
    """Runs single-file uploads on a fixed-size worker pool."""

    def __init__(
        self,
        strategy: UploadStrategy,
        destination: Destination,
        base_path: str = "",
        concurrency_limit: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.strategy = strategy
        self.destination = destination
        self.base_path = base_path
        self.concurrency_limit = concurrency_limit

    def run(
        self,
        files: Sequence[FileDescriptor],
        token: CancellationToken,
        batch_id: str = "",
    ) -> "BatchRun":
        """Prepare a run over files; iterate the result to drive it.

        Raises:
            ValueError: If two files share a relative path
        """
        seen: set[str] = set()
        for file in files:
            if file.relative_path in seen:
                raise ValueError(f"Duplicate path in batch: {file.relative_path}")
            seen.add(file.relative_path)
        return BatchRun(self, list(files), token, batch_id)


_WORKER_DONE = object()


class BatchRun:
    """A single pass of a batch through the worker pool.

    Iterating yields FileEvent transitions as workers report them and blocks until
    every worker has settled. The run cannot be restarted; outcome is set once
    iteration finishes.
    """

    def __init__(
        self,
        scheduler: BatchScheduler,
        files: list[FileDescriptor],
        token: CancellationToken,
        batch_id: str = "",
    ) -> None:
        self.scheduler = scheduler
        self.files = files
        self.token = token
        self.batch_id = batch_id
        self.outcome: BatchOutcome | None = None
        self.outcomes: dict[int, UploadOutcome] = {}
        self._started = False
        self._stop_dispatch = threading.Event()
        self._lock = threading.Lock()
        self._events: queue.Queue[Any] = queue.Queue()

    @property
    def failures(self) -> int:
        """Number of files whose upload failed for a reason other than cancellation."""
        with self._lock:
            return sum(
                1
                for o in self.outcomes.values()
                if isinstance(o, Failed) and not isinstance(o.cause, UploadCancelled)
            )

    def __iter__(self) -> Iterator[FileEvent]:
        if self._started:
            raise RuntimeError("A batch run cannot be restarted")
        self._started = True
        return self._drive()

    def _emit(self, file_id: int, file: FileDescriptor, state: FileUploadState) -> None:
        self._events.put(FileEvent(file_id, file, state))

    def _drive(self) -> Iterator[FileEvent]:
        limit = self.scheduler.concurrency_limit
        waiting = iter(enumerate(self.files))

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="upload") as executor:

            def dispatch() -> bool:
                # Nothing new starts once the batch is cancelled or a file has failed
                if self.token.cancelled or self._stop_dispatch.is_set():
                    return False
                item = next(waiting, None)
                if item is None:
                    return False
                executor.submit(self._work, *item)
                return True

            in_flight = 0
            while in_flight < limit and dispatch():
                in_flight += 1
            while in_flight:
                event = self._events.get()
                if event is _WORKER_DONE:
                    in_flight -= 1
                    if dispatch():
                        in_flight += 1
                    continue
                yield event

        self.outcome = self._resolve_outcome()

    def _resolve_outcome(self) -> BatchOutcome:
        if self.token.cancelled:
            return BatchOutcome.CANCELLED
        if self.failures:
            return BatchOutcome.FAILED
        return BatchOutcome.COMPLETED

    def _work(self, file_id: int, file: FileDescriptor) -> None:
        try:
            self._upload_one(file_id, file)
        except Exception:
            logger.exception("Worker crashed while uploading %s", file.relative_path)
            with self._lock:
                self.outcomes[file_id] = Failed(RuntimeError("worker crashed"))
            self._stop_dispatch.set()
        finally:
            self._events.put(_WORKER_DONE)

    def _upload_one(self, file_id: int, file: FileDescriptor) -> None:
        # Files not started before cancellation stay queued
        if self.token.cancelled:
            return

        key = destination_path(self.scheduler.base_path, file.relative_path)
        log = get_log_service()
        log.info(
            "upload",
            "file_upload_started",
            f"Uploading {file.relative_path}",
            {
                "batch_id": self.batch_id,
                "path": file.relative_path,
                "destination": key,
                "size": file.size,
                "strategy": self.scheduler.strategy.name,
            },
        )
        self._emit(file_id, file, FileUploadState.uploading(0))

        last_percent = 0

        def on_progress(percent: int) -> None:
            nonlocal last_percent
            if percent > last_percent:
                last_percent = percent
                self._emit(file_id, file, FileUploadState.uploading(percent))

        outcome = upload_file(
            self.scheduler.strategy,
            self.scheduler.destination,
            key,
            file,
            on_progress,
            self.token,
        )
        with self._lock:
            self.outcomes[file_id] = outcome

        if isinstance(outcome, Succeeded):
            if last_percent < 100:
                self._emit(file_id, file, FileUploadState.uploading(100))
            self._emit(file_id, file, FileUploadState.done())
            log.info(
                "upload",
                "file_upload_completed",
                f"Uploaded {file.relative_path}",
                {
                    "batch_id": self.batch_id,
                    "path": file.relative_path,
                    "destination": key,
                    "checksum": outcome.checksum,
                },
            )
            return

        cause = outcome.cause
        if not isinstance(cause, UploadCancelled):
            self._stop_dispatch.set()
        self._emit(file_id, file, FileUploadState.error(str(cause)))
        log.error(
            "upload",
            "file_upload_failed",
            f"Failed to upload {file.relative_path}: {cause}",
            {
                "batch_id": self.batch_id,
                "path": file.relative_path,
                "destination": key,
                "error_type": type(cause).__name__,
                "error": str(cause),
            },
        )
