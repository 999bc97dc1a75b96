"""Upload manager owning the life cycle of a batch upload session."""

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from jzfs_upload.config import get_settings
from jzfs_upload.services.api_client import ApiClient, ObjectsApi, StagingApi
from jzfs_upload.services.files import FileDescriptor
from jzfs_upload.services.log_service import get_log_service
from jzfs_upload.services.scheduler import (
    DEFAULT_CONCURRENCY,
    BatchOutcome,
    BatchScheduler,
    FileEvent,
    FileStatus,
    FileUploadState,
)
from jzfs_upload.services.strategy import (
    Destination,
    Transfer,
    UploadConfig,
    select_strategy,
)
from jzfs_upload.services.transport import CancellationToken, upload_with_progress
from jzfs_upload.services.utils import destination_path

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]


class BatchStatus(Enum):
    """Status of the batch session."""

    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"


_OUTCOME_STATUS = {
    BatchOutcome.COMPLETED: BatchStatus.COMPLETED,
    BatchOutcome.CANCELLED: BatchStatus.CANCELLED,
    BatchOutcome.FAILED: BatchStatus.FAILED,
}


@dataclass
class BatchSession:
    """One run of the current file selection."""

    batch_id: str
    files: list[FileDescriptor]
    base_path: str
    token: CancellationToken = field(default_factory=CancellationToken)
    status: BatchStatus = BatchStatus.RUNNING
    per_file_state: dict[int, FileUploadState] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    error: str | None = None
    finished_notified: bool = False
    hide_requested: bool = False

    @property
    def duration_seconds(self) -> float | None:
        """Wall-clock duration of the run."""
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def count(self, status: FileStatus) -> int:
        """Number of files currently in a given state."""
        return sum(
            1
            for i in range(len(self.files))
            if self.per_file_state.get(i, FileUploadState()).status == status
        )


class BatchController:
    """Stateful upload session: file selection, start, cancel, reset.

    All file state changes arrive through one runner thread, and the per-file map is
    swapped wholesale under a lock, so snapshots never show a torn view.
    """

    def __init__(
        self,
        config: UploadConfig,
        staging: StagingApi,
        objects: ObjectsApi,
        destination: Destination,
        path: str = "",
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        on_done: Callable[[], None] | None = None,
        on_hide: Callable[[], None] | None = None,
        transfer: Transfer = upload_with_progress,
    ) -> None:
        self.config = config
        self.staging = staging
        self.objects = objects
        self.destination = destination
        self.original_path = path
        self.concurrency_limit = concurrency_limit
        self.on_done = on_done
        self.on_hide = on_hide
        self.transfer = transfer

        self._path = path
        self._files: list[FileDescriptor] = []
        self._session: BatchSession | None = None
        self._runner: threading.Thread | None = None
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()

    # -- selection -----------------------------------------------------------------

    @property
    def status(self) -> BatchStatus:
        with self._lock:
            return self._session.status if self._session else BatchStatus.IDLE

    @property
    def is_running(self) -> bool:
        return self.status == BatchStatus.RUNNING

    @property
    def path(self) -> str:
        return self._path

    @property
    def files(self) -> list[FileDescriptor]:
        with self._lock:
            return list(self._files)

    def set_path(self, path: str) -> bool:
        """Change the destination path; refused while a batch is running."""
        with self._lock:
            if self.is_running:
                return False
            self._path = path
            return True

    def set_files(self, files: Iterable[FileDescriptor]) -> bool:
        """Replace the file selection; refused while a batch is running.

        Raises:
            ValueError: If two files share a relative path
        """
        new_files = list(files)
        paths = [f.relative_path for f in new_files]
        if len(paths) != len(set(paths)):
            raise ValueError("Files in a batch must have unique paths")
        with self._lock:
            if self.is_running:
                return False
            self._files = new_files
            return True

    def add_files(self, files: Iterable[FileDescriptor]) -> bool:
        """Append files to the selection; refused while a batch is running."""
        with self._lock:
            return self.set_files(self._files + list(files))

    def remove_file(self, relative_path: str) -> bool:
        """Drop a candidate from the selection; refused while a batch is running."""
        with self._lock:
            if self.is_running:
                return False
            remaining = [f for f in self._files if f.relative_path != relative_path]
            if len(remaining) == len(self._files):
                return False
            self._files = remaining
            return True

    # -- observers -----------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        """Register a callable receiving file and batch events as dicts."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _publish(self, message: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(message)
            except Exception:
                logger.warning("Upload event listener failed", exc_info=True)

    # -- commands ------------------------------------------------------------------

    def start(self) -> bool:
        """Start uploading the current selection in the background.

        Returns:
            False if there are no files or a batch is already running
        """
        with self._lock:
            if not self._files or self.is_running:
                return False

            session = BatchSession(
                batch_id=str(uuid.uuid4()),
                files=list(self._files),
                base_path=self._path,
            )
            session.per_file_state = {i: FileUploadState() for i in range(len(session.files))}
            self._session = session
            strategy = select_strategy(self.config, self.staging, self.objects, self.transfer)
            scheduler = BatchScheduler(
                strategy, self.destination, session.base_path, self.concurrency_limit
            )
            runner = threading.Thread(target=self._run, args=(session, scheduler), daemon=True)
            self._runner = runner

        total_bytes = sum(f.size for f in session.files)
        get_log_service().info(
            "batch",
            "batch_started",
            f"Started upload of {len(session.files)} files",
            {
                "batch_id": session.batch_id,
                "total_files": len(session.files),
                "total_bytes": total_bytes,
                "repository": self.destination.repo_id,
                "branch": self.destination.ref_id,
                "path": session.base_path,
                "strategy": strategy.name,
            },
        )
        runner.start()
        return True

    def request_cancel(self) -> bool:
        """Abort the running batch.

        With no batch started there is no token to fire; local state is cleared instead.

        Returns:
            True if a running batch was signalled
        """
        with self._lock:
            session = self._session
            if session is None:
                self._clear()
                return False
            if session.status != BatchStatus.RUNNING:
                return False
            session.token.cancel()

        self._log_cancel(session)
        return True

    def _log_cancel(self, session: BatchSession) -> None:
        get_log_service().warning(
            "batch",
            "batch_cancel_requested",
            f"Cancellation requested for batch {session.batch_id}",
            {"batch_id": session.batch_id},
        )

    def reset(self) -> bool:
        """Return to idle from a terminal (or idle) state.

        Clears the selection and per-file state, restores the original destination
        path and discards the cancellation token.
        """
        with self._lock:
            if self.is_running:
                return False
            batch_id = self._session.batch_id if self._session else None
            self._clear()

        if batch_id:
            get_log_service().info(
                "batch", "batch_reset", "Upload session reset", {"batch_id": batch_id}
            )
        return True

    def hide(self) -> None:
        """Close the upload session.

        A running batch is cancelled first; the session is reset and the hide
        callback invoked once it has settled.
        """
        with self._lock:
            session = self._session
            running = session is not None and session.status == BatchStatus.RUNNING
            if running:
                # hide_requested is only ever set together with firing the token
                session.hide_requested = True
                session.token.cancel()
        if running:
            self._log_cancel(session)
            return
        self.reset()
        if self.on_hide:
            self.on_hide()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the background run finishes.

        Returns:
            True if no run is in progress when this returns
        """
        runner = self._runner
        if runner is None:
            return True
        runner.join(timeout)
        return not runner.is_alive()

    def _clear(self) -> None:
        self._session = None
        self._files = []
        self._path = self.original_path

    # -- runner --------------------------------------------------------------------

    def _run(self, session: BatchSession, scheduler: BatchScheduler) -> None:
        outcome: BatchOutcome
        try:
            run = scheduler.run(session.files, session.token, session.batch_id)
            for event in run:
                self._apply(session, event)
            outcome = run.outcome or BatchOutcome.FAILED
        except Exception as e:
            logger.exception("Batch %s crashed", session.batch_id)
            session.error = str(e)
            outcome = BatchOutcome.CANCELLED if session.token.cancelled else BatchOutcome.FAILED

        self._finish(session, outcome)

    def _apply(self, session: BatchSession, event: FileEvent) -> None:
        with self._lock:
            current = session.per_file_state.get(event.file_id, FileUploadState())
            if not current.can_become(event.state):
                logger.debug(
                    "Ignoring out-of-order state %s for %s",
                    event.state.status.value,
                    event.file.relative_path,
                )
                return
            updated = dict(session.per_file_state)
            updated[event.file_id] = event.state
            session.per_file_state = updated
            if event.state.status == FileStatus.ERROR and session.error is None:
                session.error = event.state.error_message

        self._publish(
            {
                "type": "file",
                "batch_id": session.batch_id,
                "file_id": event.file_id,
                "path": event.file.relative_path,
                "state": event.state.to_dict(),
            }
        )

    def _finish(self, session: BatchSession, outcome: BatchOutcome) -> None:
        with self._lock:
            session.status = _OUTCOME_STATUS[outcome]
            session.completed_at = datetime.now(UTC)
            if outcome == BatchOutcome.CANCELLED:
                # Failures during cancellation are not reported
                session.error = None
            notify = outcome != BatchOutcome.FAILED and not session.finished_notified
            session.finished_notified = session.finished_notified or notify
            summary = self._session_dict(session)
            # Listeners get the outcome in the same step that ends the Running status
            self._publish({"type": "batch_finished", "outcome": outcome.value, "batch": summary})

        log = get_log_service()
        uploaded = session.count(FileStatus.DONE)
        failed = session.count(FileStatus.ERROR)
        log_fn = log.error if outcome == BatchOutcome.FAILED else log.info
        log_fn(
            "batch",
            "batch_finished",
            f"Upload batch {outcome.value}: {uploaded} uploaded, {failed} failed",
            {
                "batch_id": session.batch_id,
                "outcome": outcome.value,
                "uploaded": uploaded,
                "failed": failed,
                "queued": session.count(FileStatus.QUEUED),
                "duration_seconds": session.duration_seconds,
            },
        )
        try:
            log.save_batch_jsonl(session.batch_id, summary, session.completed_at)
        except OSError:
            logger.warning("Failed to save batch JSONL summary", exc_info=True)

        if notify and self.on_done:
            self.on_done()
        if not session.hide_requested:
            return
        with self._lock:
            # A newer session started since then is left alone
            hidden = self._session is session and self.reset()
        if hidden and self.on_hide:
            self.on_hide()

    # -- snapshots -----------------------------------------------------------------

    def _session_dict(self, session: BatchSession) -> dict[str, Any]:
        states = session.per_file_state
        files = []
        for i, f in enumerate(session.files):
            entry = f.to_dict()
            entry["file_id"] = i
            entry["destination"] = destination_path(session.base_path, f.relative_path)
            entry["state"] = states.get(i, FileUploadState()).to_dict()
            files.append(entry)
        return {
            "batch_id": session.batch_id,
            "status": session.status.value,
            "path": session.base_path,
            "files": files,
            "total_files": len(session.files),
            "total_bytes": sum(f.size for f in session.files),
            "files_queued": session.count(FileStatus.QUEUED),
            "files_uploading": session.count(FileStatus.UPLOADING),
            "files_done": session.count(FileStatus.DONE),
            "files_failed": session.count(FileStatus.ERROR),
            "started_at": session.started_at.isoformat(),
            "completed_at": session.completed_at.isoformat() if session.completed_at else None,
            "duration_seconds": session.duration_seconds,
            "error": session.error,
        }

    def snapshot(self) -> dict[str, Any]:
        """Consistent view of the session for presentation."""
        with self._lock:
            session = self._session
            if session is None:
                files = []
                for f in self._files:
                    entry = f.to_dict()
                    entry["destination"] = destination_path(self._path, f.relative_path)
                    entry["state"] = None
                    files.append(entry)
                return {
                    "batch_id": None,
                    "status": BatchStatus.IDLE.value,
                    "path": self._path,
                    "files": files,
                    "total_files": len(self._files),
                    "total_bytes": sum(f.size for f in self._files),
                    "error": None,
                }
            return self._session_dict(session)


def create_batch_controller(**kwargs: Any) -> BatchController:
    """Build a controller wired to the configured jzfs endpoint."""
    settings = get_settings()
    client = ApiClient(
        settings.api_endpoint,
        credentials=settings.credentials,
        timeout=settings.request_timeout,
    )
    return BatchController(
        config=settings.upload_config,
        staging=StagingApi(client),
        objects=ObjectsApi(client),
        destination=Destination(settings.repository, settings.branch),
        concurrency_limit=settings.max_parallel_uploads,
        **kwargs,
    )


# Global controller instance
_batch_controller: BatchController | None = None


def get_batch_controller() -> BatchController:
    """Get the global batch controller instance."""
    global _batch_controller
    if _batch_controller is None:
        _batch_controller = create_batch_controller()
    return _batch_controller
