"""HTTP byte transfer with progress reporting and cooperative cancellation."""

import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import IO

import requests

from jzfs_upload.services.errors import UploadCancelled
from jzfs_upload.services.files import FileDescriptor

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

ProgressCallback = Callable[[int], None]


class CancellationToken:
    """Batch-wide abort signal shared by every in-flight transfer."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Fire the token. Idempotent."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the token fires or the timeout passes; True if it fired."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        """Raise UploadCancelled if the token has fired."""
        if self._event.is_set():
            raise UploadCancelled("Upload cancelled")


class ProgressReader:
    """File wrapper that reports read progress as a percentage.

    The token is checked before every chunk, so an aborted batch stops the
    transfer within one chunk.
    """

    def __init__(
        self,
        fileobj: IO[bytes],
        total: int,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self._fileobj = fileobj
        self.total = total
        self.sent = 0
        self._on_progress = on_progress
        self._token = token
        self._last_percent = -1

    def __len__(self) -> int:
        return self.total

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    def read(self, size: int = -1) -> bytes:
        if self._token is not None:
            self._token.raise_if_cancelled()
        chunk = self._fileobj.read(size)
        self.sent += len(chunk)
        self._report()
        return chunk

    def _report(self) -> None:
        if self._on_progress is None:
            return
        if self.total > 0:
            percent = min(100, self.sent * 100 // self.total)
        else:
            percent = 100
        if percent != self._last_percent:
            self._last_percent = percent
            self._on_progress(percent)


@dataclass(frozen=True)
class TransferResponse:
    """Relevant parts of the storage backend's response to a transfer."""

    status: int
    body: str
    content_type: str | None
    etag: str | None
    content_md5: str | None


def upload_with_progress(
    url: str,
    file: FileDescriptor,
    method: str = "PUT",
    on_progress: ProgressCallback | None = None,
    additional_headers: dict[str, str] | None = None,
    token: CancellationToken | None = None,
    session: requests.Session | None = None,
    timeout: float | None = None,
) -> TransferResponse:
    """Stream a local file to a URL.

    Error statuses are returned, not raised; the caller decides what they mean.

    Args:
        url: Target URL (typically presigned)
        file: File to send
        method: HTTP method
        on_progress: Called with 0..100 as bytes are sent
        additional_headers: Extra request headers (e.g., Azure blob type)
        token: Cancellation token polled on every chunk
        session: Session to send with (a fresh one is used otherwise)
        timeout: Socket timeout in seconds

    Returns:
        TransferResponse with status and integrity headers

    Raises:
        UploadCancelled: If the token fired before or during the transfer
        requests.RequestException: On connection-level failures
    """
    if token is not None:
        token.raise_if_cancelled()

    headers = {"Content-Type": file.mime_type or "application/octet-stream"}
    if additional_headers:
        headers.update(additional_headers)

    http = session or requests.Session()
    try:
        with open(file.local_path, "rb") as fh:
            reader = ProgressReader(fh, file.size, on_progress, token)
            response = http.request(method, url, data=reader, headers=headers, timeout=timeout)
    except UploadCancelled:
        raise
    except requests.RequestException:
        # Transports may wrap the abort raised from inside the body reader
        if token is not None and token.cancelled:
            raise UploadCancelled("Upload cancelled") from None
        raise
    finally:
        if session is None:
            http.close()

    logger.debug("Transfer to storage finished with HTTP %s", response.status_code)
    return TransferResponse(
        status=response.status_code,
        body=response.text,
        content_type=response.headers.get("Content-Type"),
        etag=response.headers.get("ETag"),
        content_md5=response.headers.get("Content-MD5"),
    )
