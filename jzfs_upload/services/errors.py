"""Exception hierarchy for batch uploads.

Every failure that can end a single file's upload derives from UploadError so the
single-file boundary can turn it into a Failed outcome. UploadCancelled is raised when
the batch cancellation token fires mid-transfer; it is not counted as a failure.
"""


class UploadError(Exception):
    """Base class for errors that end one file's upload."""


class ApiError(UploadError):
    """Error response from the jzfs API."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PresignError(UploadError):
    """A presigned upload target could not be obtained."""


class TransportError(UploadError):
    """The byte transfer to the storage backend returned an error status."""

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"Error uploading file: HTTP {status}")
        self.status = status


class LinkError(UploadError):
    """Bytes reached storage but linking the object metadata failed.

    The object may exist in the backing store without a catalog entry.
    """


class ProxiedUploadError(UploadError):
    """The server-side (proxied) upload failed."""


class UploadCancelled(UploadError):
    """The batch was cancelled while this file was in flight."""
