"""Upload strategies: presigned direct-to-storage or proxied through the server."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from jzfs_upload.services.api_client import ObjectsApi, StagingApi
from jzfs_upload.services.checksum import extract_checksum
from jzfs_upload.services.errors import TransportError
from jzfs_upload.services.files import FileDescriptor
from jzfs_upload.services.transport import (
    CancellationToken,
    ProgressCallback,
    TransferResponse,
    upload_with_progress,
)

logger = logging.getLogger(__name__)


class BackendKind(Enum):
    """Block store behind the repository."""

    S3 = "s3"
    AZURE = "azure"
    GCS = "gs"
    LOCAL = "local"
    MEM = "mem"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> "BackendKind":
        """Map a configured blockstore type to a kind ("gcs" is accepted for "gs")."""
        normalized = value.strip().lower()
        if normalized == "gcs":
            return cls.GCS
        for kind in cls:
            if kind.value == normalized:
                return kind
        return cls.OTHER


# Extra headers the block store requires on a presigned PUT
BACKEND_UPLOAD_HEADERS: dict[BackendKind, dict[str, str]] = {
    BackendKind.AZURE: {"x-ms-blob-type": "BlockBlob"},
}


@dataclass(frozen=True)
class UploadConfig:
    """Server capabilities that decide how files are uploaded."""

    presign_capable: bool = False
    storage_backend_kind: BackendKind = BackendKind.LOCAL


@dataclass(frozen=True)
class Destination:
    """Repository and branch a batch is uploaded into."""

    repo_id: str
    ref_id: str


@dataclass(frozen=True)
class Succeeded:
    """A file was uploaded and is visible on the branch."""

    checksum: str
    size: int
    content_type: str


@dataclass(frozen=True)
class Failed:
    """A file could not be uploaded."""

    cause: BaseException


UploadOutcome = Succeeded | Failed

Transfer = Callable[..., TransferResponse]


def additional_headers(kind: BackendKind) -> dict[str, str] | None:
    """Headers required by the block store on a direct upload, if any."""
    headers = BACKEND_UPLOAD_HEADERS.get(kind)
    return dict(headers) if headers else None


class PresignStrategy:
    """Upload bytes straight to the block store, then link the object."""

    name = "presign"

    def __init__(
        self,
        staging: StagingApi,
        backend: BackendKind,
        transfer: Transfer = upload_with_progress,
    ) -> None:
        self.staging = staging
        self.backend = backend
        self.transfer = transfer

    def upload(
        self,
        destination: Destination,
        key: str,
        file: FileDescriptor,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> Succeeded:
        """Upload one file via a presigned URL.

        Raises:
            PresignError: If no upload target could be obtained
            TransportError: If the block store answered with an error status
            LinkError: If the object could not be linked after the transfer
            UploadCancelled: If the batch was cancelled mid-transfer
        """
        location = self.staging.get(destination.repo_id, destination.ref_id, key, presign=True)
        response = self.transfer(
            location.presigned_url,
            file,
            "PUT",
            on_progress,
            additional_headers(self.backend),
            token,
        )
        if response.status >= 400:
            raise TransportError(response.status)

        checksum = extract_checksum(response.content_md5, response.etag)
        if not checksum:
            logger.warning("No checksum in storage response for %s", key)
        # Bytes are in the block store from here on; a failed link leaves them orphaned
        self.staging.link(
            destination.repo_id,
            destination.ref_id,
            key,
            location,
            checksum,
            file.size,
            file.mime_type,
        )
        return Succeeded(checksum=checksum, size=file.size, content_type=file.mime_type)


class ProxiedStrategy:
    """Send bytes to the server, which stores and links them in one call."""

    name = "proxied"

    def __init__(self, objects: ObjectsApi) -> None:
        self.objects = objects

    def upload(
        self,
        destination: Destination,
        key: str,
        file: FileDescriptor,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> Succeeded:
        """Upload one file through the objects API.

        Raises:
            ProxiedUploadError: If the server rejected the upload
            UploadCancelled: If the batch was cancelled mid-transfer
        """
        self.objects.upload(
            destination.repo_id, destination.ref_id, key, file, on_progress, token
        )
        return Succeeded(checksum="", size=file.size, content_type=file.mime_type)


UploadStrategy = PresignStrategy | ProxiedStrategy


def select_strategy(
    config: UploadConfig,
    staging: StagingApi,
    objects: ObjectsApi,
    transfer: Transfer = upload_with_progress,
) -> UploadStrategy:
    """Pick the upload strategy for a whole batch from static configuration."""
    if config.presign_capable:
        return PresignStrategy(staging, config.storage_backend_kind, transfer)
    return ProxiedStrategy(objects)
