"""Client for the jzfs staging and objects APIs."""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import requests

from jzfs_upload.services.errors import (
    ApiError,
    LinkError,
    PresignError,
    ProxiedUploadError,
    UploadCancelled,
)
from jzfs_upload.services.files import FileDescriptor
from jzfs_upload.services.transport import CancellationToken, ProgressCallback, ProgressReader

logger = logging.getLogger(__name__)


def _error_message(response: requests.Response) -> str:
    """Extract the server's error message, falling back to the status line."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return f"HTTP {response.status_code} {response.reason or ''}".strip()


class ApiClient:
    """Minimal HTTP client bound to a jzfs API endpoint."""

    def __init__(
        self,
        endpoint: str,
        credentials: tuple[str, str] | None = None,
        timeout: float = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if credentials:
            self.session.auth = credentials

    def branch_url(self, repo_id: str, ref_id: str, resource: str) -> str:
        """Build the URL of a branch-scoped resource."""
        return (
            f"{self.endpoint}/repositories/{quote(repo_id, safe='')}"
            f"/branches/{quote(ref_id, safe='')}/{resource}"
        )

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send a request, raising ApiError on an error status.

        Raises:
            ApiError: On HTTP status >= 400 or a connection failure
        """
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise ApiError(str(e)) from e
        if response.status_code >= 400:
            raise ApiError(_error_message(response), response.status_code)
        return response


@dataclass(frozen=True)
class StagingLocation:
    """Where the client should put an object's bytes before linking it."""

    physical_address: str
    presigned_url: str | None = None
    token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StagingLocation":
        return cls(
            physical_address=str(data.get("physical_address", "")),
            presigned_url=data.get("presigned_url"),
            token=data.get("token"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"physical_address": self.physical_address}
        if self.presigned_url is not None:
            data["presigned_url"] = self.presigned_url
        if self.token is not None:
            data["token"] = self.token
        return data


class StagingApi:
    """Issues presigned upload targets and links uploaded objects into a branch."""

    def __init__(self, client: ApiClient) -> None:
        self.client = client

    def get(self, repo_id: str, ref_id: str, path: str, presign: bool = True) -> StagingLocation:
        """Get a physical address (and presigned URL) for a new object.

        Raises:
            PresignError: If the branch is not writable or the path is invalid
        """
        url = self.client.branch_url(repo_id, ref_id, "staging/backing")
        params = {"path": path, "presign": str(presign).lower()}
        try:
            response = self.client.request("GET", url, params=params)
            location = StagingLocation.from_dict(response.json())
        except ApiError as e:
            raise PresignError(f"Failed to get upload target for {path}: {e}") from e
        except ValueError as e:
            raise PresignError(f"Invalid staging response for {path}") from e
        if presign and not location.presigned_url:
            raise PresignError(f"No presigned URL returned for {path}")
        return location

    def link(
        self,
        repo_id: str,
        ref_id: str,
        path: str,
        location: StagingLocation,
        checksum: str,
        size_bytes: int,
        content_type: str,
    ) -> dict[str, Any]:
        """Link bytes already written to a staging location as an object.

        Raises:
            LinkError: If the server refused to link the object
        """
        url = self.client.branch_url(repo_id, ref_id, "staging/backing")
        body = {
            "staging": location.to_dict(),
            "checksum": checksum,
            "size_bytes": size_bytes,
            "content_type": content_type,
        }
        try:
            response = self.client.request("PUT", url, params={"path": path}, json=body)
        except ApiError as e:
            raise LinkError(f"Failed to link {path}: {e}") from e
        try:
            result = response.json()
        except ValueError:
            return {}
        return result if isinstance(result, dict) else {}


class ObjectsApi:
    """Uploads objects through the jzfs server."""

    def __init__(self, client: ApiClient) -> None:
        self.client = client

    def upload(
        self,
        repo_id: str,
        ref_id: str,
        path: str,
        file: FileDescriptor,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        """Stream a file to the server, which stores and links it.

        Raises:
            ProxiedUploadError: If the upload failed
            UploadCancelled: If the token fired during the upload
        """
        url = self.client.branch_url(repo_id, ref_id, "objects")
        headers = {"Content-Type": "application/octet-stream"}
        try:
            with open(file.local_path, "rb") as fh:
                reader = ProgressReader(fh, file.size, on_progress, token)
                self.client.request(
                    "POST", url, params={"path": path}, data=reader, headers=headers
                )
        except ApiError as e:
            if token is not None and token.cancelled:
                raise UploadCancelled("Upload cancelled") from None
            raise ProxiedUploadError(f"Failed to upload {path}: {e}") from e
        except OSError as e:
            raise ProxiedUploadError(f"Failed to read {file.local_path}: {e}") from e
        logger.debug("Proxied upload of %s finished", path)
