"""Pytest configuration and fixtures for the jzfs_upload tests."""

import threading
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from flask import Flask
from flask.testing import FlaskClient

import jzfs_upload.services.log_service as log_module
from jzfs_upload.services.api_client import StagingLocation
from jzfs_upload.services.errors import (
    LinkError,
    PresignError,
    ProxiedUploadError,
    UploadCancelled,
)
from jzfs_upload.services.files import FileDescriptor
from jzfs_upload.services.log_service import LogService
from jzfs_upload.services.transport import CancellationToken, TransferResponse


@pytest.fixture(autouse=True)
def log_service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> LogService:
    """Route JSONL event logs into a temporary directory for every test."""
    svc = LogService(tmp_path / "logs")
    monkeypatch.setattr(log_module, "_log_service", svc)
    return svc


@pytest.fixture
def app() -> Generator[Flask, None, None]:
    """Create application for testing."""
    from jzfs_upload import create_app

    app = create_app()
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def make_files(tmp_path: Path) -> Callable[..., list[FileDescriptor]]:
    """Factory writing small local files and returning their descriptors."""

    def factory(count: int, prefix: str = "file", size: int = 100) -> list[FileDescriptor]:
        src = tmp_path / "src"
        src.mkdir(exist_ok=True)
        files = []
        for i in range(count):
            path = src / f"{prefix}_{i}.csv"
            path.write_bytes(bytes([i % 256]) * size)
            files.append(FileDescriptor.from_local_path(str(path), f"dir/{prefix}_{i}.csv"))
        return files

    return factory


class FakeObjects:
    """In-memory stand-in for ObjectsApi with concurrency bookkeeping."""

    def __init__(
        self,
        fail_paths: tuple[str, ...] = (),
        hold_until: int = 0,
        block_until_cancelled: bool = False,
        progress: tuple[int, ...] = (50,),
    ) -> None:
        self.fail_paths = set(fail_paths)
        self.hold_until = hold_until
        self.block_until_cancelled = block_until_cancelled
        self.progress = progress
        self.calls: list[str] = []
        self.aborted: list[str] = []
        self.active = 0
        self.peak = 0
        self._started = 0
        self._all_started = threading.Event()
        self._lock = threading.Lock()

    def upload(
        self,
        repo_id: str,
        ref_id: str,
        path: str,
        file: FileDescriptor,
        on_progress: Callable[[int], None] | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        with self._lock:
            self.calls.append(path)
            self.active += 1
            self.peak = max(self.peak, self.active)
            self._started += 1
            if self._started >= self.hold_until:
                self._all_started.set()
        try:
            if self.hold_until:
                self._all_started.wait(timeout=5)
            for percent in self.progress:
                if on_progress:
                    on_progress(percent)
            if self.block_until_cancelled and token is not None:
                if not token.wait(timeout=5):
                    raise AssertionError("token never fired")
                with self._lock:
                    self.aborted.append(path)
                raise UploadCancelled("Upload cancelled")
            if path in self.fail_paths:
                raise ProxiedUploadError(f"Failed to upload {path}: HTTP 500")
        finally:
            with self._lock:
                self.active -= 1


class FakeStaging:
    """In-memory stand-in for StagingApi recording get and link calls."""

    def __init__(
        self,
        fail_get: tuple[str, ...] = (),
        fail_link: tuple[str, ...] = (),
    ) -> None:
        self.fail_get = set(fail_get)
        self.fail_link = set(fail_link)
        self.gets: list[str] = []
        self.links: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def get(self, repo_id: str, ref_id: str, path: str, presign: bool = True) -> StagingLocation:
        with self._lock:
            self.gets.append(path)
        if path in self.fail_get:
            raise PresignError(f"Failed to get upload target for {path}: branch is read-only")
        return StagingLocation(
            physical_address=f"s3://bucket/data/{path}",
            presigned_url=f"https://bucket.s3.amazonaws.com/data/{path}?X-Amz-Signature=abc",
        )

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
        if path in self.fail_link:
            raise LinkError(f"Failed to link {path}: conflict")
        record = {
            "path": path,
            "location": location,
            "checksum": checksum,
            "size_bytes": size_bytes,
            "content_type": content_type,
        }
        with self._lock:
            self.links.append(record)
        return record


class FakeTransfer:
    """Stand-in for upload_with_progress returning a canned response."""

    def __init__(
        self,
        status: int = 200,
        etag: str | None = '"d41d8cd98f00b204e9800998ecf8427e"',
        content_md5: str | None = None,
    ) -> None:
        self.status = status
        self.etag = etag
        self.content_md5 = content_md5
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self,
        url: str,
        file: FileDescriptor,
        method: str = "PUT",
        on_progress: Callable[[int], None] | None = None,
        additional_headers: dict[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> TransferResponse:
        self.calls.append(
            {"url": url, "file": file, "method": method, "headers": additional_headers}
        )
        if on_progress:
            on_progress(50)
            on_progress(100)
        return TransferResponse(
            status=self.status,
            body="",
            content_type=None,
            etag=self.etag,
            content_md5=self.content_md5,
        )


@pytest.fixture
def fake_objects() -> type[FakeObjects]:
    """The FakeObjects class, to be instantiated per test."""
    return FakeObjects


@pytest.fixture
def fake_staging() -> type[FakeStaging]:
    """The FakeStaging class, to be instantiated per test."""
    return FakeStaging


@pytest.fixture
def fake_transfer() -> type[FakeTransfer]:
    """The FakeTransfer class, to be instantiated per test."""
    return FakeTransfer
