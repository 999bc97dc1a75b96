"""Tests for upload strategy selection and the two upload paths."""

import base64
from collections.abc import Callable
from typing import Any

import pytest

from jzfs_upload.services.errors import LinkError, PresignError, TransportError
from jzfs_upload.services.files import FileDescriptor
from jzfs_upload.services.strategy import (
    BackendKind,
    Destination,
    PresignStrategy,
    ProxiedStrategy,
    Succeeded,
    UploadConfig,
    additional_headers,
    select_strategy,
)

DEST = Destination("repo", "main")


class TestBackendKind:
    """Tests for BackendKind parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("s3", BackendKind.S3),
            ("AZURE", BackendKind.AZURE),
            ("gs", BackendKind.GCS),
            ("gcs", BackendKind.GCS),
            ("local", BackendKind.LOCAL),
            ("minio-ish", BackendKind.OTHER),
        ],
    )
    def test_parse(self, value: str, expected: BackendKind) -> None:
        """Test mapping of configured blockstore types."""
        assert BackendKind.parse(value) == expected

    def test_only_azure_needs_headers(self) -> None:
        """Test the per-backend header lookup."""
        assert additional_headers(BackendKind.AZURE) == {"x-ms-blob-type": "BlockBlob"}
        for kind in (BackendKind.S3, BackendKind.GCS, BackendKind.LOCAL):
            assert additional_headers(kind) is None


class TestSelectStrategy:
    """Tests for select_strategy."""

    def test_presign_capable(self, fake_staging: Any, fake_objects: Any) -> None:
        """Test that presign support selects the presign path."""
        strategy = select_strategy(
            UploadConfig(True, BackendKind.S3), fake_staging(), fake_objects()
        )
        assert isinstance(strategy, PresignStrategy)
        assert strategy.backend == BackendKind.S3

    def test_not_presign_capable(self, fake_staging: Any, fake_objects: Any) -> None:
        """Test that the proxied path is the default."""
        strategy = select_strategy(UploadConfig(), fake_staging(), fake_objects())
        assert isinstance(strategy, ProxiedStrategy)


class TestPresignStrategy:
    """Tests for the presigned upload path."""

    def test_upload_links_with_etag_checksum(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test presign, transfer and link with the de-quoted ETag."""
        file = make_files(1)[0]
        staging = fake_staging()
        transfer = fake_transfer(etag='"abc123"')
        strategy = PresignStrategy(staging, BackendKind.S3, transfer)

        result = strategy.upload(DEST, "data/a.csv", file)

        assert result == Succeeded(checksum="abc123", size=file.size, content_type="text/csv")
        assert staging.gets == ["data/a.csv"]
        assert transfer.calls[0]["method"] == "PUT"
        assert transfer.calls[0]["url"].startswith("https://bucket.s3.amazonaws.com/")
        assert transfer.calls[0]["headers"] is None
        link = staging.links[0]
        assert link["checksum"] == "abc123"
        assert link["size_bytes"] == file.size
        assert link["content_type"] == "text/csv"

    def test_content_md5_checksum(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that a base64 Content-MD5 is linked as hex."""
        file = make_files(1)[0]
        staging = fake_staging()
        md5 = base64.b64encode(bytes.fromhex("0f" * 16)).decode()
        strategy = PresignStrategy(
            staging, BackendKind.AZURE, fake_transfer(etag=None, content_md5=md5)
        )

        strategy.upload(DEST, "a.csv", file)

        assert staging.links[0]["checksum"] == "0f" * 16

    def test_azure_sends_blob_type(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that Azure uploads carry the BlockBlob header."""
        transfer = fake_transfer()
        PresignStrategy(fake_staging(), BackendKind.AZURE, transfer).upload(
            DEST, "a.csv", make_files(1)[0]
        )
        assert transfer.calls[0]["headers"] == {"x-ms-blob-type": "BlockBlob"}

    def test_progress_forwarded(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that transfer progress reaches the caller."""
        seen: list[int] = []
        PresignStrategy(fake_staging(), BackendKind.S3, fake_transfer()).upload(
            DEST, "a.csv", make_files(1)[0], seen.append
        )
        assert seen == [50, 100]

    def test_presign_failure_skips_transfer(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that a presign error aborts before any bytes move."""
        transfer = fake_transfer()
        staging = fake_staging(fail_get=("a.csv",))

        with pytest.raises(PresignError):
            PresignStrategy(staging, BackendKind.S3, transfer).upload(
                DEST, "a.csv", make_files(1)[0]
            )

        assert transfer.calls == []
        assert staging.links == []

    @pytest.mark.parametrize("status", [400, 403, 500])
    def test_error_status_skips_link(
        self,
        status: int,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that a failed transfer is never linked."""
        staging = fake_staging()

        with pytest.raises(TransportError) as exc_info:
            PresignStrategy(staging, BackendKind.S3, fake_transfer(status=status)).upload(
                DEST, "a.csv", make_files(1)[0]
            )

        assert exc_info.value.status == status
        assert staging.links == []

    def test_redirect_status_is_not_an_error(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that statuses below 400 proceed to link."""
        staging = fake_staging()
        PresignStrategy(staging, BackendKind.S3, fake_transfer(status=304)).upload(
            DEST, "a.csv", make_files(1)[0]
        )
        assert len(staging.links) == 1

    def test_link_failure_is_fatal(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that a link error fails the file after the bytes moved."""
        transfer = fake_transfer()
        staging = fake_staging(fail_link=("a.csv",))

        with pytest.raises(LinkError):
            PresignStrategy(staging, BackendKind.S3, transfer).upload(
                DEST, "a.csv", make_files(1)[0]
            )

        assert len(transfer.calls) == 1

    def test_missing_checksum_still_links(
        self,
        make_files: Callable[..., list[FileDescriptor]],
        fake_staging: Any,
        fake_transfer: Any,
    ) -> None:
        """Test that an empty checksum is not fatal."""
        staging = fake_staging()
        result = PresignStrategy(
            staging, BackendKind.LOCAL, fake_transfer(etag=None, content_md5=None)
        ).upload(DEST, "a.csv", make_files(1)[0])

        assert result.checksum == ""
        assert staging.links[0]["checksum"] == ""


class TestProxiedStrategy:
    """Tests for the proxied upload path."""

    def test_upload(
        self, make_files: Callable[..., list[FileDescriptor]], fake_objects: Any
    ) -> None:
        """Test that the objects API receives the file."""
        objects = fake_objects()
        file = make_files(1)[0]
        seen: list[int] = []

        result = ProxiedStrategy(objects).upload(DEST, "data/a.csv", file, seen.append)

        assert objects.calls == ["data/a.csv"]
        assert seen == [50]
        assert result.size == file.size
