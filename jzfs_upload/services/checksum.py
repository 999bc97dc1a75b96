"""Checksum normalization for storage backend upload responses."""

import base64
import binascii


def extract_checksum(content_md5: str | None, etag: str | None) -> str:
    """Convert a backend's integrity metadata into a lowercase hex string.

    A base64 Content-MD5 (Azure, GCS) is decoded and hex-encoded. Otherwise the ETag
    (S3 and compatibles) is returned with quotes and spaces removed; it is not re-hashed,
    so it may belong to another hash family depending on the backend.

    Args:
        content_md5: Base64 encoded binary digest, if the response carried one
        etag: ETag header value, if the response carried one

    Returns:
        Hex digest, de-quoted ETag, or "" when neither is usable
    """
    if content_md5:
        try:
            return base64.b64decode(content_md5).hex()
        except (binascii.Error, ValueError):
            pass
    if etag:
        return etag.replace('"', "").replace(" ", "")
    return ""
