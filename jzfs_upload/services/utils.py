"""Shared utility functions for app services."""


def destination_path(base_path: str | None, relative_path: str) -> str:
    """Build the object key for a file inside the destination path.

    Backslashes become forward slashes and one leading slash is dropped from the
    relative path before it is appended to the base path verbatim.

    Args:
        base_path: Destination prefix typed by the user (may be empty)
        relative_path: Path of the file relative to the selection root

    Returns:
        Object key (e.g., "data/2024/file.csv")
    """
    normalized = relative_path.replace("\\", "/")
    if normalized.startswith("/"):
        normalized = normalized[1:]
    return f"{base_path or ''}{normalized}"
