"""Local file descriptors for upload batches."""

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class FileDescriptor:
    """A local file selected for upload.

    relative_path identifies the file inside its batch; local_path is where the
    bytes are read from.
    """

    relative_path: str
    size: int
    mime_type: str
    local_path: str

    def __post_init__(self) -> None:
        if not self.relative_path:
            raise ValueError("relative_path must not be empty")
        if self.size < 0:
            raise ValueError("size must not be negative")

    @classmethod
    def from_local_path(cls, local_path: str, relative_path: str | None = None) -> "FileDescriptor":
        """Describe a file on disk.

        Args:
            local_path: Path of the file to read
            relative_path: Path inside the batch (defaults to the file name)

        Returns:
            FileDescriptor with size from stat and MIME type guessed from the name

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(local_path)
        if not path.is_file():
            raise FileNotFoundError(local_path)
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(
            relative_path=relative_path or path.name,
            size=path.stat().st_size,
            mime_type=mime_type or "application/octet-stream",
            local_path=str(path.absolute()),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "path": self.relative_path,
            "size": self.size,
            "mime_type": self.mime_type,
            "local_path": self.local_path,
        }
