"""Configuration management for jzfs_upload"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from jzfs_upload.services.strategy import BackendKind, UploadConfig

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_API_ENDPOINT = "JZFS_API_ENDPOINT"
ENV_ACCESS_KEY_ID = "JZFS_ACCESS_KEY_ID"
ENV_SECRET_ACCESS_KEY = "JZFS_SECRET_ACCESS_KEY"
ENV_REPOSITORY = "JZFS_REPOSITORY"
ENV_BRANCH = "JZFS_BRANCH"
ENV_PRESIGN_SUPPORT = "JZFS_PRESIGN_SUPPORT"
ENV_BLOCKSTORE_TYPE = "JZFS_BLOCKSTORE_TYPE"
ENV_LOG_DIRECTORY = "JZFS_LOG_DIRECTORY"

MAX_PARALLEL_UPLOADS = 5

_TRUE_VALUES = {"1", "true", "yes", "on"}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


class Settings:
    """Manages application settings stored in JSON format."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        defaults: dict[str, Any] = {
            "api_endpoint": "http://localhost:34913/api/v1",
            "access_key_id": "",
            "secret_access_key": "",
            "repository": "",
            "branch": "main",
            "presign_support": False,
            "blockstore_type": BackendKind.LOCAL.value,
            "max_parallel_uploads": MAX_PARALLEL_UPLOADS,
            "request_timeout": 30,
            "log_directory": str(BASE_DIR / "logs"),
        }

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        if SETTINGS_FILE.exists():
            with open(SETTINGS_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        env_overrides = {
            "api_endpoint": os.environ.get(ENV_API_ENDPOINT),
            "access_key_id": os.environ.get(ENV_ACCESS_KEY_ID),
            "secret_access_key": os.environ.get(ENV_SECRET_ACCESS_KEY),
            "repository": os.environ.get(ENV_REPOSITORY),
            "branch": os.environ.get(ENV_BRANCH),
            "presign_support": os.environ.get(ENV_PRESIGN_SUPPORT),
            "blockstore_type": os.environ.get(ENV_BLOCKSTORE_TYPE),
            "log_directory": os.environ.get(ENV_LOG_DIRECTORY),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is not None:
                defaults[key] = value

        self._settings = defaults

    @property
    def api_endpoint(self) -> str:
        """Get the base URL of the jzfs API."""
        return str(self._settings.get("api_endpoint", "")).rstrip("/")

    @property
    def credentials(self) -> tuple[str, str] | None:
        """Get the access key pair, or None when no key id is configured."""
        key_id = str(self._settings.get("access_key_id", ""))
        if not key_id:
            return None
        return key_id, str(self._settings.get("secret_access_key", ""))

    @property
    def repository(self) -> str:
        """Get the target repository id."""
        return str(self._settings.get("repository", ""))

    @property
    def branch(self) -> str:
        """Get the target branch id."""
        return str(self._settings.get("branch", "main"))

    @property
    def max_parallel_uploads(self) -> int:
        """Get the worker pool size for batch uploads."""
        return int(self._settings.get("max_parallel_uploads", MAX_PARALLEL_UPLOADS))

    @property
    def request_timeout(self) -> float:
        """Get the HTTP timeout in seconds for API calls."""
        return float(self._settings.get("request_timeout", 30))

    @property
    def log_directory(self) -> Path:
        """Get the directory for JSONL event logs."""
        return Path(str(self._settings.get("log_directory", BASE_DIR / "logs")))

    @property
    def upload_config(self) -> UploadConfig:
        """Build the read-only upload configuration for a batch."""
        return UploadConfig(
            presign_capable=_as_bool(self._settings.get("presign_support", False)),
            storage_backend_kind=BackendKind.parse(
                str(self._settings.get("blockstore_type", BackendKind.LOCAL.value))
            ),
        )


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
