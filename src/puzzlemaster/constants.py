"""Stable constants shared across puzzlemaster layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STORE_SCHEMA_VERSION: Final[int] = 1
IMPORT_SCHEMA_VERSION: Final[int] = 1

# Runtime environments and the store file each one uses by default.
ENVIRONMENTS: Final[tuple[str, ...]] = ("development", "production", "test")
DEFAULT_ENVIRONMENT: Final[str] = "development"
DEFAULT_DB_FILES: Final[dict[str, str]] = {
    "development": "puzzlemaster-dev.db",
    "production": "puzzlemaster-prod.db",
    "test": "puzzlemaster-test.db",
}

# Default runtime paths (relative to the working directory unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("state/logs")

CONFIG_FILENAME: Final[str] = "puzzlemaster.toml"
ENV_PREFIX: Final[str] = "PUZZLEMASTER_"

__all__ = [
    "CONFIG_FILENAME",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_DB_FILES",
    "DEFAULT_ENVIRONMENT",
    "ENVIRONMENTS",
    "ENV_PREFIX",
    "IMPORT_SCHEMA_VERSION",
    "LOG_DIR",
    "STATE_DIR",
    "STORE_SCHEMA_VERSION",
]
