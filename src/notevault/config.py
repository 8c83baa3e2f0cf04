"""Configuration module for NoteVault."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notevault import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default data directory
_USER_ENV = Path.home() / ".notevault" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteVaultConfig(BaseModel):
    """Configuration for the note store and its import/export services."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEVAULT_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEVAULT_DATABASE_PATH", "data/db/notevault.db")
        )
    )
    # When True, uses an in-memory SQLite database (contents are lost on exit)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTEVAULT_IN_MEMORY_DB", "false")
    )
    # User preferences (sort order, selected category, last import/export file)
    preferences_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEVAULT_PREFERENCES_PATH", "data/preferences.json")
        )
    )
    default_export_file: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEVAULT_EXPORT_FILE", "notes.xml")
        )
    )
    # When True, each import runs inside a single store transaction so a
    # failure part way through leaves the store unchanged.
    atomic_import: bool = Field(
        default_factory=lambda: _env_flag("NOTEVAULT_ATOMIC_IMPORT", "true")
    )
    # Logging configuration
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEVAULT_LOG_DIR"))
            if os.getenv("NOTEVAULT_LOG_DIR")
            else None
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_LOG_LEVEL", "INFO").upper()
    )
    app_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_log_level(self) -> "NoteVaultConfig":
        """Reject log levels the logging module does not know."""
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"log_level must be one of {', '.join(_LOG_LEVELS)}, "
                f"got {self.log_level!r}"
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite:///:memory:"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_preferences_path(self) -> Path:
        """Get the absolute path to the preferences file."""
        return self.get_absolute_path(self.preferences_path)


# Create a global config instance
config = NoteVaultConfig()
