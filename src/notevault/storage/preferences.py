"""JSON file store for user preferences."""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from notevault.config import config
from notevault.exceptions import ErrorCode, StorageError
from notevault.models.schema import NotePreferences

logger = logging.getLogger(__name__)


class PreferencesStore:
    """Loads and saves NotePreferences as a small JSON document."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else config.get_preferences_path()
        self._lock = threading.Lock()

    def load(self) -> NotePreferences:
        """Read preferences, falling back to defaults for a missing or bad file."""
        with self._lock:
            if not self.path.exists():
                return NotePreferences()
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                return NotePreferences(**data)
            except (OSError, json.JSONDecodeError, TypeError, PydanticValidationError) as e:
                logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
                return NotePreferences()

    def save(self, preferences: NotePreferences) -> None:
        """Write preferences atomically via a temp file."""
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                temp_file = self.path.with_suffix(".tmp")
                with open(temp_file, "w", encoding="utf-8") as f:
                    json.dump(preferences.model_dump(mode="json"), f, indent=2)
                os.replace(temp_file, self.path)
            except OSError as e:
                raise StorageError(
                    "Failed to save preferences",
                    operation="save preferences",
                    path=str(self.path),
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

    def update(self, **changes: Any) -> NotePreferences:
        """Apply field changes and save. Unknown fields raise ValueError."""
        preferences = self.load()
        for name, value in changes.items():
            if name not in NotePreferences.model_fields:
                raise ValueError(f"Unknown preference: {name}")
            setattr(preferences, name, value)
        self.save(preferences)
        return preferences
