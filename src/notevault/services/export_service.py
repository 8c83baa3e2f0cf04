"""Exporting the store to a backup file."""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Optional, Union

from notevault.codec.xml_codec import DATABASE_VERSION, encode_record_set, preferences_to_section
from notevault.encryption import METADATA_PASSWORD_HASH
from notevault.exceptions import DestinationUnavailable
from notevault.models.schema import (
    CategoriesSection,
    MetadataSection,
    NotePreferences,
    NotesSection,
    RecordSet,
    utc_now,
)
from notevault.observability import timed_operation
from notevault.services.worker import OperationStage, ProgressTracker
from notevault.storage.note_repository import NoteRepository
from notevault.storage.preferences import PreferencesStore

logger = logging.getLogger(__name__)


@dataclass
class ExportSummary:
    destination: str
    include_private: bool
    preferences: int = 0
    metadata: int = 0
    categories: int = 0
    notes: int = 0


class ExportService:
    """Writes the whole store (optionally without private notes) as XML."""

    def __init__(self, repository: NoteRepository, preferences: Optional[PreferencesStore] = None):
        self.repository = repository
        self.preferences = preferences

    def build_record_set(
        self, include_private: bool, progress: Optional[ProgressTracker] = None
    ) -> RecordSet:
        """Collect store contents in export order.

        Categories are ordered by name and notes by id. The password hash
        and private notes are left out unless ``include_private`` is set.
        """
        progress = progress or ProgressTracker()
        prefs = self.preferences.load() if self.preferences is not None else NotePreferences()
        preferences = preferences_to_section(prefs)
        metadata = [
            item
            for item in self.repository.get_all_metadata()
            if include_private or item.name != METADATA_PASSWORD_HASH
        ]
        progress.start(OperationStage.SETTINGS.value, len(preferences) + len(metadata))
        progress.advance(len(preferences) + len(metadata))

        categories = self.repository.get_categories()
        progress.start(OperationStage.CATEGORIES.value, len(categories))
        progress.advance(len(categories))

        notes = self.repository.get_notes(include_private=include_private)
        progress.start(OperationStage.ITEMS.value, len(notes))
        progress.advance(len(notes))

        return RecordSet(
            preferences=preferences,
            metadata=MetadataSection(items=metadata),
            categories=CategoriesSection(categories=categories),
            notes=NotesSection(notes=notes),
            db_version=DATABASE_VERSION,
            exported=utc_now(),
        )

    def export_file(
        self,
        destination: Union[str, Path],
        include_private: bool = False,
        progress: Optional[ProgressTracker] = None,
    ) -> ExportSummary:
        """Export the store.

        The file is written to a temporary name first and moved into place,
        so an existing backup is never left half written.

        Raises:
            DestinationUnavailable: If the file cannot be written.
        """
        path = Path(destination)
        with timed_operation("export", include_private=include_private) as op:
            with self.repository.operation_lock:
                record_set = self.build_record_set(include_private, progress)
            data = encode_record_set(record_set)
            self._write_atomic(path, data)

            summary = ExportSummary(
                destination=str(path),
                include_private=include_private,
                preferences=len(record_set.preferences),
                metadata=len(record_set.metadata),
                categories=len(record_set.categories),
                notes=len(record_set.notes),
            )
            op["notes"] = summary.notes
        logger.info(
            f"Exported {summary.categories} categories and {summary.notes} notes "
            f"to {path.name}"
        )
        return summary

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        tmp = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = NamedTemporaryFile("wb", dir=str(path.parent), suffix=".tmp", delete=False)
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp.close()
            os.replace(tmp.name, path)
        except OSError as e:
            raise DestinationUnavailable(
                f"Cannot write {path.name}", path=str(path), original_error=e
            ) from e
        finally:
            if tmp is not None:
                tmp.close()
                if os.path.exists(tmp.name):
                    os.unlink(tmp.name)
