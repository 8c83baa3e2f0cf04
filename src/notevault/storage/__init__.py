"""Storage layer for NoteVault."""

from notevault.storage.note_repository import NoteRepository
from notevault.storage.preferences import PreferencesStore

__all__ = [
    "NoteRepository",
    "PreferencesStore",
]
