"""Data models for NoteVault."""

import datetime
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum, IntEnum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# The reserved category every note falls back to. It always exists and is
# never deleted.
UNFILED_CATEGORY_ID = 0
UNFILED_CATEGORY_NAME = "Unfiled"

# Record ids are stored as signed 64-bit integers
MAX_RECORD_ID = 2**63 - 1
MIN_RECORD_ID = -(2**63)

# selected_category value meaning "show every category"
ALL_CATEGORIES = -1


def utc_now() -> datetime.datetime:
    """Get current UTC time as a timezone-aware datetime, to the millisecond."""
    return truncate_to_millis(datetime.datetime.now(timezone.utc))


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes; everything stored is UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


def truncate_to_millis(dt_value: datetime.datetime) -> datetime.datetime:
    """Drop sub-millisecond precision, which the backup format cannot carry."""
    return dt_value.replace(microsecond=(dt_value.microsecond // 1000) * 1000)


def from_epoch_millis(millis: int) -> datetime.datetime:
    """Convert milliseconds since the epoch to an aware UTC datetime.

    Raises:
        ValueError: If the result falls outside the datetime range.
    """
    epoch = datetime.datetime(1970, 1, 1, tzinfo=timezone.utc)
    try:
        return epoch + datetime.timedelta(milliseconds=millis)
    except OverflowError as e:
        raise ValueError(f"Timestamp {millis} ms is out of range") from e


def to_epoch_millis(dt_value: datetime.datetime) -> int:
    """Convert a datetime to milliseconds since the epoch."""
    epoch = datetime.datetime(1970, 1, 1, tzinfo=timezone.utc)
    delta = ensure_timezone_aware(dt_value) - epoch
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


class PrivacyLevel(IntEnum):
    """How a note's content is protected.

    Any stored value of ENCRYPTED or above means the content is ciphertext.
    """

    PUBLIC = 0
    PRIVATE = 1  # Private, stored as plaintext
    ENCRYPTED = 2  # Private, stored as ciphertext


class MergePolicy(str, Enum):
    """How an imported record set interacts with the live store."""

    CLEAN = "clean"  # Wipe the store, then insert everything
    REVERT = "revert"  # Overwrite records with the same identity
    UPDATE = "update"  # Overwrite records with the same identity if newer
    ADD = "add"  # Insert everything, never overwrite
    TEST = "test"  # Validate only, change nothing

    @property
    def imports_preferences(self) -> bool:
        return self in (MergePolicy.CLEAN, MergePolicy.REVERT, MergePolicy.UPDATE)

    @property
    def mutates(self) -> bool:
        return self is not MergePolicy.TEST


class Category(BaseModel):
    """A named group of notes."""

    id: Optional[int] = Field(default=None, description="Category ID")
    name: str = Field(..., description="Unique category name")

    model_config = {"validate_assignment": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Category name cannot be empty")
        return v

    @property
    def is_unfiled(self) -> bool:
        return self.id == UNFILED_CATEGORY_ID

    def __str__(self) -> str:
        return f"{self.id}:{self.name}"


class Note(BaseModel):
    """A note.

    ``(id, create_time)`` is the note's reconciliation identity: two notes
    sharing an id but created at different times are different records.
    """

    id: Optional[int] = Field(default=None, description="Note ID, assigned on insert")
    category_id: int = Field(
        default=UNFILED_CATEGORY_ID, description="ID of the note's category"
    )
    create_time: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    mod_time: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last modified (UTC)"
    )
    privacy: int = Field(default=PrivacyLevel.PUBLIC, ge=0, description="Privacy level")
    content: Optional[str] = Field(
        default=None, description="Plaintext content (public and private notes)"
    )
    encrypted_content: Optional[bytes] = Field(
        default=None, description="Ciphertext content (encrypted notes)"
    )

    model_config = {"validate_assignment": True}

    @field_validator("create_time", "mod_time")
    @classmethod
    def validate_timestamp(cls, v: datetime.datetime) -> datetime.datetime:
        """Store timestamps as UTC with millisecond precision."""
        return truncate_to_millis(ensure_timezone_aware(v))

    @model_validator(mode="after")
    def validate_content_matches_privacy(self) -> "Note":
        if self.privacy >= PrivacyLevel.ENCRYPTED:
            if self.encrypted_content is None:
                raise ValueError("Encrypted notes must carry encrypted_content")
        elif self.content is None:
            raise ValueError("Unencrypted notes must carry plaintext content")
        return self

    @property
    def is_private(self) -> bool:
        return self.privacy >= PrivacyLevel.PRIVATE

    @property
    def is_encrypted(self) -> bool:
        return self.privacy >= PrivacyLevel.ENCRYPTED

    def with_plaintext(self, content: str, privacy: int) -> "Note":
        """Copy of this note holding plaintext at the given privacy level."""
        return self.model_copy(
            update={"content": content, "encrypted_content": None, "privacy": privacy}
        )

    def with_ciphertext(self, ciphertext: bytes) -> "Note":
        """Copy of this note holding ciphertext, marked encrypted."""
        return self.model_copy(
            update={
                "content": None,
                "encrypted_content": ciphertext,
                "privacy": PrivacyLevel.ENCRYPTED,
            }
        )


class MetadataItem(BaseModel):
    """A named opaque value kept alongside the notes."""

    id: Optional[int] = None
    name: str
    value: Optional[bytes] = None


class SortOrder(IntEnum):
    """Note list orderings a user can select."""

    CONTENT = 0  # lower(note), then newest first
    MODIFIED = 1  # newest first


class NotePreferences(BaseModel):
    """User preferences. Only a subset travels with backups."""

    sort_order: int = Field(default=SortOrder.CONTENT, ge=0)
    show_private: bool = False
    show_encrypted: bool = False
    show_category: bool = False
    selected_category: int = ALL_CATEGORIES
    export_file: Optional[str] = None
    export_private: bool = False
    import_file: Optional[str] = None
    import_type: MergePolicy = MergePolicy.UPDATE
    import_private: bool = False

    model_config = {"validate_assignment": True}


# Names used for preferences in the backup document
PREFERENCE_KEYS: Dict[str, str] = {
    "sort_order": "SortOrder",
    "show_private": "ShowPrivate",
    "show_encrypted": "ShowEncrypted",
    "show_category": "ShowCategory",
    "selected_category": "SelectedCategory",
    "export_file": "ExportFile",
    "export_private": "ExportPrivate",
    "import_file": "ImportFile",
    "import_type": "ImportType",
    "import_private": "ImportPrivate",
}

# Preferences restored from a backup; the rest describe the local device
IMPORTABLE_PREFERENCES = ("sort_order", "show_category", "selected_category")


# =============================================================================
# Decoded backup document
# =============================================================================


@dataclass
class PreferencesSection:
    """Raw preference values keyed by their backup names."""

    values: Dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class MetadataSection:
    items: List[MetadataItem] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def get(self, name: str) -> Optional[MetadataItem]:
        for item in self.items:
            if item.name == name:
                return item
        return None


@dataclass
class CategoriesSection:
    categories: List[Category] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.categories)


@dataclass
class NotesSection:
    notes: List[Note] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.notes)

    @property
    def has_encrypted(self) -> bool:
        return any(note.is_encrypted for note in self.notes)


@dataclass
class RecordSet:
    """A decoded backup. Every section is optional."""

    preferences: Optional[PreferencesSection] = None
    metadata: Optional[MetadataSection] = None
    categories: Optional[CategoriesSection] = None
    notes: Optional[NotesSection] = None
    db_version: Optional[int] = None
    exported: Optional[datetime.datetime] = None

    @property
    def total_items(self) -> int:
        """Number of entries an import works through, for progress reporting."""
        return sum(
            len(section)
            for section in (self.preferences, self.categories, self.notes)
            if section is not None
        )
