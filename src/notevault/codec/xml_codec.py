"""Reading and writing the XML backup format.

The decoder turns a backup document into a typed :class:`RecordSet`; the
encoder does the reverse. Neither touches the store.
"""

import base64
import binascii
import datetime
import logging
import re
import xml.etree.ElementTree as ET
from datetime import timezone
from typing import Any, Dict, List, Optional

from notevault.exceptions import MalformedInput, ValidationError
from notevault.models.schema import (
    IMPORTABLE_PREFERENCES,
    MAX_RECORD_ID,
    MIN_RECORD_ID,
    PREFERENCE_KEYS,
    CategoriesSection,
    Category,
    MergePolicy,
    MetadataItem,
    MetadataSection,
    Note,
    NotePreferences,
    NotesSection,
    PreferencesSection,
    PrivacyLevel,
    RecordSet,
    ensure_timezone_aware,
    from_epoch_millis,
)

logger = logging.getLogger(__name__)

DOCUMENT_TAG = "NotePadApp"
PREFERENCES_TAG = "Preferences"
METADATA_TAG = "Metadata"
CATEGORIES_TAG = "Categories"
ITEMS_TAG = "NoteList"

# Version of the store schema written into exports
DATABASE_VERSION = 1

BASE64_LINE_LENGTH = 64

_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z")
_NUMBER_PATTERN = re.compile(r"-?\d+(\.\d*)?")
_BASE64_PATTERN = re.compile(r"[A-Za-z0-9+/\-_]*")
_WHITESPACE = re.compile(r"\s+")
# Characters XML 1.0 cannot carry, not even as character references
_XML_FORBIDDEN = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


# =============================================================================
# Scalars
# =============================================================================


def format_timestamp(value: datetime.datetime) -> str:
    """Format a timestamp as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    value = ensure_timezone_aware(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(text: Optional[str]) -> datetime.datetime:
    """Parse an exported timestamp.

    Accepts the ISO form written by current exports and the raw
    milliseconds-since-epoch numbers written by older ones.

    Raises:
        ValueError: If the text is neither.
    """
    text = (text or "").strip()
    if _DATE_PATTERN.fullmatch(text):
        parsed = datetime.datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%fZ")
        return parsed.replace(tzinfo=timezone.utc)
    if _NUMBER_PATTERN.fullmatch(text):
        return from_epoch_millis(int(text.split(".")[0]))
    raise ValueError(f"Cannot interpret {text!r} as a date")


def encode_base64(data: bytes) -> str:
    """Encode bytes with the URL-safe alphabet, unpadded, 64 characters per line."""
    encoded = base64.urlsafe_b64encode(bytes(data)).decode("ascii").rstrip("=")
    return "\n".join(
        encoded[i : i + BASE64_LINE_LENGTH]
        for i in range(0, len(encoded), BASE64_LINE_LENGTH)
    )


def decode_base64(text: Optional[str]) -> bytes:
    """Decode Base64 written with either alphabet.

    Whitespace and padding are ignored.

    Raises:
        ValueError: On characters outside both alphabets or a truncated value.
    """
    compact = _WHITESPACE.sub("", text or "").rstrip("=")
    if not _BASE64_PATTERN.fullmatch(compact):
        raise ValueError("Invalid Base64 character")
    compact = compact.replace("+", "-").replace("/", "_")
    try:
        return base64.urlsafe_b64decode(compact + "=" * (-len(compact) % 4))
    except binascii.Error as e:
        raise ValueError(f"Invalid Base64 data: {e}") from e


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered not in ("true", "false"):
        raise ValueError(f"{text!r} is not a boolean")
    return lowered == "true"


# =============================================================================
# Preferences
# =============================================================================


def preferences_to_section(preferences: NotePreferences) -> PreferencesSection:
    """Render preferences with their backup names and string values."""
    values: Dict[str, str] = {}
    for field_name, key in PREFERENCE_KEYS.items():
        value = getattr(preferences, field_name)
        if value is None:
            continue
        if isinstance(value, bool):
            values[key] = _format_bool(value)
        elif isinstance(value, MergePolicy):
            values[key] = value.value
        elif isinstance(value, int):
            values[key] = str(int(value))
        else:
            values[key] = str(value)
    return PreferencesSection(values=values)


def importable_preferences(section: PreferencesSection) -> Dict[str, Any]:
    """Pick out the preferences a backup may restore.

    Values that do not parse are logged and left out; they never fail an
    import.
    """
    parsers = {
        "sort_order": int,
        "show_category": _parse_bool,
        "selected_category": int,
    }
    updates: Dict[str, Any] = {}
    for field_name in IMPORTABLE_PREFERENCES:
        key = PREFERENCE_KEYS[field_name]
        if key not in section.values:
            continue
        raw = section.values[key]
        try:
            value = parsers[field_name](raw.strip())
            if field_name == "sort_order" and value < 0:
                raise ValueError("sort order cannot be negative")
        except ValueError as e:
            logger.warning(f"Ignoring invalid {key} preference {raw!r}: {e}")
            continue
        updates[field_name] = value
    return updates


# =============================================================================
# Decoding
# =============================================================================


def _text(element: Optional[ET.Element]) -> Optional[str]:
    """All text inside an element, or None when it has none."""
    if element is None:
        return None
    parts = list(element.itertext())
    return "".join(parts) if parts else None


def _map_children(parent: ET.Element) -> Dict[str, ET.Element]:
    children: Dict[str, ET.Element] = {}
    for child in parent:
        if child.tag in children:
            raise MalformedInput(
                f"{parent.tag} has multiple {child.tag} children", element=parent.tag
            )
        children[child.tag] = child
    return children


def _list_children(parent: ET.Element, child_name: str) -> List[ET.Element]:
    children = list(parent)
    for position, child in enumerate(children, start=1):
        if child.tag != child_name:
            raise MalformedInput(
                f"Child {position} of {parent.tag} is not {child_name}",
                element=parent.tag,
                position=position,
            )
    return children


def _int_attribute(element: ET.Element, name: str) -> int:
    value = element.get(name)
    if value is None:
        raise ValueError(f"missing {name} attribute")
    number = int(value.strip())
    if not MIN_RECORD_ID <= number <= MAX_RECORD_ID:
        raise ValueError(f"{name} {number} is outside the 64-bit id range")
    return number


def _decode_metadata(element: ET.Element) -> MetadataItem:
    name = element.get("name")
    if not name:
        raise ValueError("missing name attribute")
    text = _text(element)
    value = decode_base64(text) if text and text.strip() else None
    return MetadataItem(id=_int_attribute(element, "id"), name=name, value=value)


def _decode_category(element: ET.Element) -> Category:
    return Category(id=_int_attribute(element, "id"), name=_text(element) or "")


def _decode_note(element: ET.Element) -> Note:
    children = _map_children(element)
    privacy = PrivacyLevel.PUBLIC
    if (element.get("private") or "").strip().lower() == "true":
        encryption = (element.get("encryption") or "").strip()
        privacy = int(encryption) if encryption else PrivacyLevel.PRIVATE
    for required in ("created", "modified"):
        if required not in children:
            raise ValueError(f"missing {required} element")
    content = _text(children.get("note")) or ""
    fields: Dict[str, Any] = {
        "id": _int_attribute(element, "id"),
        "category_id": _int_attribute(element, "category"),
        "create_time": parse_timestamp(children["created"].get("time")),
        "mod_time": parse_timestamp(children["modified"].get("time")),
        "privacy": privacy,
    }
    if privacy >= PrivacyLevel.ENCRYPTED:
        fields["encrypted_content"] = decode_base64(content)
    else:
        fields["content"] = content
    return Note(**fields)


def _decode_list(parent: ET.Element, child_name: str, decode) -> List[Any]:
    records = []
    for position, child in enumerate(_list_children(parent, child_name), start=1):
        try:
            records.append(decode(child))
        except ValueError as e:
            # pydantic's ValidationError is a ValueError
            raise MalformedInput(
                f"Invalid {child_name} in {parent.tag}: {e}",
                element=parent.tag,
                position=position,
            ) from e
    return records


def decode_record_set(data: bytes) -> RecordSet:
    """Decode a backup document.

    Raises:
        MalformedInput: If the document is not well-formed XML or does not
            follow the backup structure.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise MalformedInput(f"Not a well-formed XML document: {e}") from e
    if root.tag != DOCUMENT_TAG:
        raise MalformedInput(f"Document root is not {DOCUMENT_TAG}", element=root.tag)

    record_set = RecordSet()
    db_version = root.get("db-version")
    if db_version and db_version.strip().isdigit():
        record_set.db_version = int(db_version)
    exported = root.get("exported")
    if exported:
        try:
            record_set.exported = parse_timestamp(exported)
        except ValueError:
            logger.warning(f"Ignoring unreadable export time {exported!r}")

    sections = _map_children(root)
    if PREFERENCES_TAG in sections:
        values = {
            tag: (_text(child) or "")
            for tag, child in _map_children(sections[PREFERENCES_TAG]).items()
        }
        record_set.preferences = PreferencesSection(values=values)
    if METADATA_TAG in sections:
        record_set.metadata = MetadataSection(
            items=_decode_list(sections[METADATA_TAG], "item", _decode_metadata)
        )
    if CATEGORIES_TAG in sections:
        record_set.categories = CategoriesSection(
            categories=_decode_list(sections[CATEGORIES_TAG], "category", _decode_category)
        )
    if ITEMS_TAG in sections:
        record_set.notes = NotesSection(
            notes=_decode_list(sections[ITEMS_TAG], "item", _decode_note)
        )

    logger.debug(
        f"Decoded backup: db-version={record_set.db_version}, "
        f"{len(record_set.metadata or [])} metadata, "
        f"{len(record_set.categories or [])} categories, "
        f"{len(record_set.notes or [])} notes"
    )
    return record_set


# =============================================================================
# Encoding
# =============================================================================


def _xml_text(text: str, field: str, record_id: Optional[int]) -> str:
    """Return text unchanged, or raise if XML cannot represent it."""
    match = _XML_FORBIDDEN.search(text)
    if match:
        raise ValidationError(
            f"{field} of record {record_id} contains character "
            f"U+{ord(match.group()):04X}, which a backup cannot hold",
            field=field,
            value=record_id,
        )
    return text


def _encode_note(parent: ET.Element, note: Note) -> None:
    item = ET.SubElement(parent, "item", id=str(note.id), category=str(note.category_id))
    if note.privacy != PrivacyLevel.PUBLIC:
        item.set("private", "true")
        if note.privacy > PrivacyLevel.PRIVATE:
            item.set("encryption", str(int(note.privacy)))
    ET.SubElement(item, "created", time=format_timestamp(note.create_time))
    ET.SubElement(item, "modified", time=format_timestamp(note.mod_time))
    body = ET.SubElement(item, "note")
    if note.is_encrypted:
        body.text = encode_base64(note.encrypted_content)
    else:
        body.text = _xml_text(note.content or "", "content", note.id)


def encode_record_set(record_set: RecordSet) -> bytes:
    """Encode a record set as a UTF-8 backup document.

    Sections that are None are left out; records are written in the order
    they appear in the record set.
    """
    exported = record_set.exported or datetime.datetime.now(timezone.utc)
    root = ET.Element(
        DOCUMENT_TAG,
        {
            "db-version": str(record_set.db_version or DATABASE_VERSION),
            "exported": format_timestamp(exported),
        },
    )

    if record_set.preferences is not None:
        section = ET.SubElement(root, PREFERENCES_TAG)
        for key, value in record_set.preferences.values.items():
            ET.SubElement(section, key).text = value

    if record_set.metadata is not None:
        section = ET.SubElement(root, METADATA_TAG)
        for item in record_set.metadata.items:
            element = ET.SubElement(section, "item", id=str(item.id), name=item.name)
            if item.value is not None:
                element.text = encode_base64(item.value)

    if record_set.categories is not None:
        section = ET.SubElement(root, CATEGORIES_TAG)
        for category in record_set.categories.categories:
            ET.SubElement(section, "category", id=str(category.id)).text = _xml_text(
                category.name, "name", category.id
            )

    if record_set.notes is not None:
        section = ET.SubElement(root, ITEMS_TAG)
        for note in record_set.notes.notes:
            _encode_note(section, note)

    ET.indent(root, space="    ")
    # A literal CR would be read back as a line feed
    body = ET.tostring(root, encoding="unicode").replace("\r", "&#13;")
    return ('<?xml version="1.0" encoding="utf-8"?>\n' + body + "\n").encode("utf-8")
