"""Merging incoming notes into the live store."""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from notevault.encryption import (
    METADATA_PASSWORD_HASH,
    EncryptionKey,
    PasswordInput,
    PasswordRecord,
    unlock,
)
from notevault.exceptions import MalformedInput, PasswordRequired, SecurityError
from notevault.models.schema import MergePolicy, Note, PrivacyLevel, RecordSet
from notevault.services.merge_session import MergeSession
from notevault.services.worker import ProgressTracker
from notevault.storage.note_repository import NoteRepository
from notevault.utils import preview_text

logger = logging.getLogger(__name__)

# Per-note log lines are only written for small imports
VERBOSE_LOG_LIMIT = 64


class _Operation(Enum):
    INSERT = "insert"
    UPDATE = "update"
    SKIP = "skip"


@dataclass
class NoteMergeResult:
    """Counts from one note merge. Skipped notes are also processed."""

    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0


def unlock_import(
    record_set: RecordSet,
    include_private: bool,
    old_password: Optional[PasswordInput],
) -> Optional[EncryptionKey]:
    """Check the backup's password before anything is imported.

    Returns the key that opens the backup's encrypted notes, or None when
    private notes are not being imported or the backup has no password.

    Raises:
        PasswordRequired: If the backup is password protected and no
            password was supplied.
        PasswordMismatch: If the supplied password does not match.
        MalformedInput: If the backup holds encrypted notes but no
            password hash, or the hash is unreadable.
    """
    if not include_private:
        return None

    item = record_set.metadata.get(METADATA_PASSWORD_HASH) if record_set.metadata else None
    if item is None or not item.value:
        if record_set.notes is not None and record_set.notes.has_encrypted:
            raise MalformedInput(
                "Backup contains encrypted notes but no password hash",
                element="Metadata",
            )
        return None

    if old_password is None:
        logger.debug("Backup is password protected")
        raise PasswordRequired("The backup is password protected")

    try:
        record = PasswordRecord.from_bytes(item.value)
    except SecurityError as e:
        raise MalformedInput(
            f"Unreadable password hash in backup: {e.message}", element="Metadata"
        ) from e
    # Raises PasswordMismatch
    return unlock(old_password, record)


class NoteReconciler:
    """Applies a merge policy to a list of incoming notes."""

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    def merge_notes(
        self,
        policy: MergePolicy,
        incoming: List[Note],
        include_private: bool,
        session: MergeSession,
        old_key: Optional[EncryptionKey] = None,
        store_key: Optional[EncryptionKey] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> NoteMergeResult:
        """Merge notes in input order.

        Args:
            policy: How incoming notes interact with live ones.
            incoming: Notes decoded from the backup.
            include_private: Import private notes; otherwise they are skipped.
            session: The merge session holding the category remap.
            old_key: Opens encrypted notes in the backup.
            store_key: When given, private notes are stored encrypted under
                it; otherwise they are stored as private plaintext.
            progress: Advanced once per note.

        Raises:
            SecurityError: If an encrypted note cannot be decrypted. The
                error carries the number of notes already processed.
        """
        progress = progress or ProgressTracker()
        result = NoteMergeResult()
        verbose = len(incoming) < VERBOSE_LOG_LIMIT
        logger.debug(f"Merging {len(incoming)} notes ({policy.value})")

        if policy is MergePolicy.CLEAN:
            self.repository.delete_all_notes()

        for original in incoming:
            note = original.model_copy(
                update={"category_id": session.remap_category(original.category_id)}
            )

            if note.is_private:
                if not include_private:
                    result.skipped += 1
                    result.processed += 1
                    progress.advance()
                    continue
                note = self._rekey(note, old_key, store_key, result.processed)

            existing = None
            if policy is not MergePolicy.CLEAN and note.id is not None:
                existing = self.repository.get_note(note.id)

            operation, note = self._decide(policy, note, existing, session)

            if operation is _Operation.INSERT:
                if verbose:
                    logger.debug(
                        f"Adding note {note.id}: "
                        f"{preview_text(note.content, private=note.is_private)!r}"
                    )
                stored = self.repository.insert_note(note)
                session.inserted_note_ids.add(stored.id)
                result.inserted += 1
            elif operation is _Operation.UPDATE:
                if verbose:
                    logger.debug(
                        f"Replacing note {note.id} "
                        f"{preview_text(existing.content, private=existing.is_private)!r} "
                        f"with {preview_text(note.content, private=note.is_private)!r}"
                    )
                self.repository.update_note(note)
                result.updated += 1
            else:
                result.skipped += 1

            result.processed += 1
            progress.advance()

        logger.info(
            f"Merged notes ({policy.value}): {result.processed} processed, "
            f"{result.inserted} added, {result.updated} replaced, "
            f"{result.skipped} skipped"
        )
        return result

    @staticmethod
    def _rekey(
        note: Note,
        old_key: Optional[EncryptionKey],
        store_key: Optional[EncryptionKey],
        processed: int,
    ) -> Note:
        """Move a private note from the backup's key to the store's."""
        content = note.content
        if note.is_encrypted:
            if old_key is None:
                raise SecurityError(
                    f"No key available to decrypt note #{note.id}",
                    note_id=note.id,
                    processed=processed,
                )
            try:
                content = old_key.decrypt(note.encrypted_content)
            except SecurityError as e:
                raise SecurityError(
                    f"Unable to decrypt note #{note.id}: {e.message}",
                    note_id=note.id,
                    processed=processed,
                ) from e

        if store_key is not None:
            return note.with_ciphertext(store_key.encrypt(content))
        return note.with_plaintext(content, PrivacyLevel.PRIVATE)

    @staticmethod
    def _decide(
        policy: MergePolicy,
        note: Note,
        existing: Optional[Note],
        session: MergeSession,
    ):
        """Pick the operation for a note, minting a new id where it collides."""
        if policy is MergePolicy.TEST:
            return _Operation.SKIP, note

        if policy is MergePolicy.CLEAN:
            if note.id is None or note.id in session.inserted_note_ids:
                note = note.model_copy(update={"id": session.note_ids.mint()})
            return _Operation.INSERT, note

        if existing is None:
            if note.id is None:
                note = note.model_copy(update={"id": session.note_ids.mint()})
            return _Operation.INSERT, note

        same_record = existing.create_time == note.create_time
        if policy is MergePolicy.REVERT and same_record:
            return _Operation.UPDATE, note
        if policy is MergePolicy.UPDATE and same_record:
            if note.mod_time > existing.mod_time:
                return _Operation.UPDATE, note
            return _Operation.SKIP, note

        # A different record that happens to share the id
        return _Operation.INSERT, note.model_copy(update={"id": session.note_ids.mint()})
