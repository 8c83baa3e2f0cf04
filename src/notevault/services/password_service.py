"""Setting, changing and clearing the store password."""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from notevault.encryption import (
    METADATA_PASSWORD_HASH,
    EncryptionKey,
    PasswordInput,
    PasswordRecord,
    unlock,
)
from notevault.encryption import new_password as create_password
from notevault.exceptions import (
    ErrorCode,
    PasswordMismatch,
    PasswordRequired,
    SecurityError,
    ValidationError,
)
from notevault.models.schema import PrivacyLevel
from notevault.observability import timed_operation
from notevault.services.worker import ProgressTracker
from notevault.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class PasswordTransition(str, Enum):
    ENCRYPTING = "ENCRYPTING"  # no password -> password
    DECRYPTING = "DECRYPTING"  # password -> no password
    REENCRYPTING = "REENCRYPTING"  # password -> different password
    UNCHANGED = "UNCHANGED"  # no password -> no password


@dataclass
class PasswordChangeSummary:
    transition: PasswordTransition
    notes_changed: int = 0
    decrypted: int = 0
    encrypted: int = 0
    missing: int = 0


class PasswordService:
    """Re-keys every private note of a store in one transaction."""

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    def get_password_record(self) -> Optional[PasswordRecord]:
        """The stored verification record, or None when no password is set."""
        item = self.repository.get_metadata(METADATA_PASSWORD_HASH)
        if item is None or not item.value:
            return None
        return PasswordRecord.from_bytes(item.value)

    def has_password(self) -> bool:
        return self.get_password_record() is not None

    def unlock_store(self, password: PasswordInput) -> EncryptionKey:
        """Verify the store password and derive its key.

        Raises:
            PasswordMismatch: If no password is set or the password is wrong.
        """
        record = self.get_password_record()
        if record is None:
            raise PasswordMismatch("No password is set for this store")
        return unlock(password, record)

    def change_password(
        self,
        old_password: Optional[PasswordInput] = None,
        new_password: Optional[PasswordInput] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> PasswordChangeSummary:
        """Set, change or clear the store password.

        The old password is checked before anything is touched. All notes
        are then re-keyed and the stored hash replaced in a single
        transaction: either every private note moves to the new state or
        none does.

        Raises:
            PasswordRequired: A password is set but ``old_password`` is None.
            PasswordMismatch: ``old_password`` is wrong, or was given while
                no password is set.
            SecurityError: A note could not be decrypted; nothing changed.
            TransactionFailure: The store rejected the change; nothing changed.
        """
        progress = progress or ProgressTracker()
        if new_password is not None and len(new_password) == 0:
            raise ValidationError("The new password cannot be empty", field="new_password")

        with self.repository.operation_lock:
            record = self.get_password_record()
            old_key: Optional[EncryptionKey] = None
            new_key: Optional[EncryptionKey] = None
            try:
                if old_password is not None:
                    if record is None:
                        raise PasswordMismatch("No password is set for this store")
                    old_key = unlock(old_password, record)
                    transition = (
                        PasswordTransition.DECRYPTING
                        if new_password is None
                        else PasswordTransition.REENCRYPTING
                    )
                else:
                    if record is not None:
                        raise PasswordRequired("The current password is required")
                    transition = (
                        PasswordTransition.UNCHANGED
                        if new_password is None
                        else PasswordTransition.ENCRYPTING
                    )

                if transition is PasswordTransition.UNCHANGED:
                    logger.debug("No password set and none requested; nothing to do")
                    return PasswordChangeSummary(transition)

                new_record: Optional[PasswordRecord] = None
                if new_password is not None:
                    new_record, new_key = create_password(new_password)

                with timed_operation("change_password", transition=transition.value) as op:
                    summary = self._rekey_store(
                        transition, old_key, new_key, new_record, progress
                    )
                    op["notes"] = summary.notes_changed
                logger.info(
                    f"Password change ({transition.value}): "
                    f"{summary.decrypted} notes decrypted, {summary.encrypted} encrypted"
                )
                return summary
            finally:
                for key in (old_key, new_key):
                    if key is not None:
                        key.forget()

    def _rekey_store(
        self,
        transition: PasswordTransition,
        old_key: Optional[EncryptionKey],
        new_key: Optional[EncryptionKey],
        new_record: Optional[PasswordRecord],
        progress: ProgressTracker,
    ) -> PasswordChangeSummary:
        summary = PasswordChangeSummary(transition)
        with self.repository.transaction("change password"):
            note_ids = self.repository.get_private_note_ids()
            progress.start(transition.value, len(note_ids))

            for note_id in note_ids:
                note = self.repository.get_note(note_id)
                if note is None:
                    logger.warning(f"Note #{note_id} disappeared while changing the password")
                    summary.missing += 1
                    progress.advance()
                    continue

                content = note.content
                if note.is_encrypted:
                    if old_key is None:
                        raise SecurityError(
                            f"Note #{note_id} is encrypted but no password is set",
                            note_id=note_id,
                            processed=summary.notes_changed,
                        )
                    try:
                        content = old_key.decrypt(note.encrypted_content)
                    except SecurityError as e:
                        raise SecurityError(
                            f"Unable to decrypt note #{note_id}: {e.message}",
                            note_id=note_id,
                            processed=summary.notes_changed,
                        ) from e
                    summary.decrypted += 1

                if new_key is not None:
                    try:
                        note = note.with_ciphertext(new_key.encrypt(content))
                    except SecurityError as e:
                        raise SecurityError(
                            f"Unable to encrypt note #{note_id}: {e.message}",
                            note_id=note_id,
                            code=ErrorCode.ENCRYPTION_FAILED,
                            processed=summary.notes_changed,
                        ) from e
                    summary.encrypted += 1
                else:
                    note = note.with_plaintext(content, PrivacyLevel.PRIVATE)

                self.repository.update_note(note)
                summary.notes_changed += 1
                progress.advance()

            if new_record is None:
                self.repository.delete_metadata(METADATA_PASSWORD_HASH)
            else:
                self.repository.set_metadata(METADATA_PASSWORD_HASH, new_record.to_bytes())
        return summary
