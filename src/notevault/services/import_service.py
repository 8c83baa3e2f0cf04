"""Importing a backup file into the store."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from notevault.codec.xml_codec import decode_record_set, importable_preferences
from notevault.config import config
from notevault.encryption import EncryptionKey, PasswordInput
from notevault.exceptions import ErrorCode, SourceUnavailable, ValidationError
from notevault.models.schema import ALL_CATEGORIES, MergePolicy, RecordSet
from notevault.observability import timed_operation
from notevault.services.category_reconciler import CategoryReconciler
from notevault.services.merge_session import MergeSession
from notevault.services.note_reconciler import NoteMergeResult, NoteReconciler, unlock_import
from notevault.services.password_service import PasswordService
from notevault.services.worker import OperationStage, ProgressTracker
from notevault.storage.note_repository import NoteRepository
from notevault.storage.preferences import PreferencesStore

logger = logging.getLogger(__name__)


def coerce_policy(policy: Union[MergePolicy, str]) -> MergePolicy:
    """Accept a MergePolicy or its name in any case."""
    if isinstance(policy, MergePolicy):
        return policy
    try:
        return MergePolicy(str(policy).strip().lower())
    except ValueError as e:
        raise ValidationError(
            f"Unknown merge policy {policy!r}",
            field="policy",
            value=policy,
            code=ErrorCode.INVALID_MERGE_POLICY,
        ) from e


@dataclass
class ImportSummary:
    policy: MergePolicy
    source: Optional[str] = None
    preferences: int = 0
    categories: int = 0
    notes: NoteMergeResult = field(default_factory=NoteMergeResult)
    preferences_applied: List[str] = field(default_factory=list)
    category_map: Dict[int, int] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.preferences + self.categories + self.notes.processed


class ImportService:
    """Reads a backup and merges it into the store under a merge policy."""

    def __init__(
        self,
        repository: NoteRepository,
        preferences: Optional[PreferencesStore] = None,
        atomic: Optional[bool] = None,
    ):
        self.repository = repository
        self.preferences = preferences
        self.atomic = config.atomic_import if atomic is None else atomic
        self.category_reconciler = CategoryReconciler(repository)
        self.note_reconciler = NoteReconciler(repository)
        self.password_service = PasswordService(repository)

    @staticmethod
    def read_source(source: Union[str, Path]) -> bytes:
        """Read a backup file.

        Raises:
            SourceUnavailable: If the file is missing or cannot be read.
        """
        path = Path(source)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise SourceUnavailable(
                f"{path.name} does not exist",
                path=str(path),
                code=ErrorCode.SOURCE_NOT_FOUND,
                original_error=e,
            ) from e
        except PermissionError as e:
            raise SourceUnavailable(
                f"Permission denied reading {path.name}", path=str(path), original_error=e
            ) from e
        except OSError as e:
            raise SourceUnavailable(
                f"Cannot read {path.name}", path=str(path), original_error=e
            ) from e

    def import_file(
        self,
        source: Union[str, Path],
        policy: Union[MergePolicy, str],
        include_private: bool = False,
        old_password: Optional[PasswordInput] = None,
        store_password: Optional[PasswordInput] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> ImportSummary:
        """Import a backup file.

        Args:
            source: Path of the backup file.
            policy: Merge policy.
            include_private: Import private notes too.
            old_password: Password the backup was exported under.
            store_password: Current store password. When given, private
                notes are stored encrypted under it.
            progress: Receives stage and item counts.

        Raises:
            SourceUnavailable: The file cannot be read. Nothing changed.
            MalformedInput: The file is not a valid backup. Nothing changed.
            PasswordRequired, PasswordMismatch: Password problems, detected
                before anything changed.
            SecurityError: A note could not be decrypted.
            TransactionFailure: The store rejected the import.
        """
        policy = coerce_policy(policy)
        progress = progress or ProgressTracker()
        progress.start(OperationStage.PARSING.value)
        logger.info(f"Importing {Path(source).name} ({policy.value})")
        data = self.read_source(source)
        record_set = decode_record_set(data)
        return self.import_record_set(
            record_set,
            policy,
            include_private=include_private,
            old_password=old_password,
            store_password=store_password,
            progress=progress,
            source=str(source),
        )

    def import_record_set(
        self,
        record_set: RecordSet,
        policy: Union[MergePolicy, str],
        include_private: bool = False,
        old_password: Optional[PasswordInput] = None,
        store_password: Optional[PasswordInput] = None,
        progress: Optional[ProgressTracker] = None,
        source: Optional[str] = None,
    ) -> ImportSummary:
        """Merge an already decoded record set. See :meth:`import_file`."""
        policy = coerce_policy(policy)
        progress = progress or ProgressTracker()
        progress.set_total(record_set.total_items)
        summary = ImportSummary(policy=policy, source=source)

        with self.repository.operation_lock:
            old_key: Optional[EncryptionKey] = None
            store_key: Optional[EncryptionKey] = None
            try:
                with timed_operation("import", policy=policy.value) as op:
                    old_key = unlock_import(record_set, include_private, old_password)
                    if store_password is not None:
                        store_key = self.password_service.unlock_store(store_password)
                    elif include_private and self.password_service.has_password():
                        logger.warning(
                            "Store is password protected but no store password was "
                            "given; private notes are imported unencrypted"
                        )

                    session = MergeSession.begin(
                        policy,
                        self.repository,
                        incoming_note_ids=(
                            n.id for n in (record_set.notes.notes if record_set.notes else [])
                        ),
                        incoming_category_ids=(
                            c.id
                            for c in (
                                record_set.categories.categories
                                if record_set.categories
                                else []
                            )
                        ),
                    )

                    if self.atomic and policy.mutates:
                        with self.repository.transaction(f"import ({policy.value})"):
                            self._merge(record_set, policy, include_private, session,
                                        old_key, store_key, progress, summary)
                    else:
                        self._merge(record_set, policy, include_private, session,
                                    old_key, store_key, progress, summary)

                    self._apply_preferences(record_set, policy, session, progress, summary)
                    op["processed"] = summary.processed
            finally:
                for key in (old_key, store_key):
                    if key is not None:
                        key.forget()

        logger.info(
            f"Import finished ({policy.value}): {summary.categories} categories, "
            f"{summary.notes.inserted} notes added, {summary.notes.updated} replaced, "
            f"{summary.notes.skipped} skipped"
        )
        return summary

    def _merge(
        self,
        record_set: RecordSet,
        policy: MergePolicy,
        include_private: bool,
        session: MergeSession,
        old_key: Optional[EncryptionKey],
        store_key: Optional[EncryptionKey],
        progress: ProgressTracker,
        summary: ImportSummary,
    ) -> None:
        # CLEAN replaces the store even when a section is absent
        if record_set.categories is not None or policy is MergePolicy.CLEAN:
            progress.set_stage(OperationStage.CATEGORIES.value)
            categories = record_set.categories.categories if record_set.categories else []
            summary.category_map = self.category_reconciler.merge_categories(
                policy, categories, session, progress
            )
            summary.categories = len(categories)

        if record_set.notes is not None or policy is MergePolicy.CLEAN:
            progress.set_stage(OperationStage.ITEMS.value)
            notes = record_set.notes.notes if record_set.notes else []
            summary.notes = self.note_reconciler.merge_notes(
                policy,
                notes,
                include_private,
                session,
                old_key=old_key,
                store_key=store_key,
                progress=progress,
            )

    def _apply_preferences(
        self,
        record_set: RecordSet,
        policy: MergePolicy,
        session: MergeSession,
        progress: ProgressTracker,
        summary: ImportSummary,
    ) -> None:
        section = record_set.preferences
        if section is None:
            return
        progress.set_stage(OperationStage.SETTINGS.value)
        summary.preferences = len(section)

        if policy.imports_preferences:
            updates: Dict[str, Any] = importable_preferences(section)
            selected = updates.get("selected_category")
            if selected is not None and selected != ALL_CATEGORIES:
                updates["selected_category"] = session.category_map.get(selected, selected)
            if updates and self.preferences is not None:
                self.preferences.update(**updates)
                summary.preferences_applied = sorted(updates)
                logger.debug(f"Restored preferences: {', '.join(sorted(updates))}")
            elif updates:
                logger.debug("No preferences store configured; backup preferences ignored")
        progress.advance(len(section))
