"""Service layer tying the store, preferences and operations together."""

import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Dict, Optional, Union

from notevault.config import config
from notevault.encryption import PasswordInput
from notevault.exceptions import StorageError
from notevault.models.schema import MergePolicy
from notevault.observability import metrics
from notevault.services.export_service import ExportService, ExportSummary
from notevault.services.import_service import ImportService, ImportSummary, coerce_policy
from notevault.services.password_service import PasswordChangeSummary, PasswordService
from notevault.services.worker import (
    BackgroundWorker,
    CompletionCallback,
    OperationResult,
    ProgressObserver,
    ProgressReport,
    ProgressTracker,
)
from notevault.storage.note_repository import NoteRepository
from notevault.storage.preferences import PreferencesStore

logger = logging.getLogger(__name__)


class VaultService:
    """Entry point for export, import and password changes.

    The synchronous methods run on the calling thread and raise on failure.
    The ``submit_*`` variants queue the same work on this instance's
    background worker and report the outcome as an OperationResult, both
    through the returned future and the optional callback. Queued operations
    run strictly one at a time.
    """

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        preferences: Optional[PreferencesStore] = None,
        atomic_import: Optional[bool] = None,
    ):
        self.repository = repository if repository is not None else NoteRepository()
        self.preferences = preferences if preferences is not None else PreferencesStore()
        self.import_service = ImportService(
            self.repository, self.preferences, atomic=atomic_import
        )
        self.export_service = ExportService(self.repository, self.preferences)
        self.password_service = PasswordService(self.repository)
        self._worker: Optional[BackgroundWorker] = None
        self._progress = ProgressTracker()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def worker(self) -> BackgroundWorker:
        if self._worker is None:
            self._worker = BackgroundWorker("notevault-worker")
        return self._worker

    def close(self) -> None:
        """Wait for queued operations and stop the worker."""
        if self._worker is not None:
            self._worker.shutdown(wait=True)
            self._worker = None

    def __enter__(self) -> "VaultService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def progress(self) -> ProgressReport:
        """Progress of the most recently started operation."""
        return self._progress.report()

    def _new_tracker(self, observer: Optional[ProgressObserver]) -> ProgressTracker:
        self._progress = ProgressTracker(observer)
        return self._progress

    def _remember(self, **changes: Any) -> None:
        """Record the last-used file and options in the preferences."""
        try:
            self.preferences.update(**changes)
        except StorageError as e:
            logger.warning(f"Could not remember {', '.join(changes)}: {e}")

    # ------------------------------------------------------------------
    # Synchronous operations
    # ------------------------------------------------------------------

    def export(
        self,
        destination: Optional[Union[str, Path]] = None,
        include_private: Optional[bool] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> ExportSummary:
        """Export the store. Defaults come from the last export."""
        prefs = self.preferences.load()
        if destination is None:
            destination = prefs.export_file or config.get_absolute_path(
                config.default_export_file
            )
        if include_private is None:
            include_private = prefs.export_private
        summary = self.export_service.export_file(
            destination, include_private, progress=self._new_tracker(observer)
        )
        self._remember(export_file=str(destination), export_private=include_private)
        return summary

    def import_(
        self,
        source: Optional[Union[str, Path]] = None,
        policy: Optional[Union[MergePolicy, str]] = None,
        include_private: Optional[bool] = None,
        old_password: Optional[PasswordInput] = None,
        store_password: Optional[PasswordInput] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> ImportSummary:
        """Import a backup. Defaults come from the last import."""
        prefs = self.preferences.load()
        if source is None:
            source = prefs.import_file or config.get_absolute_path(
                config.default_export_file
            )
        policy = coerce_policy(policy if policy is not None else prefs.import_type)
        if include_private is None:
            include_private = prefs.import_private
        summary = self.import_service.import_file(
            source,
            policy,
            include_private=include_private,
            old_password=old_password,
            store_password=store_password,
            progress=self._new_tracker(observer),
        )
        self._remember(
            import_file=str(source), import_type=policy, import_private=include_private
        )
        return summary

    def change_password(
        self,
        old_password: Optional[PasswordInput] = None,
        new_password: Optional[PasswordInput] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> PasswordChangeSummary:
        """Set, change or clear the store password."""
        return self.password_service.change_password(
            old_password, new_password, progress=self._new_tracker(observer)
        )

    # ------------------------------------------------------------------
    # Background operations
    # ------------------------------------------------------------------

    def submit_export(
        self,
        destination: Optional[Union[str, Path]] = None,
        include_private: Optional[bool] = None,
        callback: Optional[CompletionCallback] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> "Future[OperationResult]":
        return self.worker.submit(
            "export",
            self.export,
            destination,
            include_private,
            observer,
            callback=callback,
        )

    def submit_import(
        self,
        source: Optional[Union[str, Path]] = None,
        policy: Optional[Union[MergePolicy, str]] = None,
        include_private: Optional[bool] = None,
        old_password: Optional[PasswordInput] = None,
        store_password: Optional[PasswordInput] = None,
        callback: Optional[CompletionCallback] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> "Future[OperationResult]":
        return self.worker.submit(
            "import",
            self.import_,
            source,
            policy,
            include_private,
            old_password,
            store_password,
            observer,
            callback=callback,
        )

    def submit_change_password(
        self,
        old_password: Optional[PasswordInput] = None,
        new_password: Optional[PasswordInput] = None,
        callback: Optional[CompletionCallback] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> "Future[OperationResult]":
        return self.worker.submit(
            "change_password",
            self.change_password,
            old_password,
            new_password,
            observer,
            callback=callback,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Summary of the store's contents."""
        counts = self.repository.count_notes_by_privacy()
        return {
            "categories": self.repository.count_categories(),
            "notes": sum(counts.values()),
            "public_notes": counts["public"],
            "private_notes": counts["private"],
            "encrypted_notes": counts["encrypted"],
            "password_set": self.password_service.has_password(),
            "operations": metrics.get_metrics(),
            "activity": metrics.get_summary(),
        }
