"""Tests for the VaultService facade."""
import pytest

from notevault.exceptions import PasswordRequired
from notevault.models.schema import MergePolicy
from notevault.observability import metrics
from notevault.services.export_service import ExportSummary
from notevault.services.import_service import ImportSummary
from notevault.services.password_service import PasswordTransition
from notevault.services.worker import OperationStage, OperationStatus


class TestSynchronousOperations:
    """Tests for the blocking entry points."""

    def test_export_remembers_destination(self, vault_service, preferences_store, tmp_path):
        path = tmp_path / "remembered.xml"
        vault_service.export(path, include_private=True)
        prefs = preferences_store.load()
        assert prefs.export_file == str(path)
        assert prefs.export_private is True

    def test_export_defaults_to_last_destination(self, vault_service, preferences_store, tmp_path):
        path = tmp_path / "last.xml"
        preferences_store.update(export_file=str(path))
        summary = vault_service.export()
        assert summary.destination == str(path)
        assert path.exists()

    def test_import_defaults_from_preferences(self, vault_service, preferences_store, tmp_path):
        path = tmp_path / "backup.xml"
        vault_service.export(path)
        preferences_store.update(import_file=str(path), import_type=MergePolicy.TEST)
        summary = vault_service.import_()
        assert summary.policy is MergePolicy.TEST
        assert summary.source == str(path)

    def test_import_remembers_choices(self, vault_service, preferences_store, tmp_path):
        path = tmp_path / "backup.xml"
        vault_service.export(path)
        vault_service.import_(path, "add")
        prefs = preferences_store.load()
        assert prefs.import_file == str(path)
        assert prefs.import_type is MergePolicy.ADD
        assert prefs.import_private is False

    def test_change_password_and_status(self, vault_service):
        summary = vault_service.change_password(None, "pw")
        assert summary.transition is PasswordTransition.ENCRYPTING
        status = vault_service.status()
        assert status["password_set"] is True
        assert status["categories"] == 3
        assert status["notes"] == 4
        assert (status["public_notes"], status["private_notes"], status["encrypted_notes"]) == (
            3, 0, 1,
        )

    def test_progress_of_last_operation(self, vault_service, tmp_path):
        vault_service.export(tmp_path / "out.xml")
        assert vault_service.progress.stage == OperationStage.ITEMS.value
        assert vault_service.progress.fraction == 1.0

    def test_failures_raise(self, vault_service, tmp_path):
        vault_service.change_password(None, "pw")
        path = tmp_path / "protected.xml"
        vault_service.export(path, include_private=True)
        with pytest.raises(PasswordRequired):
            vault_service.import_(path, MergePolicy.ADD, include_private=True)

    def test_status_includes_operation_metrics(self, vault_service, tmp_path):
        before = metrics.get_metrics().get("export", {}).get("success_count", 0)
        total_before = metrics.get_summary()["total_operations"]
        vault_service.export(tmp_path / "out.xml")
        status = vault_service.status()
        assert status["operations"]["export"]["success_count"] == before + 1
        assert status["activity"]["total_operations"] == total_before + 1


class TestBackgroundOperations:
    """Tests for the submit_* entry points."""

    def test_submit_export(self, vault_service, tmp_path):
        results = []
        future = vault_service.submit_export(tmp_path / "bg.xml", callback=results.append)
        result = future.result(timeout=10)
        assert result.status is OperationStatus.SUCCESS
        assert isinstance(result.summary, ExportSummary)
        assert results == [result]
        assert (tmp_path / "bg.xml").exists()

    def test_submit_import_needing_password_is_rejected(self, vault_service, tmp_path):
        vault_service.change_password(None, "pw")
        path = tmp_path / "protected.xml"
        vault_service.export(path, include_private=True)

        result = vault_service.submit_import(
            path, MergePolicy.ADD, include_private=True
        ).result(timeout=10)
        assert result.status is OperationStatus.REJECTED
        assert result.error_code == "PASSWORD_REQUIRED"

    def test_submit_import_with_password(self, vault_service, tmp_path):
        vault_service.change_password(None, "pw")
        path = tmp_path / "protected.xml"
        vault_service.export(path, include_private=True)

        result = vault_service.submit_import(
            path, MergePolicy.TEST, include_private=True, old_password="pw"
        ).result(timeout=10)
        assert result.ok
        assert isinstance(result.summary, ImportSummary)

    def test_submit_import_missing_file(self, vault_service, tmp_path):
        result = vault_service.submit_import(tmp_path / "missing.xml", "add").result(timeout=10)
        assert result.status is OperationStatus.ERROR
        assert result.error_code == "SOURCE_NOT_FOUND"

    def test_submit_change_password(self, vault_service):
        result = vault_service.submit_change_password(None, "pw").result(timeout=10)
        assert result.ok
        assert vault_service.password_service.has_password()

    def test_operations_complete_in_order(self, vault_service, tmp_path):
        finished = []
        path = tmp_path / "ordered.xml"
        futures = [
            vault_service.submit_export(path, callback=lambda r: finished.append(r.operation)),
            vault_service.submit_change_password(
                None, "pw", callback=lambda r: finished.append(r.operation)
            ),
            vault_service.submit_import(
                path, "test", callback=lambda r: finished.append(r.operation)
            ),
        ]
        assert all(f.result(timeout=10).ok for f in futures)
        assert finished == ["export", "change_password", "import"]

    def test_observer_receives_progress(self, vault_service, tmp_path):
        reports = []
        vault_service.submit_export(
            tmp_path / "observed.xml", observer=reports.append
        ).result(timeout=10)
        assert reports
        assert reports[-1].stage == OperationStage.ITEMS.value
        assert reports[-1].done == reports[-1].total

    def test_close_waits_and_allows_restart(self, vault_service, tmp_path):
        future = vault_service.submit_export(tmp_path / "a.xml")
        vault_service.close()
        assert future.done()
        # A new worker is created on demand
        assert vault_service.submit_export(tmp_path / "b.xml").result(timeout=10).ok
