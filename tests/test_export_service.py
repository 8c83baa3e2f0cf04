"""Tests for exporting the store."""
import pytest

from notevault.codec.xml_codec import decode_record_set
from notevault.encryption import METADATA_PASSWORD_HASH
from notevault.exceptions import DestinationUnavailable, ValidationError
from notevault.models.schema import MergePolicy, NotePreferences
from notevault.services.export_service import ExportService
from notevault.services.import_service import ImportService
from notevault.services.password_service import PasswordService
from notevault.services.worker import OperationStage, ProgressTracker


def read_back(path):
    return decode_record_set(path.read_bytes())


class TestExport:
    """Tests for ExportService."""

    def test_public_export_leaves_out_private_notes(self, populated_store, tmp_path):
        path = tmp_path / "out.xml"
        summary = ExportService(populated_store).export_file(path)
        record_set = read_back(path)
        assert [n.id for n in record_set.notes.notes] == [1, 2, 3]
        assert (summary.categories, summary.notes) == (3, 3)
        assert summary.include_private is False

    def test_categories_in_name_order(self, populated_store, tmp_path):
        path = tmp_path / "out.xml"
        ExportService(populated_store).export_file(path)
        names = [c.name for c in read_back(path).categories.categories]
        assert names == ["Home", "Unfiled", "Work"]

    def test_password_hash_only_in_private_export(self, populated_store, tmp_path):
        PasswordService(populated_store).change_password(None, "pw")
        service = ExportService(populated_store)

        service.export_file(tmp_path / "public.xml")
        assert read_back(tmp_path / "public.xml").metadata.get(METADATA_PASSWORD_HASH) is None

        service.export_file(tmp_path / "private.xml", include_private=True)
        record_set = read_back(tmp_path / "private.xml")
        stored = populated_store.get_metadata(METADATA_PASSWORD_HASH).value
        assert record_set.metadata.get(METADATA_PASSWORD_HASH).value == stored
        assert record_set.notes.notes[-1].is_encrypted

    def test_private_export_round_trip(self, populated_store, repository_factory, tmp_path):
        """Exporting everything and importing it with CLEAN reproduces the store."""
        path = tmp_path / "all.xml"
        ExportService(populated_store).export_file(path, include_private=True)
        target = repository_factory()
        ImportService(target).import_file(path, MergePolicy.CLEAN, include_private=True)
        assert target.get_notes() == populated_store.get_notes()
        assert target.get_categories() == populated_store.get_categories()

    def test_windows_line_endings_round_trip(
        self, populated_store, repository_factory, make_note, tmp_path
    ):
        populated_store.insert_note(make_note(9, "first line\r\nsecond line\r\n"))
        path = tmp_path / "crlf.xml"
        ExportService(populated_store).export_file(path)
        target = repository_factory()
        ImportService(target).import_file(path, MergePolicy.CLEAN)
        assert target.get_note(9).content == "first line\r\nsecond line\r\n"

    def test_unexportable_character_leaves_no_file(self, populated_store, make_note, tmp_path):
        populated_store.insert_note(make_note(9, "escape \x1b[0m"))
        out_dir = tmp_path / "exports"
        with pytest.raises(ValidationError):
            ExportService(populated_store).export_file(out_dir / "out.xml")
        assert not out_dir.exists()

    def test_preferences_written(self, populated_store, preferences_store, tmp_path):
        preferences_store.save(NotePreferences(sort_order=1, show_private=True))
        path = tmp_path / "out.xml"
        ExportService(populated_store, preferences_store).export_file(path)
        values = read_back(path).preferences.values
        assert values["SortOrder"] == "1"
        assert values["ShowPrivate"] == "true"
        assert values["ShowEncrypted"] == "false"

    def test_overwrites_existing_file(self, populated_store, tmp_path):
        path = tmp_path / "out.xml"
        path.write_text("old contents")
        ExportService(populated_store).export_file(path)
        assert read_back(path).notes is not None
        assert list(tmp_path.glob("*.tmp")) == []

    def test_creates_missing_directories(self, populated_store, tmp_path):
        path = tmp_path / "nested" / "dir" / "out.xml"
        ExportService(populated_store).export_file(path)
        assert path.exists()

    def test_unwritable_destination(self, populated_store, tmp_path):
        blocker = tmp_path / "file.txt"
        blocker.write_text("not a directory")
        with pytest.raises(DestinationUnavailable):
            ExportService(populated_store).export_file(blocker / "out.xml")

    def test_empty_store(self, note_repository, tmp_path):
        path = tmp_path / "empty.xml"
        summary = ExportService(note_repository).export_file(path)
        assert summary.notes == 0
        assert read_back(path).notes.notes == []

    def test_progress_by_stage(self, populated_store, tmp_path):
        stages = []
        tracker = ProgressTracker(lambda report: stages.append(report.stage))
        ExportService(populated_store).export_file(tmp_path / "out.xml", progress=tracker)
        assert list(dict.fromkeys(stages)) == [
            OperationStage.SETTINGS.value,
            OperationStage.CATEGORIES.value,
            OperationStage.ITEMS.value,
        ]
        report = tracker.report()
        assert (report.done, report.total) == (3, 3)
