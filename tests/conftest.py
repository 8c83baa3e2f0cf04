"""Common test fixtures for NoteVault."""
import datetime
from datetime import timezone

import pytest

from notevault.config import config
from notevault.models.db_models import init_db
from notevault.models.schema import Category, Note, PrivacyLevel
from notevault.services.vault_service import VaultService
from notevault.storage.note_repository import NoteRepository
from notevault.storage.preferences import PreferencesStore

BASE_TIME = datetime.datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at a temporary directory."""
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "database_path", tmp_path / "db" / "notevault.db")
    monkeypatch.setattr(config, "preferences_path", tmp_path / "preferences.json")
    monkeypatch.setattr(config, "log_dir", tmp_path / "logs")
    monkeypatch.setattr(config, "log_level", "INFO")
    monkeypatch.setattr(config, "in_memory_db", True)
    monkeypatch.setattr(config, "atomic_import", True)
    yield config


@pytest.fixture
def repository_factory(test_config):
    """Create independent in-memory stores; each call is a new database."""
    engines = []

    def create() -> NoteRepository:
        engine = init_db(in_memory=True)
        engines.append(engine)
        return NoteRepository(engine=engine)

    yield create
    for engine in engines:
        engine.dispose()


@pytest.fixture
def note_repository(repository_factory):
    """An empty store holding only the Unfiled category."""
    return repository_factory()


@pytest.fixture
def preferences_store(tmp_path):
    return PreferencesStore(tmp_path / "preferences.json")


@pytest.fixture
def make_note():
    """Build notes with predictable timestamps.

    Note ``n`` is created ``n`` hours after BASE_TIME unless told otherwise.
    """
    def build(
        note_id=None,
        content="note",
        category_id=0,
        created=None,
        modified=None,
        privacy=PrivacyLevel.PUBLIC,
        encrypted_content=None,
    ) -> Note:
        if created is None:
            created = BASE_TIME + datetime.timedelta(hours=note_id or 0)
        fields = dict(
            id=note_id,
            category_id=category_id,
            create_time=created,
            mod_time=modified or created,
            privacy=privacy,
        )
        if privacy >= PrivacyLevel.ENCRYPTED:
            fields["encrypted_content"] = encrypted_content
        else:
            fields["content"] = content
        return Note(**fields)

    return build


@pytest.fixture
def populated_store(note_repository, make_note):
    """Two categories, three public notes and one private note."""
    note_repository.insert_category(Category(id=1, name="Work"))
    note_repository.insert_category(Category(id=2, name="Home"))
    note_repository.insert_note(make_note(1, "Quarterly report", category_id=1))
    note_repository.insert_note(make_note(2, "Buy milk", category_id=2))
    note_repository.insert_note(make_note(3, "Loose thought"))
    note_repository.insert_note(
        make_note(4, "Locker code 4711", category_id=2, privacy=PrivacyLevel.PRIVATE)
    )
    return note_repository


@pytest.fixture
def vault_service(populated_store, preferences_store):
    service = VaultService(populated_store, preferences_store)
    yield service
    service.close()
