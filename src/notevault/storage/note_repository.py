"""Repository for categories, notes and metadata."""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notevault.exceptions import (
    CategoryError,
    ErrorCode,
    NoteNotFoundError,
    StorageError,
    TransactionFailure,
)
from notevault.models.db_models import (
    DBCategory,
    DBMetadata,
    DBNote,
    get_session_factory,
    init_db,
)
from notevault.models.schema import (
    UNFILED_CATEGORY_ID,
    Category,
    MetadataItem,
    Note,
    PrivacyLevel,
    ensure_timezone_aware,
)
from notevault.utils import preview_text

logger = logging.getLogger(__name__)


class NoteRepository:
    """Record store for categories, notes and metadata.

    Every method can be called on its own, in which case it commits
    immediately. Inside :meth:`transaction` the calls made by the same
    thread share one session and commit (or roll back) together.
    """

    def __init__(self, engine: Optional[Any] = None, in_memory_db: Optional[bool] = None):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. When omitted,
                init_db() creates one from the configuration.
            in_memory_db: Passed to init_db() when no engine is given.
        """
        self.engine = engine if engine is not None else init_db(in_memory=in_memory_db)
        self.session_factory = get_session_factory(self.engine)

        # Serialises imports and re-keys against this store
        self.operation_lock = threading.RLock()

        self._local = threading.local()

    # ------------------------------------------------------------------
    # Sessions and transactions
    # ------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "session", None) is not None

    @contextmanager
    def _session_scope(
        self, operation: str, code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED
    ) -> Iterator[Session]:
        active = getattr(self._local, "session", None)
        if active is not None:
            try:
                yield active
                active.flush()
            except (SQLAlchemyError, OverflowError) as e:
                raise StorageError(
                    f"Store rejected {operation}",
                    operation=operation,
                    code=code,
                    original_error=e,
                ) from e
            return

        with self.session_factory() as session:
            try:
                yield session
                session.commit()
            except (SQLAlchemyError, OverflowError) as e:
                session.rollback()
                logger.error(f"{operation} failed: {e}")
                raise StorageError(
                    f"Store rejected {operation}",
                    operation=operation,
                    code=code,
                    original_error=e,
                ) from e

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator["NoteRepository"]:
        """Run a block of repository calls as one atomic unit.

        Nested calls join the enclosing transaction. Store failures roll
        everything back and surface as TransactionFailure; any other
        exception also rolls back and propagates unchanged.
        """
        if self.in_transaction:
            yield self
            return

        session = self.session_factory()
        self._local.session = session
        try:
            yield self
            session.commit()
        except (StorageError, SQLAlchemyError, OverflowError) as e:
            session.rollback()
            logger.warning(f"{operation}: rolled back after store failure: {e}")
            if isinstance(e, TransactionFailure):
                raise
            raise TransactionFailure(
                f"{operation} failed and was rolled back",
                operation=operation,
                original_error=e,
            ) from e
        except Exception:
            session.rollback()
            logger.debug(f"{operation}: rolled back")
            raise
        finally:
            self._local.session = None
            session.close()

    # ------------------------------------------------------------------
    # Model conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _db_category_to_model(db_category: DBCategory) -> Category:
        return Category(id=db_category.id, name=db_category.name)

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        return Note(
            id=db_note.id,
            category_id=db_note.category_id,
            create_time=ensure_timezone_aware(db_note.create_time),
            mod_time=ensure_timezone_aware(db_note.mod_time),
            privacy=db_note.privacy,
            content=db_note.note,
            encrypted_content=db_note.encrypted_note,
        )

    @staticmethod
    def _apply_note(db_note: DBNote, note: Note) -> None:
        db_note.category_id = note.category_id
        # SQLite stores naive datetimes; everything is UTC
        db_note.create_time = note.create_time.replace(tzinfo=None)
        db_note.mod_time = note.mod_time.replace(tzinfo=None)
        db_note.privacy = int(note.privacy)
        if note.is_encrypted:
            db_note.note = None
            db_note.encrypted_note = note.encrypted_content
        else:
            db_note.note = note.content
            db_note.encrypted_note = None

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def count_categories(self) -> int:
        """Count categories, including Unfiled."""
        with self._session_scope("count categories", ErrorCode.STORAGE_READ_FAILED) as session:
            return session.scalar(select(func.count()).select_from(DBCategory)) or 0

    def get_categories(self) -> List[Category]:
        """Get all categories ordered by name."""
        with self._session_scope("list categories", ErrorCode.STORAGE_READ_FAILED) as session:
            rows = session.scalars(select(DBCategory).order_by(DBCategory.name)).all()
            return [self._db_category_to_model(row) for row in rows]

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._session_scope("read category", ErrorCode.STORAGE_READ_FAILED) as session:
            row = session.get(DBCategory, category_id)
            return self._db_category_to_model(row) if row else None

    def get_category_by_name(self, name: str) -> Optional[Category]:
        with self._session_scope("read category", ErrorCode.STORAGE_READ_FAILED) as session:
            row = session.scalar(select(DBCategory).where(DBCategory.name == name))
            return self._db_category_to_model(row) if row else None

    def max_category_id(self) -> int:
        with self._session_scope("read category ids", ErrorCode.STORAGE_READ_FAILED) as session:
            return session.scalar(select(func.max(DBCategory.id))) or 0

    def insert_category(self, category: Category) -> Category:
        """Insert a category, keeping its id when it has one.

        Raises:
            CategoryError: If the name or id is already taken.
        """
        with self._session_scope("insert category") as session:
            clash = session.scalar(
                select(DBCategory).where(DBCategory.name == category.name)
            )
            if clash is not None:
                raise CategoryError(
                    f"Category name already in use by #{clash.id}",
                    category_id=clash.id,
                    name=category.name,
                )
            category_id = category.id
            if category_id is None:
                category_id = (session.scalar(select(func.max(DBCategory.id))) or 0) + 1
            elif session.get(DBCategory, category_id) is not None:
                raise CategoryError(
                    f"Category id {category_id} already exists",
                    category_id=category_id,
                    name=category.name,
                )
            session.add(DBCategory(id=category_id, name=category.name))
            logger.debug(f"Inserted category #{category_id} '{category.name}'")
            return Category(id=category_id, name=category.name)

    def update_category(self, category: Category) -> Category:
        """Rename a category.

        Raises:
            CategoryError: If the category does not exist or the new name is
                used by another category.
        """
        with self._session_scope("update category") as session:
            row = session.get(DBCategory, category.id)
            if row is None:
                raise CategoryError(
                    f"Category #{category.id} not found",
                    category_id=category.id,
                    code=ErrorCode.CATEGORY_NOT_FOUND,
                )
            clash = session.scalar(
                select(DBCategory).where(
                    DBCategory.name == category.name, DBCategory.id != category.id
                )
            )
            if clash is not None:
                raise CategoryError(
                    f"Category name already in use by #{clash.id}",
                    category_id=clash.id,
                    name=category.name,
                )
            row.name = category.name
            return self._db_category_to_model(row)

    def delete_category(self, category_id: int) -> int:
        """Delete a category, moving its notes to Unfiled.

        Returns:
            The number of notes that were reassigned.
        """
        if category_id == UNFILED_CATEGORY_ID:
            raise CategoryError(
                "The Unfiled category cannot be deleted",
                category_id=category_id,
                code=ErrorCode.CATEGORY_RESERVED,
            )
        with self._session_scope("delete category", ErrorCode.STORAGE_DELETE_FAILED) as session:
            row = session.get(DBCategory, category_id)
            if row is None:
                raise CategoryError(
                    f"Category #{category_id} not found",
                    category_id=category_id,
                    code=ErrorCode.CATEGORY_NOT_FOUND,
                )
            moved = session.execute(
                update(DBNote)
                .where(DBNote.category_id == category_id)
                .values(category_id=UNFILED_CATEGORY_ID)
            ).rowcount
            session.delete(row)
            logger.debug(f"Deleted category #{category_id}, {moved} notes moved to Unfiled")
            return moved

    def delete_all_categories(self) -> int:
        """Delete every category except Unfiled, moving notes to Unfiled."""
        with self._session_scope("delete categories", ErrorCode.STORAGE_DELETE_FAILED) as session:
            session.execute(
                update(DBNote)
                .where(DBNote.category_id != UNFILED_CATEGORY_ID)
                .values(category_id=UNFILED_CATEGORY_ID)
            )
            removed = session.execute(
                delete(DBCategory).where(DBCategory.id != UNFILED_CATEGORY_ID)
            ).rowcount
            logger.info(f"Deleted {removed} categories")
            return removed

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def count_notes(self, include_private: bool = True) -> int:
        with self._session_scope("count notes", ErrorCode.STORAGE_READ_FAILED) as session:
            query = select(func.count()).select_from(DBNote)
            if not include_private:
                query = query.where(DBNote.privacy == PrivacyLevel.PUBLIC)
            return session.scalar(query) or 0

    def count_notes_by_privacy(self) -> Dict[str, int]:
        """Count notes as public, private (plaintext) and encrypted."""
        with self._session_scope("count notes", ErrorCode.STORAGE_READ_FAILED) as session:
            rows = session.execute(
                select(DBNote.privacy, func.count()).group_by(DBNote.privacy)
            ).all()
        counts = {"public": 0, "private": 0, "encrypted": 0}
        for privacy, count in rows:
            if privacy >= PrivacyLevel.ENCRYPTED:
                counts["encrypted"] += count
            elif privacy == PrivacyLevel.PRIVATE:
                counts["private"] += count
            else:
                counts["public"] += count
        return counts

    def get_note(self, note_id: int) -> Optional[Note]:
        with self._session_scope("read note", ErrorCode.STORAGE_READ_FAILED) as session:
            row = session.get(DBNote, note_id)
            return self._db_note_to_model(row) if row else None

    def get_notes(self, include_private: bool = True) -> List[Note]:
        """Get notes ordered by id."""
        with self._session_scope("list notes", ErrorCode.STORAGE_READ_FAILED) as session:
            query = select(DBNote).order_by(DBNote.id)
            if not include_private:
                query = query.where(DBNote.privacy == PrivacyLevel.PUBLIC)
            return [self._db_note_to_model(row) for row in session.scalars(query).all()]

    def get_private_note_ids(self) -> List[int]:
        """Get the ids of every private note, encrypted or not."""
        with self._session_scope("list private notes", ErrorCode.STORAGE_READ_FAILED) as session:
            return list(
                session.scalars(
                    select(DBNote.id)
                    .where(DBNote.privacy >= PrivacyLevel.PRIVATE)
                    .order_by(DBNote.id)
                ).all()
            )

    def max_note_id(self) -> int:
        with self._session_scope("read note ids", ErrorCode.STORAGE_READ_FAILED) as session:
            return session.scalar(select(func.max(DBNote.id))) or 0

    def insert_note(self, note: Note) -> Note:
        """Insert a note, keeping its id when it has one.

        Raises:
            StorageError: If the id is already taken.
        """
        with self._session_scope("insert note") as session:
            note_id = note.id
            if note_id is None:
                note_id = (session.scalar(select(func.max(DBNote.id))) or 0) + 1
            elif session.get(DBNote, note_id) is not None:
                raise StorageError(
                    f"Note #{note_id} already exists",
                    operation="insert note",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                )
            row = DBNote(id=note_id)
            self._apply_note(row, note)
            session.add(row)
            logger.debug(
                f"Inserted note #{note_id}: "
                f"{preview_text(note.content, private=note.is_private)!r}"
            )
            return note.model_copy(update={"id": note_id})

    def update_note(self, note: Note) -> Note:
        """Overwrite a note's category, timestamps, privacy and content.

        Raises:
            NoteNotFoundError: If no note has the given id.
        """
        with self._session_scope("update note") as session:
            row = session.get(DBNote, note.id) if note.id is not None else None
            if row is None:
                raise NoteNotFoundError(note.id)
            self._apply_note(row, note)
            return note

    def delete_note(self, note_id: int) -> None:
        with self._session_scope("delete note", ErrorCode.STORAGE_DELETE_FAILED) as session:
            row = session.get(DBNote, note_id)
            if row is None:
                raise NoteNotFoundError(note_id)
            session.delete(row)

    def delete_all_notes(self) -> int:
        with self._session_scope("delete notes", ErrorCode.STORAGE_DELETE_FAILED) as session:
            removed = session.execute(delete(DBNote)).rowcount
            logger.info(f"Deleted {removed} notes")
            return removed

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def count_metadata(self) -> int:
        with self._session_scope("count metadata", ErrorCode.STORAGE_READ_FAILED) as session:
            return session.scalar(select(func.count()).select_from(DBMetadata)) or 0

    def get_all_metadata(self) -> List[MetadataItem]:
        """Get every metadata entry ordered by id."""
        with self._session_scope("list metadata", ErrorCode.STORAGE_READ_FAILED) as session:
            rows = session.scalars(select(DBMetadata).order_by(DBMetadata.id)).all()
            return [MetadataItem(id=r.id, name=r.name, value=r.value) for r in rows]

    def get_metadata(self, name: str) -> Optional[MetadataItem]:
        with self._session_scope("read metadata", ErrorCode.STORAGE_READ_FAILED) as session:
            row = session.scalar(select(DBMetadata).where(DBMetadata.name == name))
            if row is None:
                return None
            return MetadataItem(id=row.id, name=row.name, value=row.value)

    def set_metadata(self, name: str, value: Optional[bytes]) -> MetadataItem:
        """Create or replace a metadata entry."""
        with self._session_scope("write metadata") as session:
            row = session.scalar(select(DBMetadata).where(DBMetadata.name == name))
            if row is None:
                next_id = (session.scalar(select(func.max(DBMetadata.id))) or 0) + 1
                row = DBMetadata(id=next_id, name=name)
                session.add(row)
            row.value = value
            return MetadataItem(id=row.id, name=name, value=value)

    def delete_metadata(self, name: str) -> bool:
        """Delete a metadata entry. Returns False if there was none."""
        with self._session_scope("delete metadata", ErrorCode.STORAGE_DELETE_FAILED) as session:
            removed = session.execute(
                delete(DBMetadata).where(DBMetadata.name == name)
            ).rowcount
            return removed > 0

    def get_state_snapshot(self) -> Dict[str, Any]:
        """Everything in the store, for comparisons in diagnostics and tests."""
        return {
            "categories": [c.model_dump() for c in self.get_categories()],
            "notes": [n.model_dump() for n in self.get_notes()],
            "metadata": [m.model_dump() for m in self.get_all_metadata()],
        }
