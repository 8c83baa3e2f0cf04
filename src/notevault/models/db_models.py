"""SQLAlchemy database models for the note store."""
from typing import Optional

from sqlalchemy import (Column, DateTime, Integer, LargeBinary, String, Text,
                        create_engine, event)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notevault.config import config
from notevault.models.schema import UNFILED_CATEGORY_ID, UNFILED_CATEGORY_NAME

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBCategory(Base):
    """Database model for a category."""
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), unique=True, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of category."""
        return f"<Category(id={self.id}, name='{self.name}')>"


class DBNote(Base):
    """Database model for a note.

    Exactly one of ``note`` and ``encrypted_note`` is set, depending on
    whether ``privacy`` marks the note as encrypted.
    """
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=False)
    category_id = Column(
        Integer, default=UNFILED_CATEGORY_ID, nullable=False, index=True
    )
    create_time = Column(DateTime, nullable=False)
    mod_time = Column(DateTime, nullable=False, index=True)
    privacy = Column(Integer, default=0, nullable=False, index=True)
    note = Column(Text, nullable=True)
    encrypted_note = Column(LargeBinary, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return (
            f"<Note(id={self.id}, category_id={self.category_id}, "
            f"privacy={self.privacy})>"
        )


class DBMetadata(Base):
    """Database model for a named metadata value."""
    __tablename__ = "metadata"
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), unique=True, nullable=False)
    value = Column(LargeBinary, nullable=True)

    def __repr__(self) -> str:
        return f"<Metadata(id={self.id}, name='{self.name}')>"


def init_db(in_memory: Optional[bool] = None, db_url: Optional[str] = None):
    """Create the engine and schema, and make sure Unfiled exists.

    File-backed stores get WAL journaling and a small connection pool. The
    in-memory store shares one connection across threads so that every
    session sees the same database.
    """
    if in_memory is None:
        in_memory = config.in_memory_db
    if db_url is None:
        db_url = "sqlite:///:memory:" if in_memory else config.get_db_url()

    if in_memory:
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            db_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    Base.metadata.create_all(engine)
    _ensure_unfiled_category(engine)
    return engine


def _ensure_unfiled_category(engine) -> None:
    """Insert the reserved Unfiled category if it is missing."""
    session_factory = get_session_factory(engine)
    with session_factory() as session:
        if session.get(DBCategory, UNFILED_CATEGORY_ID) is None:
            session.add(DBCategory(id=UNFILED_CATEGORY_ID, name=UNFILED_CATEGORY_NAME))
            session.commit()


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = create_engine(config.get_db_url())
    return sessionmaker(bind=engine, expire_on_commit=False)
