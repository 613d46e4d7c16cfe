"""
Database engine and session management.
"""
import logging
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, Session, create_engine

import config

logger = logging.getLogger(__name__)


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite ignores foreign keys (and ON DELETE CASCADE) unless asked per connection."""
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _foreign_keys_on(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False)


connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    config.DATABASE_URL,
    echo=config.SQL_ECHO,
    pool_pre_ping=True,
    connect_args=connect_args,
)
enable_sqlite_foreign_keys(engine)

# Create session factory
SessionLocal = make_session_factory(engine)


def create_db_and_tables():
    """Create all tables registered on the SQLModel metadata."""
    import models  # noqa: F401  registers the tables

    SQLModel.metadata.create_all(engine)
    logger.info(f"Tables ensured: {', '.join(sorted(SQLModel.metadata.tables))}")


def get_session_factory() -> sessionmaker:
    """FastAPI dependency; every gateway request opens its own session from this factory."""
    return SessionLocal
