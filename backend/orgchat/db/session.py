"""
Database engine and session factory.

The engine is created lazily so tests can point ``DATABASE_URL`` somewhere
else (or assign ``_engine`` directly) before the first connection is made.
"""
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from orgchat.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine = None


def create_db_engine(url: str) -> Engine:
    """Build an engine for ``url``; SQLite connections get foreign keys enforced."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine(settings.DATABASE_URL)
        logger.info("Database engine created for dialect %s", _engine.dialect.name)
    return _engine


def get_db():
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    finally:
        db.close()
