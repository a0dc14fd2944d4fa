"""Database engine and session management."""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
import structlog

from jobstore.config import Settings
from jobstore.models import Base

logger = structlog.get_logger()


def create_storage_engine(settings: Settings) -> Engine:
    """Create the database engine described by the settings."""
    options = {"echo": settings.database_echo}
    if settings.database_isolation_level:
        options["isolation_level"] = settings.database_isolation_level

    if settings.database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in settings.database_url or settings.database_url == "sqlite://":
            options["poolclass"] = StaticPool
        engine = create_engine(settings.database_url, **options)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    else:
        engine = create_engine(settings.database_url, pool_pre_ping=True, **options)

    logger.debug("Database engine created", dialect=engine.dialect.name)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to an engine."""
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine):
    """Create all database tables."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error("Failed to create database tables", error=str(e))
        raise
