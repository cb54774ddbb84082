import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def utc_now_iso() -> str:
    """Server time as ISO-8601 UTC with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def epoch_to_iso(seconds: int) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def create_db_engine(database_url: str, timeout: float = 10.0) -> Engine:
    """
    Create the SQLAlchemy engine.

    SQLite needs check_same_thread=False because store work runs in the
    thread pool; its busy timeout makes concurrent writers wait instead of
    failing with "database is locked".
    """
    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout}
    else:
        engine_kwargs["pool_timeout"] = timeout
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from crm_bridge import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            tables = set(inspect(db.get_bind()).get_table_names())
            missing = {"instances", "customers", "tickets", "messages"} - tables
            if missing:
                logger.error(f"Database schema not applied, missing tables: {sorted(missing)}")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def insert_ignore(db: Session, model, values: dict) -> int:
    """
    INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    Any unique constraint or unique index on the table counts as a conflict.

    Returns:
        Number of inserted rows (0 when the row already existed).
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")

    stmt = insert(model.__table__).values(**values).on_conflict_do_nothing()
    return db.execute(stmt).rowcount
