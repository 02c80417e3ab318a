"""Database session management."""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from brewledger.core.config import settings

# Seconds a SQLite writer waits for the database lock before giving up
SQLITE_BUSY_TIMEOUT = 15


def create_db_engine(database_url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine for the given URL.

    SQLite writers wait up to ``SQLITE_BUSY_TIMEOUT`` seconds for the database
    lock; the ledger relies on that wait to serialize concurrent deductions.
    """
    connect_args = kwargs.pop("connect_args", {})
    pool_config = {}

    if database_url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT)
        if "poolclass" not in kwargs:
            pool_config = {"pool_pre_ping": True}
    else:
        # PostgreSQL/MySQL connection pooling configuration
        pool_config = {
            "pool_size": 10,          # Number of connections to keep open
            "max_overflow": 20,       # Additional connections allowed beyond pool_size
            "pool_pre_ping": True,    # Test connections before using them
            "pool_recycle": 3600,     # Recycle connections after 1 hour
        }

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,
        **pool_config,
        **kwargs,
    )

    if database_url.startswith("sqlite"):
        _configure_sqlite(engine)

    return engine


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def is_sqlite(bind) -> bool:
    return bind.dialect.name == "sqlite"


def make_session_factory(bind: Engine) -> sessionmaker:
    """Session factory used by the API, the workers and the tests."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = create_db_engine(settings.database_url, echo=settings.debug and settings.log_level == "DEBUG")

SessionLocal = make_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Type alias for dependency injection
DbSession = Annotated[Session, Depends(get_db)]
