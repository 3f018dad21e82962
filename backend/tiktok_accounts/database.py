"""
Database wiring.

Provides the declarative Base, the engine built from settings and the
session factory. Sessions are always passed explicitly into services and
orchestrators; nothing in the package reaches for a global session.
"""
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from tiktok_accounts.config import get_settings


Base = declarative_base()


def build_engine(database_url: str, **kwargs) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections get:
    - foreign key enforcement, so ON DELETE CASCADE behaves as it does on
      PostgreSQL/MySQL
    - transactions begun by SQLAlchemy rather than by the pysqlite driver,
      so SAVEPOINTs nest correctly
    - BEGIN IMMEDIATE, so a transaction holds the write lock from its
      first statement and read-then-write transactions run one at a time
    """
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})

    new_engine = create_engine(database_url, **kwargs)

    if new_engine.dialect.name == "sqlite":
        @event.listens_for(new_engine, "connect")
        def _configure_sqlite_connection(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(new_engine, "begin")
        def _begin_sqlite_transaction(connection):
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    return new_engine


engine = build_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Iterator[Session]:
    """Yield a session and close it afterwards (request-scoped usage)."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None) -> None:
    """Create all tables for the registered models."""
    # Import models so they register with Base.metadata
    import tiktok_accounts.models  # noqa: F401
    
    Base.metadata.create_all(bind=bind or engine)
