import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker


def _build_database_url() -> str:
    """Determine the SQLAlchemy DB URL using env vars with sensible fallbacks."""
    env_url = os.getenv("DATABASE_URL")
    if env_url:
        return env_url

    host = os.getenv("DB_HOST")
    if host:
        user = os.getenv("DB_USER", "postgres")
        password = os.getenv("DB_PASSWORD", "")
        port = os.getenv("DB_PORT", "5432")
        name = os.getenv("DB_NAME", "postgres")
        return f"postgresql://{user}:{password}@{host}:{port}/{name}"

    # Default to local SQLite file for simple local development
    return "sqlite:///./engagement.db"


def build_engine(url: str) -> Engine:
    """Create an engine with the store settings the lifecycle engine relies on.

    SQLite gets WAL, a busy timeout, enforced foreign keys and ``BEGIN
    IMMEDIATE`` transactions, so two writers racing through a
    check-then-insert sequence are serialized instead of both reading a stale
    snapshot. Other backends run at their default (read committed) isolation
    and rely on the unique indexes plus row locks.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url,
        connect_args={
            "check_same_thread": False,
            "timeout": 15,
        },
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # pysqlite must not emit its own BEGIN; see do_begin below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA busy_timeout = 5000")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA foreign_keys=ON;")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


SQLALCHEMY_DATABASE_URL = _build_database_url()

engine = build_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

Base = declarative_base()


def create_db_and_tables():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit the work done inside the block, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
