import contextlib
import functools
from collections.abc import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from basecore.settings import get_settings


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINTs behave.

    The sqlite3 driver otherwise manages transactions itself and a
    RELEASE of the outermost savepoint commits.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@functools.lru_cache()
def get_engine():
    """
    Get SQLAlchemy engine (cached).

    This function lazily initializes the engine to avoid import-time side effects.
    The engine is created using DATABASE_URL from settings.
    """
    settings = get_settings()
    if settings.DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            settings.DATABASE_URL, echo=False, connect_args={"check_same_thread": False}
        )
        return enable_sqlite_savepoints(engine)
    return create_engine(settings.DATABASE_URL, pool_pre_ping=True, echo=False)


@functools.lru_cache()
def get_sessionmaker():
    """
    Get SQLAlchemy sessionmaker (cached).

    Objects stay usable after commit so they can be returned from async handlers.
    """
    engine = get_engine()
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db():
    """
    Dependency generator for FastAPI to get database session.

    Yields a database session and ensures it's closed after use.
    """
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextlib.contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    """
    Transactional scope for background work.

    Commits on success, rolls back on error, always closes.
    """
    SessionLocal = factory or get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
