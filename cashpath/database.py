from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .settings import get_settings

Base = declarative_base()


def make_engine(url: str, **kwargs):
    if not url.startswith("sqlite"):
        return create_engine(url, **kwargs)

    # SQLite connections are shared with the recurring worker pool threads
    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False}, **kwargs)

    @event.listens_for(sqlite_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        # cascades and SET NULL rules are off in SQLite unless asked for
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return sqlite_engine


def make_session_factory(bind) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine(get_settings().DATABASE_URL)
SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    # Import models so every table is registered on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def atomic(db: Session):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
