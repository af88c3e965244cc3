# access_broker/db.py
import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from access_broker import monitoring

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./access_broker.db")


def _make_engine(url: str):
    # SQLite waits up to 30s on a locked database instead of failing concurrent writers
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=not url.startswith("sqlite"))


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
Base = declarative_base()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal, DATABASE_URL
    engine.dispose()
    DATABASE_URL = url
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db():
    # Create tables if they don't exist
    try:
        import access_broker.models as models  # noqa: F401
        Base.metadata.create_all(bind=engine)
    except Exception:
        # Surface in logs; don't crash the app at import time
        monitoring.logger.exception("DB init failed", extra={"database_url": DATABASE_URL})


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session bound to the current engine; commits on success, rolls back on error."""
    db: Session = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
