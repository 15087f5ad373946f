# rewrite_pipeline/db.py
import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import SQLAlchemyError

from rewrite_pipeline.errors import StoreError
from rewrite_pipeline.monitoring import logger

# Default dev DB; production points DATABASE_URL at Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./rewrite_pipeline.db")


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
Base = declarative_base()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db():
    # Create tables if they don't exist
    try:
        import rewrite_pipeline.models as models  # noqa: F401
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        # surface in logs; don't crash the app at import time
        logger.warning("DB init failed", extra={"error": str(e)})


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    One transaction per datastore call. Commits on success; any SQLAlchemy
    failure is rolled back and re-raised as a retryable StoreError.
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreError(f"datastore_call_failed:{e.__class__.__name__}:{e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
