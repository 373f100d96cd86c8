"""Engine, session factory and table setup for the bridge store."""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _normalize_sqlite_url(url: str) -> str:
    """Resolve relative SQLite paths against the project root."""
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return url
    path_part = url[len(prefix):]
    if path_part.startswith("/") or path_part.startswith(":memory:"):
        return url
    absolute = (PROJECT_ROOT / path_part).resolve()
    return f"{prefix}{absolute}"


def get_database_url() -> str:
    """DATABASE_URL, or a SQLite file next to the project for local runs."""
    raw_database_url = os.getenv("DATABASE_URL")

    if raw_database_url:
        # Some hosts still hand out postgres:// URLs
        if raw_database_url.startswith("postgres://"):
            raw_database_url = raw_database_url.replace("postgres://", "postgresql://", 1)

        if raw_database_url.startswith("sqlite"):
            return _normalize_sqlite_url(raw_database_url)

        return raw_database_url

    return f"sqlite:///{PROJECT_ROOT / 'bridge.db'}"


def create_bridge_engine(url: str) -> Engine:
    """Engine tuned for the backend; SQLite sessions are used from worker threads."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(
        url,
        pool_size=int(os.getenv("DATABASE_POOL_SIZE", "20")),
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=False,
    )


DATABASE_URL = get_database_url()
logger.info("Database: %s://*****", DATABASE_URL.split("://")[0])  # Hide credentials in logs

engine = create_bridge_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind: Engine = engine) -> None:
    """Create any missing bridge tables."""
    Base.metadata.create_all(bind=bind)


@contextmanager
def session_scope(session_factory: Callable[[], Session] = SessionLocal) -> Iterator[Session]:
    """Session that is rolled back on error and always closed."""
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
