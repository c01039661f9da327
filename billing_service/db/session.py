# billing_service/db/session.py
# Database session management
#
# Production → PostgreSQL via psycopg2 with a server-side statement_timeout
# Tests      → SQLite (engine built by the test suite, this module's engine unused)
#
# FastAPI endpoints get a session via: Depends(get_db)

import logging
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from billing_service.core.config import settings
from billing_service.db.resilience import db_retry

logger = logging.getLogger("billing.db")


def _engine_options(database_url: str) -> Dict[str, Any]:
    """
    Engine kwargs for the given backend.

    PostgreSQL gets a pooled engine and a per-connection statement_timeout so a
    stuck query cannot hold a request (and its pool slot) forever.
    SQLite takes none of the pool arguments.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}

    options: Dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout_seconds,
        "pool_recycle": 1800,  # Recycle connections every 30 min
    }
    if url.get_backend_name() == "postgresql":
        options["connect_args"] = {
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        }
    return options


# ── Engine ────────────────────────────────────────────────────────────────────
engine = create_engine(
    settings.database_url,
    echo=settings.debug,  # SQL logging only when explicitly debugging
    **_engine_options(settings.database_url),
)

# ── Session Factory ───────────────────────────────────────────────────────────
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,  # Prevents lazy load errors after commit
)


# ── FastAPI Dependency ────────────────────────────────────────────────────────
def get_db() -> Generator[Session, None, None]:
    """
    Dependency injected into every FastAPI endpoint that needs DB access.

    Usage:
        @router.post("/example")
        def example(db: Session = Depends(get_db)):
            ...

    Services commit their own units of work; this commits whatever is left
    and guarantees the session is always closed, even on exceptions.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ── Health Check Helper ───────────────────────────────────────────────────────
@db_retry
def _ping(db: Session) -> None:
    db.execute(text("SELECT 1"))


def check_db_connection() -> bool:
    """
    Used by /health and startup to verify DB connectivity.
    Returns True if connected, False otherwise.
    """
    db = SessionLocal()
    try:
        _ping(db)
        return True
    except SQLAlchemyError as exc:
        logger.warning(f"Database connectivity check failed: {exc}")
        return False
    finally:
        db.close()
