import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator, List

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from .config import (
    APPLY_DB_SCHEMA,
    DATABASE_URL,
    DB_MAX_OVERFLOW,
    DB_POOL_RECYCLE_SECONDS,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT_SECONDS,
)


logger = logging.getLogger("database")

# Advisory lock ID for schema coordination across replicas
SCHEMA_LOCK_ID = 0x636C7562  # 'club' in hex

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

def engine_options():
    """
    Pool options for create_engine; unset knobs fall back to SQLAlchemy defaults
    """
    pool_knobs = {
        "pool_size": DB_POOL_SIZE,
        "max_overflow": DB_MAX_OVERFLOW,
        "pool_timeout": DB_POOL_TIMEOUT_SECONDS,
        "pool_recycle": DB_POOL_RECYCLE_SECONDS,
    }
    options = {name: int(value) for name, value in pool_knobs.items() if value is not None}
    options.update(pool_pre_ping=True, future=True)
    return options


ENGINE = create_engine(DATABASE_URL, **engine_options())
SessionLocal = sessionmaker(bind=ENGINE, autocommit=False, autoflush=False, future=True)

_SCHEMA_APPLIED = False


def schema_statements() -> List[str]:
    """
    Split schema.sql into individual statements

    Returns:
        list of SQL statements without comments
    """
    lines = [
        line for line in SCHEMA_PATH.read_text(encoding="utf-8").splitlines()
        if not line.strip().startswith("--")
    ]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def apply_schema(engine=None) -> List[str]:
    """
    Create the core tables when missing

    Uses a PostgreSQL advisory lock so only one replica applies DDL at a time

    Args:
        engine: SQLAlchemy engine; defaults to ENGINE

    Returns:
        list of executed statements
    """
    engine = engine or ENGINE
    statements = schema_statements()

    with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            # Released when the transaction ends
            conn.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": SCHEMA_LOCK_ID})
        for statement in statements:
            conn.exec_driver_sql(statement)
    return statements


def apply_schema_if_needed() -> None:
    """
    Apply schema.sql once per process when APPLY_DB_SCHEMA is enabled
    """
    global _SCHEMA_APPLIED

    if _SCHEMA_APPLIED or not APPLY_DB_SCHEMA:
        return

    count = len(apply_schema())
    _SCHEMA_APPLIED = True
    logger.info("Database schema applied (%s statements)", count)


@contextmanager
def db_session() -> Iterator[Session]:
    """
    One unit of work: commit on clean exit, roll back when the block raises

    Returns:
        SQLAlchemy Session
    """
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    else:
        session.commit()
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency wrapping db_session
    """
    with db_session() as session:
        yield session
