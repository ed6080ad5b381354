import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Module-level config is read at import time; pin it before any clubstats import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["APPLY_DB_SCHEMA"] = "0"
os.environ.pop("GITHUB_TOKENS", None)
os.environ.pop("GITHUB_TOKEN", None)


@pytest.fixture(autouse=True)
def _isolate_test_env(monkeypatch):
    """
    Ensure tests don't depend on developer shell env vars

    In particular:
    - API auth is disabled unless a test explicitly enables it
    - Redis is absent unless a test injects a fake client
    """
    monkeypatch.setattr("clubstats.shared.config.API_AUTH_TOKEN", "", raising=False)
    monkeypatch.setattr("clubstats.shared.caching._redis", None, raising=False)
    monkeypatch.setattr("clubstats.shared.caching._cache", None, raising=False)
    monkeypatch.setattr("clubstats.shared.locks._local_locks", {}, raising=False)


@pytest.fixture()
def sqlite_engine():
    from clubstats.shared.database import apply_schema

    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    apply_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(sqlite_engine):
    """
    db_session()-style context manager bound to a fresh in-memory database
    """
    Session = sessionmaker(bind=sqlite_engine, autocommit=False, autoflush=False, future=True)

    @contextmanager
    def _factory():
        session = Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _factory


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture()
def clock():
    return FakeClock()
