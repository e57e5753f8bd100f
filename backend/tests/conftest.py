import os
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("AUTH_DEV_SHOW_CODE", "true")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from loginguard.db.base import Base
from loginguard.db import models  # noqa: F401
from loginguard.services.settings import seed_default_rate_limits

NOW = datetime(2026, 3, 1, 12, 0, 0)


def run_concurrently(session_factory: sessionmaker, task: Callable, times: int = 20) -> list:
    """Run ``task(session, index)`` from several threads, one session each."""

    def _call(index: int):
        with session_factory() as session:
            return task(session, index)

    with ThreadPoolExecutor(max_workers=8) as pool:
        return list(pool.map(_call, range(times)))


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def file_sessions(tmp_path) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'loginguard.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    with factory() as session:
        seed_default_rate_limits(session)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def seeded_session(db_session: Session) -> Session:
    seed_default_rate_limits(db_session)
    return db_session


@pytest.fixture()
def sent_codes() -> list[tuple[str, str, str]]:
    return []


@pytest.fixture()
def notifier(sent_codes):
    def _notify(email: str, code: str, reason: str) -> bool:
        sent_codes.append((email, code, reason))
        return True

    return _notify
