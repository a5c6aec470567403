import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from traffboard_reports.config import reset_settings
from traffboard_reports.infrastructure import db


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sqlite_db():
    """Fresh in-memory database shared by every session for the duration of a test."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    previous = db.get_engine()
    db.override_engine(engine)
    db.create_all()
    yield engine
    db.Base.metadata.drop_all(engine)
    db.override_engine(previous)
    engine.dispose()


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()
