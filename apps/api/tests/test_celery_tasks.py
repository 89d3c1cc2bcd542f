from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.service import AutomationService
from app.core import celery_app
from app.core.database import Base


class RecordingSession:
    def __init__(self) -> None:
        self.rolled_back = False
        self.closed = False

    def rollback(self) -> None:
        self.rolled_back = True

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


def test_scheduled_tick_returns_summary(
    session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(celery_app, "SessionLocal", session_factory)

    assert celery_app.automation_scheduled_tick() == {"rules_run": 0, "overdue_tasks": 0}


def test_scheduled_tick_rolls_back_and_reraises(monkeypatch: pytest.MonkeyPatch) -> None:
    session = RecordingSession()

    def fail(self, db_session, *, now=None):
        assert db_session is session
        raise RuntimeError("scheduler store down")

    monkeypatch.setattr(celery_app, "SessionLocal", lambda: session)
    monkeypatch.setattr(AutomationService, "run_scheduled", fail)

    with pytest.raises(RuntimeError, match="scheduler store down"):
        celery_app.automation_scheduled_tick()

    assert session.rolled_back is True
    assert session.closed is True
