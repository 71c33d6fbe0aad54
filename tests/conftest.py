"""Shared test fixtures."""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

import pillsync.config as config_module
import pillsync.database as db_module
from pillsync.api.deps import get_context
from pillsync.config import Settings
from pillsync.database import init_db
from pillsync.main import app
from pillsync.notify.push import BasePushGateway, MulticastResult, PushDeliveryError, TokenResult
from pillsync.runtime import build_context
from pillsync.triggers.context import HandlerContext


class FakePushGateway(BasePushGateway):
    """Records every multicast instead of sending it.

    ``token_errors`` maps a token to the per-token error it should report;
    ``failure`` makes the whole request fail.
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.token_errors: dict[str, str] = {}
        self.failure: str | None = None

    def send_multicast(self, tokens, title, body, data=None) -> MulticastResult:
        self.calls.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        if self.failure:
            raise PushDeliveryError(self.failure)
        result = MulticastResult()
        for i, token in enumerate(tokens):
            error = self.token_errors.get(token)
            result.responses.append(
                TokenResult(
                    token=token,
                    success=error is None,
                    message_id=None if error else f"msg-{i}",
                    error=error,
                )
            )
        return result


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    """Plain session: writes through it fire no triggers."""
    with Session(engine) as s:
        yield s


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        check_missed_dose_url="http://testserver/tasks/check-missed-dose",
        task_secret="task-secret",
        task_worker_enabled=False,
        push_server_key="test-key",
        auth_password=None,
    )


@pytest.fixture
def push() -> FakePushGateway:
    return FakePushGateway()


@pytest.fixture
def ctx(engine, app_settings, push) -> HandlerContext:
    """Fully wired runtime: tree writes and document commits fire handlers."""
    return build_context(engine, app_settings, push=push)


@pytest.fixture
def client(engine, ctx, monkeypatch) -> Generator[TestClient, None, None]:
    """FastAPI TestClient bound to the test engine and runtime context."""
    # Lifespan reads these at startup; keep the worker off and the DB in memory
    monkeypatch.setattr(config_module.settings, "task_worker_enabled", False)
    original_engine = db_module.engine
    db_module.engine = engine

    app.dependency_overrides[get_context] = lambda: ctx
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    db_module.engine = original_engine
