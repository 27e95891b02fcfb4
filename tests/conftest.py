"""Shared pytest fixtures for backend and chat tests."""

from __future__ import annotations

from typing import Callable, Iterator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import get_settings
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, User, UserRole
from coachflow.chat import (
    ChatContext,
    ConversationManager,
    IdentityBridge,
    SessionCredentials,
)
from coachflow.realtime import InMemoryDocumentStore, LocalBlobStorage, mint_custom_token

TOKEN_SECRET = "test-realtime-secret"


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db_session) -> Callable[..., User]:
    """Persist a user and return it."""

    def factory(username: str, role: UserRole = UserRole.TRAINEE, **fields) -> User:
        user = User(
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            role=role,
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return factory


@pytest.fixture()
def auth_headers() -> Callable[[User], dict[str, str]]:
    def build(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}

    return build


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(token_secret=TOKEN_SECRET)


@pytest.fixture()
def blobs(tmp_path) -> LocalBlobStorage:
    return LocalBlobStorage(tmp_path / "media", "/media/chat", max_size=1024)


def token_transport(uid: str, *, role: str = "trainee") -> httpx.MockTransport:
    """Backend stand-in that issues a valid custom token for ``uid``."""

    def handler(request: httpx.Request) -> httpx.Response:
        token = mint_custom_token(uid, {"role": role}, secret=TOKEN_SECRET, ttl_seconds=60)
        return httpx.Response(200, json={"success": True, "token": token, "claims": {"role": role}})

    return httpx.MockTransport(handler)


@pytest.fixture()
def make_manager(store, blobs) -> Callable[..., ConversationManager]:
    """Build a manager for ``uid`` sharing the test store and blob storage."""

    def factory(uid: str, *, transport: httpx.AsyncBaseTransport | None = None, **kwargs) -> ConversationManager:
        bridge = IdentityBridge(
            store,
            SessionCredentials(access_token=f"session-{uid}"),
            base_url="http://backend.test",
            transport=transport or token_transport(uid),
        )
        return ConversationManager(
            store,
            bridge,
            blobs,
            context=ChatContext(username=f"user{uid}", role="trainee"),
            **kwargs,
        )

    return factory


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> Iterator[None]:
    yield
    get_settings.cache_clear()
