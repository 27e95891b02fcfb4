from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.config import Settings
from app.monitoring.registry import MetricsRegistry
from coachflow.chat import ConversationManager, SessionCredentials
from coachflow.realtime import InMemoryDocumentStore, LocalBlobStorage, RedisDocumentStore, create_store


def test_settings_parse_comma_separated_roles(monkeypatch):
    monkeypatch.setenv("CHAT_TOKEN_ROLES", "trainer, admin")
    monkeypatch.setenv("REALTIME_BACKEND", "Redis")

    settings = Settings()

    assert settings.chat_token_roles == ["trainer", "admin"]
    assert settings.realtime_backend == "redis"


def test_settings_reject_unknown_backend(monkeypatch):
    monkeypatch.setenv("REALTIME_BACKEND", "firestore")

    with pytest.raises(ValidationError):
        Settings()


def test_create_store_selects_backend():
    assert isinstance(create_store(Settings(realtime_backend="memory")), InMemoryDocumentStore)

    redis_settings = Settings(realtime_backend="redis", realtime_redis_url="redis://localhost:6379/0")
    assert isinstance(create_store(redis_settings), RedisDocumentStore)

    with pytest.raises(ValueError):
        create_store(Settings(realtime_backend="redis", realtime_redis_url=None))


def test_manager_from_settings_wires_local_backends(tmp_path):
    settings = Settings(realtime_backend="memory", media_root=tmp_path, chat_read_batch_size=5)

    manager = ConversationManager.from_settings(
        SessionCredentials(access_token="token"), settings=settings, username="coach", role="trainer"
    )

    assert isinstance(manager._store, InMemoryDocumentStore)
    assert isinstance(manager._blobs, LocalBlobStorage)
    assert manager.context.username == "coach"
    assert manager._read_batch_size == 5


def test_registry_renders_prometheus_text():
    registry = MetricsRegistry()
    counter = registry.counter("jobs_total", "Jobs.", label_names=("queue",))
    gauge = registry.gauge("workers", "Workers.")
    counter.labels("mail").inc()
    counter.labels('we"ird').inc(2.5)
    gauge.labels().set(3)

    text = registry.render()

    assert 'jobs_total{queue="mail"} 1' in text
    assert 'jobs_total{queue="we\\"ird"} 2.5' in text
    assert "workers 3" in text
    with pytest.raises(ValueError):
        registry.counter("jobs_total", "Duplicate.")
    with pytest.raises(AttributeError):
        counter.labels("mail").set(1)
