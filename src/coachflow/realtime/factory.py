"""Build realtime backends from application settings."""

from __future__ import annotations

import logging

from app.config import Settings, get_settings

from .blobs import BlobStorage, LocalBlobStorage
from .memory import InMemoryDocumentStore
from .redis_store import RedisDocumentStore
from .store import DocumentStore

logger = logging.getLogger(__name__)


def create_store(settings: Settings | None = None) -> DocumentStore:
    """Return the document store selected by ``realtime_backend``."""

    settings = settings or get_settings()
    backend = settings.realtime_backend
    if backend == "redis":
        if not settings.realtime_redis_url:
            raise ValueError("REALTIME_REDIS_URL must be set for the redis realtime backend")
        logger.info("Using Redis realtime store", extra={"prefix": settings.realtime_redis_prefix})
        return RedisDocumentStore.from_url(
            settings.realtime_redis_url,
            token_secret=settings.realtime_token_secret,
            token_algorithm=settings.jwt_algorithm,
            prefix=settings.realtime_redis_prefix,
            update_retries=settings.realtime_update_retries,
        )
    if backend == "memory":
        logger.info("Using in-memory realtime store; data is lost on restart")
        return InMemoryDocumentStore(
            token_secret=settings.realtime_token_secret,
            token_algorithm=settings.jwt_algorithm,
        )
    raise ValueError(f"Unsupported realtime backend '{backend}'")


def create_blob_storage(settings: Settings | None = None) -> BlobStorage:
    settings = settings or get_settings()
    return LocalBlobStorage(
        settings.media_root,
        settings.media_base_url,
        max_size=settings.max_upload_size,
    )
