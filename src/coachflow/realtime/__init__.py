"""Realtime document store adapters, change feeds and blob storage."""

from .blobs import BlobStorage, LocalBlobStorage
from .errors import (
    InvalidCustomTokenError,
    NotFoundError,
    StoreError,
    TransientStoreError,
    UploadError,
)
from .factory import create_blob_storage, create_store
from .memory import InMemoryDocumentStore
from .redis_store import RedisDocumentStore
from .store import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Query,
    QuerySnapshot,
    Subscription,
    document_path,
)
from .tokens import Principal, mint_custom_token, verify_custom_token

__all__ = [
    "SERVER_TIMESTAMP",
    "ArrayRemove",
    "ArrayUnion",
    "BlobStorage",
    "DocumentSnapshot",
    "DocumentStore",
    "InMemoryDocumentStore",
    "InvalidCustomTokenError",
    "LocalBlobStorage",
    "NotFoundError",
    "Principal",
    "Query",
    "QuerySnapshot",
    "RedisDocumentStore",
    "StoreError",
    "Subscription",
    "TransientStoreError",
    "UploadError",
    "create_blob_storage",
    "create_store",
    "document_path",
    "mint_custom_token",
    "verify_custom_token",
]
