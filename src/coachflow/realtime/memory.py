"""In-process document store used for local runs and tests."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from app.monitoring.metrics import realtime_snapshots_total

from .errors import NotFoundError
from .store import (
    DocumentSnapshot,
    DocumentStore,
    FieldPath,
    Query,
    QuerySnapshot,
    SnapshotHandler,
    Subscription,
    apply_changes,
    deliver,
    resolve_server_values,
    snapshot_signature,
    split_document_path,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class _Listener:
    """Bookkeeping for one standing query or document watch."""

    name: str
    handler: SnapshotHandler
    query: Query | None = None
    path: str | None = None
    last_signature: Any = None
    delivered: bool = False
    active: bool = True
    pending: bool = False
    pushing: bool = False

    def concerns(self, path: str, collection: str) -> bool:
        if self.path is not None:
            return self.path == path
        return self.query is not None and self.query.collection == collection


class InMemoryDocumentStore(DocumentStore):
    """Keeps documents in a dict; writes are serialised by a single lock."""

    backend_name = "memory"

    def __init__(
        self,
        *,
        token_secret: str,
        token_algorithm: str = "HS256",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(token_secret=token_secret, token_algorithm=token_algorithm)
        self._documents: dict[str, dict[str, Any]] = {}
        self._listeners: list[_Listener] = []
        self._lock = asyncio.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_timestamp: datetime | None = None

    def _server_now(self) -> datetime:
        # Server timestamps are strictly increasing so creation order is total.
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _snapshot(self, path: str) -> DocumentSnapshot:
        data = self._documents.get(path)
        return DocumentSnapshot(path, copy.deepcopy(data) if data is not None else None)

    def _run_query(self, query: Query) -> QuerySnapshot:
        prefix = f"{query.collection}/"
        candidates = [
            DocumentSnapshot(path, copy.deepcopy(data))
            for path, data in self._documents.items()
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        ]
        return QuerySnapshot(query, tuple(query.run(candidates)))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get(self, path: str) -> DocumentSnapshot:
        split_document_path(path)
        async with self._lock:
            return self._snapshot(path)

    async def query(self, query: Query) -> QuerySnapshot:
        async with self._lock:
            return self._run_query(query)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def create(self, path: str, data: Mapping[str, Any]) -> bool:
        split_document_path(path)
        async with self._lock:
            if path in self._documents:
                return False
            self._documents[path] = resolve_server_values(dict(data), self._server_now())
        logger.debug("Created document", extra={"path": path})
        await self._notify(path)
        return True

    async def set(self, path: str, data: Mapping[str, Any]) -> None:
        split_document_path(path)
        async with self._lock:
            self._documents[path] = resolve_server_values(dict(data), self._server_now())
        await self._notify(path)

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        document_id = uuid.uuid4().hex
        path = f"{collection}/{document_id}"
        split_document_path(path)
        async with self._lock:
            self._documents[path] = resolve_server_values(dict(data), self._server_now())
        await self._notify(path)
        return document_id

    async def update(self, path: str, changes: Mapping[FieldPath, Any]) -> None:
        split_document_path(path)
        async with self._lock:
            current = self._documents.get(path)
            if current is None:
                raise NotFoundError(path)
            self._documents[path] = apply_changes(current, changes, self._server_now())
        await self._notify(path)

    async def delete(self, path: str) -> None:
        split_document_path(path)
        async with self._lock:
            removed = self._documents.pop(path, None)
        if removed is not None:
            await self._notify(path)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def subscribe(self, query: Query, handler: SnapshotHandler) -> Subscription:
        listener = _Listener(name=f"query:{query.collection}", handler=handler, query=query)
        return await self._register(listener)

    async def watch(self, path: str, handler: SnapshotHandler) -> Subscription:
        split_document_path(path)
        listener = _Listener(name=f"doc:{path}", handler=handler, path=path)
        return await self._register(listener)

    async def _register(self, listener: _Listener) -> Subscription:
        self._listeners.append(listener)

        async def cleanup() -> None:
            listener.active = False
            if listener in self._listeners:
                self._listeners.remove(listener)

        await self._push(listener)
        return Subscription(listener.name, cleanup)

    async def _notify(self, path: str) -> None:
        collection, _ = split_document_path(path)
        for listener in list(self._listeners):
            if listener.concerns(path, collection):
                await self._push(listener)

    async def _push(self, listener: _Listener) -> None:
        # A push requested while a delivery is running (for instance from a
        # handler that writes) is folded into the running loop, which always
        # reads the latest state before delivering.
        listener.pending = True
        if listener.pushing:
            return
        listener.pushing = True
        try:
            while listener.pending and listener.active:
                listener.pending = False
                async with self._lock:
                    if listener.query is not None:
                        snapshot: Any = self._run_query(listener.query)
                    else:
                        snapshot = self._snapshot(listener.path or "")
                signature = snapshot_signature(snapshot)
                if listener.delivered and signature == listener.last_signature:
                    continue
                listener.last_signature = signature
                listener.delivered = True
                realtime_snapshots_total.labels(self.backend_name).inc()
                await deliver(listener.handler, snapshot, name=listener.name)
        finally:
            listener.pushing = False

    async def close(self) -> None:
        for listener in list(self._listeners):
            listener.active = False
        self._listeners.clear()
