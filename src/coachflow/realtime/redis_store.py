"""Redis-backed document store with pub/sub change feeds."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError, WatchError

from app.monitoring.metrics import (
    realtime_feed_restarts_total,
    realtime_snapshots_total,
    realtime_update_conflicts_total,
)

from .errors import NotFoundError, TransientStoreError
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

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_FEED_RECOVERY_BASE_DELAY = 0.5
_FEED_RECOVERY_MAX_DELAY = 30.0

_TIMESTAMP_KEY = "$ts"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_TIMESTAMP_KEY: value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_object_hook(value: dict[str, Any]) -> Any:
    if len(value) == 1 and _TIMESTAMP_KEY in value:
        return datetime.fromisoformat(value[_TIMESTAMP_KEY])
    return value


def encode_document(data: Mapping[str, Any]) -> str:
    return json.dumps(data, default=_json_default, sort_keys=True)


def decode_document(raw: str) -> dict[str, Any]:
    return json.loads(raw, object_hook=_json_object_hook)


@dataclass(slots=True, eq=False)
class _FeedState:
    """Internal bookkeeping for one change-feed subscription."""

    name: str
    channel: str
    handler: SnapshotHandler
    query: Query | None = None
    path: str | None = None
    last_signature: Any = None
    delivered: bool = False
    active: bool = True


async def _close_pubsub(pubsub: Any) -> None:
    with contextlib.suppress(Exception):
        await pubsub.unsubscribe()
    with contextlib.suppress(Exception):
        await pubsub.aclose()


class RedisDocumentStore(DocumentStore):
    """Stores documents as JSON strings and announces writes over pub/sub."""

    backend_name = "redis"

    def __init__(
        self,
        client: Any,
        *,
        token_secret: str,
        token_algorithm: str = "HS256",
        prefix: str = "coachflow",
        update_retries: int = 10,
    ) -> None:
        super().__init__(token_secret=token_secret, token_algorithm=token_algorithm)
        self._redis = client
        self._prefix = prefix.rstrip(":.")
        self._update_retries = max(int(update_retries), 1)
        self._feeds: list[Subscription] = []
        self._last_timestamp: datetime | None = None

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisDocumentStore":
        client = redis_asyncio.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------
    def _doc_key(self, path: str) -> str:
        return f"{self._prefix}:doc:{path}"

    def _collection_key(self, collection: str) -> str:
        return f"{self._prefix}:col:{collection}"

    def _changes_channel(self, collection: str) -> str:
        return f"{self._prefix}.changes.{collection}"

    async def _server_now(self) -> datetime:
        seconds, microseconds = await self._redis.time()
        now = datetime.fromtimestamp(int(seconds), timezone.utc).replace(
            microsecond=int(microseconds)
        )
        # Strictly increasing per store so messages from this client keep send order.
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    async def _publish_change(self, path: str) -> None:
        collection, _ = split_document_path(path)
        channel = self._changes_channel(collection)
        await self._redis.publish(channel, json.dumps({"path": path}))
        logger.debug("Published document change", extra={"channel": channel, "path": path})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get(self, path: str) -> DocumentSnapshot:
        split_document_path(path)
        try:
            raw = await self._redis.get(self._doc_key(path))
        except _REDIS_ERRORS as exc:
            raise TransientStoreError("Redis backend is unavailable") from exc
        return DocumentSnapshot(path, decode_document(raw) if raw is not None else None)

    async def query(self, query: Query) -> QuerySnapshot:
        try:
            members = await self._redis.smembers(self._collection_key(query.collection))
            ids = sorted(members)
            paths = [f"{query.collection}/{document_id}" for document_id in ids]
            values = await self._redis.mget([self._doc_key(path) for path in paths]) if paths else []
        except _REDIS_ERRORS as exc:
            raise TransientStoreError("Redis backend is unavailable") from exc
        candidates = [
            DocumentSnapshot(path, decode_document(raw))
            for path, raw in zip(paths, values)
            if raw is not None
        ]
        return QuerySnapshot(query, tuple(query.run(candidates)))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def _write(self, path: str, data: Mapping[str, Any], *, only_if_absent: bool) -> bool:
        collection, document_id = split_document_path(path)
        try:
            now = await self._server_now()
            encoded = encode_document(resolve_server_values(dict(data), now))
            written = await self._redis.set(self._doc_key(path), encoded, nx=only_if_absent)
            if not written:
                return False
            await self._redis.sadd(self._collection_key(collection), document_id)
            await self._publish_change(path)
        except _REDIS_ERRORS as exc:
            raise TransientStoreError("Redis backend is unavailable") from exc
        return True

    async def create(self, path: str, data: Mapping[str, Any]) -> bool:
        return await self._write(path, data, only_if_absent=True)

    async def set(self, path: str, data: Mapping[str, Any]) -> None:
        await self._write(path, data, only_if_absent=False)

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        document_id = uuid.uuid4().hex
        await self._write(f"{collection}/{document_id}", data, only_if_absent=True)
        return document_id

    async def update(self, path: str, changes: Mapping[FieldPath, Any]) -> None:
        split_document_path(path)
        key = self._doc_key(path)
        for attempt in range(1, self._update_retries + 1):
            try:
                now = await self._server_now()
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise NotFoundError(path)
                    updated = apply_changes(decode_document(raw), changes, now)
                    pipe.multi()
                    pipe.set(key, encode_document(updated))
                    await pipe.execute()
            except WatchError:
                realtime_update_conflicts_total.labels(self.backend_name).inc()
                logger.debug(
                    "Concurrent write detected; retrying update",
                    extra={"path": path, "attempt": attempt},
                )
                continue
            except _REDIS_ERRORS as exc:
                raise TransientStoreError("Redis backend is unavailable") from exc
            try:
                await self._publish_change(path)
            except _REDIS_ERRORS as exc:
                raise TransientStoreError("Redis backend is unavailable") from exc
            return
        raise TransientStoreError(
            f"Update of '{path}' kept conflicting after {self._update_retries} attempts"
        )

    async def delete(self, path: str) -> None:
        collection, document_id = split_document_path(path)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._doc_key(path))
                pipe.srem(self._collection_key(collection), document_id)
                removed, _ = await pipe.execute()
            if removed:
                await self._publish_change(path)
        except _REDIS_ERRORS as exc:
            raise TransientStoreError("Redis backend is unavailable") from exc

    # ------------------------------------------------------------------
    # Change feeds
    # ------------------------------------------------------------------
    async def subscribe(self, query: Query, handler: SnapshotHandler) -> Subscription:
        state = _FeedState(
            name=f"query:{query.collection}",
            channel=self._changes_channel(query.collection),
            handler=handler,
            query=query,
        )
        return await self._open_feed(state)

    async def watch(self, path: str, handler: SnapshotHandler) -> Subscription:
        collection, _ = split_document_path(path)
        state = _FeedState(
            name=f"doc:{path}",
            channel=self._changes_channel(collection),
            handler=handler,
            path=path,
        )
        return await self._open_feed(state)

    async def _open_feed(self, state: _FeedState) -> Subscription:
        pubsub = await self._attach(state)
        try:
            await self._refresh(state)
        except Exception:
            await _close_pubsub(pubsub)
            raise
        task = asyncio.create_task(self._reader(state, pubsub), name=f"realtime-feed-{state.channel}")

        async def cleanup() -> None:
            state.active = False
            if subscription in self._feeds:
                self._feeds.remove(subscription)

        subscription = Subscription(state.name, cleanup, task)
        self._feeds.append(subscription)
        return subscription

    async def _attach(self, state: _FeedState) -> Any:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            await _close_pubsub(pubsub)
            raise TransientStoreError("Redis backend is unavailable") from exc
        return pubsub

    async def _refresh(self, state: _FeedState) -> None:
        if state.query is not None:
            snapshot: Any = await self.query(state.query)
        else:
            snapshot = await self.get(state.path or "")
        signature = snapshot_signature(snapshot)
        if state.delivered and signature == state.last_signature:
            return
        state.last_signature = signature
        state.delivered = True
        realtime_snapshots_total.labels(self.backend_name).inc()
        await deliver(state.handler, snapshot, name=state.name)

    def _is_relevant(self, state: _FeedState, message: dict[str, Any]) -> bool:
        if message.get("type") != "message":
            return False
        if state.path is None:
            return True
        try:
            payload = json.loads(message.get("data") or "")
        except (TypeError, json.JSONDecodeError):
            logger.warning("Discarded malformed change notification", extra={"channel": state.channel})
            return False
        return isinstance(payload, dict) and payload.get("path") == state.path

    async def _reader(self, state: _FeedState, pubsub: Any) -> None:
        attempt = 0
        while state.active:
            if pubsub is None:
                delay = min(_FEED_RECOVERY_BASE_DELAY * (2**attempt), _FEED_RECOVERY_MAX_DELAY)
                await asyncio.sleep(delay)
                try:
                    pubsub = await self._attach(state)
                    await self._refresh(state)
                except TransientStoreError:
                    attempt += 1
                    logger.warning(
                        "Change feed re-attach failed",
                        extra={"channel": state.channel, "attempt": attempt},
                    )
                    if pubsub is not None:
                        await _close_pubsub(pubsub)
                        pubsub = None
                    continue
                attempt = 0
                realtime_feed_restarts_total.labels(self.backend_name).inc()
                logger.info("Change feed recovered", extra={"channel": state.channel})
            try:
                async for message in pubsub.listen():
                    if not state.active:
                        break
                    if self._is_relevant(state, message):
                        await self._refresh(state)
                else:
                    logger.warning("Change feed closed by server", extra={"channel": state.channel})
            except (TransientStoreError, *_REDIS_ERRORS):
                logger.warning(
                    "Change feed interrupted; scheduling re-attach",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                    extra={"channel": state.channel},
                )
            finally:
                await _close_pubsub(pubsub)
                pubsub = None

    async def close(self) -> None:
        for subscription in list(self._feeds):
            await subscription.close()
        self._feeds.clear()
        await self._redis.aclose()
