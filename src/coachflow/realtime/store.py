"""Document store primitives shared by the realtime backends."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping, Union

from .tokens import Principal, verify_custom_token

logger = logging.getLogger(__name__)


FieldPath = Union[str, tuple[str, ...]]
SnapshotHandler = Callable[[Any], Awaitable[None]]


# ---------------------------------------------------------------------------
# Field transforms
# ---------------------------------------------------------------------------


class _ServerTimestamp:
    """Sentinel replaced by the store clock when a write is applied."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Add values to an array field, skipping ones already present."""

    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values = tuple(values)

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class ArrayRemove:
    """Remove every occurrence of the given values from an array field."""

    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values = tuple(values)

    def __repr__(self) -> str:
        return f"ArrayRemove{self.values!r}"


def split_field_path(path: FieldPath) -> tuple[str, ...]:
    """Normalise a dotted string or a tuple of segments into segments."""

    segments = tuple(path.split(".")) if isinstance(path, str) else tuple(path)
    if not segments or any(not isinstance(part, str) or not part for part in segments):
        raise ValueError(f"Invalid field path: {path!r}")
    return segments


def resolve_server_values(value: Any, now: datetime) -> Any:
    """Replace transforms inside a value written as a whole document."""

    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, ArrayUnion):
        merged: list[Any] = []
        for item in value.values:
            if item not in merged:
                merged.append(item)
        return merged
    if isinstance(value, ArrayRemove):
        return []
    if isinstance(value, Mapping):
        return {str(key): resolve_server_values(item, now) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_server_values(item, now) for item in value]
    return value


def apply_changes(
    document: Mapping[str, Any], changes: Mapping[FieldPath, Any], now: datetime
) -> dict[str, Any]:
    """Return a copy of ``document`` with field-level ``changes`` applied."""

    updated = copy.deepcopy(dict(document))
    for raw_path, value in changes.items():
        segments = split_field_path(raw_path)
        target = updated
        for segment in segments[:-1]:
            child = target.get(segment)
            if not isinstance(child, dict):
                child = {}
                target[segment] = child
            target = child
        leaf = segments[-1]
        if isinstance(value, ArrayUnion):
            current = target.get(leaf)
            merged = list(current) if isinstance(current, list) else []
            for item in value.values:
                if item not in merged:
                    merged.append(item)
            target[leaf] = merged
        elif isinstance(value, ArrayRemove):
            current = target.get(leaf)
            remaining = list(current) if isinstance(current, list) else []
            target[leaf] = [item for item in remaining if item not in value.values]
        else:
            target[leaf] = resolve_server_values(value, now)
    return updated


def get_field(document: Mapping[str, Any] | None, path: FieldPath) -> Any:
    """Read a possibly nested field, returning ``None`` when absent."""

    current: Any = document
    for segment in split_field_path(path):
        if not isinstance(current, Mapping):
            return None
        current = current.get(segment)
    return current


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def document_path(*segments: str) -> str:
    """Join path segments, rejecting empty segments and embedded slashes."""

    parts = [str(segment) for segment in segments]
    if not parts or any(not part or "/" in part for part in parts):
        raise ValueError(f"Invalid document path segments: {segments!r}")
    return "/".join(parts)


def split_document_path(path: str) -> tuple[str, str]:
    """Return ``(collection, document_id)`` for a document path."""

    parts = path.split("/")
    if len(parts) < 2 or len(parts) % 2 != 0 or any(not part for part in parts):
        raise ValueError(f"'{path}' is not a document path")
    return "/".join(parts[:-1]), parts[-1]


# ---------------------------------------------------------------------------
# Snapshots and queries
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DocumentSnapshot:
    """Immutable view of a document at a point in time."""

    path: str
    data: dict[str, Any] | None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def collection(self) -> str:
        return split_document_path(self.path)[0]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, field_path: FieldPath, default: Any = None) -> Any:
        value = get_field(self.data, field_path)
        return default if value is None else value

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.data) if self.data is not None else {}


_OPERATORS = ("==", "array-contains")


@dataclass(frozen=True, slots=True)
class FieldFilter:
    field: tuple[str, ...]
    op: str
    value: Any

    def matches(self, data: Mapping[str, Any]) -> bool:
        current = get_field(data, self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "array-contains":
            return isinstance(current, list) and self.value in current
        raise ValueError(f"Unsupported operator '{self.op}'")


@dataclass(frozen=True, slots=True)
class Query:
    """Immutable query over a single collection."""

    collection: str
    filters: tuple[FieldFilter, ...] = ()
    orders: tuple[tuple[tuple[str, ...], str], ...] = ()

    def where(self, field_path: FieldPath, op: str, value: Any) -> "Query":
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator '{op}'")
        condition = FieldFilter(split_field_path(field_path), op, value)
        return Query(self.collection, self.filters + (condition,), self.orders)

    def order_by(self, field_path: FieldPath, direction: str = "asc") -> "Query":
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported direction '{direction}'")
        order = (split_field_path(field_path), direction)
        return Query(self.collection, self.filters, self.orders + (order,))

    def matches(self, snapshot: DocumentSnapshot) -> bool:
        if not snapshot.exists or snapshot.collection != self.collection:
            return False
        return all(condition.matches(snapshot.data or {}) for condition in self.filters)

    def run(self, documents: Iterable[DocumentSnapshot]) -> list[DocumentSnapshot]:
        """Filter and order candidate documents; ties fall back to the id."""

        results = sorted((doc for doc in documents if self.matches(doc)), key=lambda doc: doc.id)
        for field_path, direction in reversed(self.orders):
            results.sort(
                key=lambda doc, fp=field_path: _order_key(get_field(doc.data, fp)),
                reverse=direction == "desc",
            )
        return results


def _order_key(value: Any) -> tuple[int, Any]:
    # None sorts before every value in ascending order.
    if value is None:
        return (0, 0)
    return (1, value)


@dataclass(frozen=True, slots=True)
class QuerySnapshot:
    """Complete result set of a query at a point in time."""

    query: Query
    documents: tuple[DocumentSnapshot, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[DocumentSnapshot]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    @property
    def ids(self) -> list[str]:
        return [document.id for document in self.documents]


def snapshot_signature(snapshot: QuerySnapshot | DocumentSnapshot) -> Any:
    """Comparable fingerprint used to skip deliveries that change nothing."""

    if isinstance(snapshot, DocumentSnapshot):
        return (snapshot.path, snapshot.data)
    return tuple((document.path, document.data) for document in snapshot.documents)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class Subscription:
    """Handle returned for a standing query or document watch."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


async def deliver(handler: SnapshotHandler, snapshot: Any, *, name: str) -> None:
    """Invoke a snapshot handler, logging failures instead of raising them."""

    try:
        await handler(snapshot)
    except Exception:
        logger.exception("Snapshot handler failed", extra={"subscription": name})


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class DocumentStore(abc.ABC):
    """Collection/document store with snapshot subscriptions."""

    backend_name = "abstract"

    def __init__(self, *, token_secret: str, token_algorithm: str = "HS256") -> None:
        self._token_secret = token_secret
        self._token_algorithm = token_algorithm

    async def sign_in_with_custom_token(self, token: str) -> Principal:
        """Exchange a custom token minted by the backend for a principal."""

        principal = verify_custom_token(
            token, secret=self._token_secret, algorithm=self._token_algorithm
        )
        logger.debug("Signed in realtime principal", extra={"uid": principal.uid})
        return principal

    @abc.abstractmethod
    async def get(self, path: str) -> DocumentSnapshot:
        """Read a document; missing documents yield ``exists == False``."""

    @abc.abstractmethod
    async def create(self, path: str, data: Mapping[str, Any]) -> bool:
        """Create a document only if absent. Returns ``True`` when created."""

    @abc.abstractmethod
    async def set(self, path: str, data: Mapping[str, Any]) -> None:
        """Create or overwrite a document."""

    @abc.abstractmethod
    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        """Create a document with a store-assigned id and return the id."""

    @abc.abstractmethod
    async def update(self, path: str, changes: Mapping[FieldPath, Any]) -> None:
        """Apply field-level changes atomically; raises ``NotFoundError``."""

    @abc.abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a document. Deleting a missing document is a no-op."""

    @abc.abstractmethod
    async def query(self, query: Query) -> QuerySnapshot:
        """Run a query once."""

    @abc.abstractmethod
    async def subscribe(self, query: Query, handler: SnapshotHandler) -> Subscription:
        """Deliver the current result set now and after every change."""

    @abc.abstractmethod
    async def watch(self, path: str, handler: SnapshotHandler) -> Subscription:
        """Deliver the current document now and after every change."""

    async def close(self) -> None:
        """Release backend resources."""
