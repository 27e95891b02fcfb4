"""Conversation manager for CoachFlow direct messages.

The realtime store is the single source of truth. The manager keeps caches
of the streams it subscribes to (conversation list, messages and typing map
of the active conversation, the caller's block list) and replaces each cache
wholesale whenever the store delivers a snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Callable, Iterable, Iterator, Sequence

from pydantic import ValidationError

from app.config import Settings, get_settings
from app.monitoring.metrics import chat_operations_total, realtime_subscriptions
from coachflow.realtime.blobs import BlobStorage
from coachflow.realtime.factory import create_blob_storage, create_store
from coachflow.realtime.store import (
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
from coachflow.realtime.tokens import Principal

from .directory import DirectorySync
from .errors import (
    AuthError,
    NoActiveConversationError,
    NotFoundError,
    NotReadyError,
    PermissionDeniedError,
    TransientStoreError,
    UploadError,
)
from .identity import IdentityBridge, SessionCredentials
from .models import (
    Attachment,
    Conversation,
    DirectoryUser,
    Message,
    MessageType,
    OutgoingFile,
    UserProfile,
)

logger = logging.getLogger(__name__)

CONVERSATIONS = "conversations"
MESSAGES = "messages"
USERS = "users"
ATTACHMENTS = "attachments"

DIRECT_PREFIX = "dm"
ATTACHMENT_PLACEHOLDER = "[Attachment]"

ViewListener = Callable[[str], None]


class ManagerState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    AUTH_FAILED = "auth_failed"


@dataclass(slots=True)
class ChatContext:
    """Session state shared by one conversation manager."""

    username: str | None = None
    role: str | None = None
    principal: Principal | None = None
    active_conversation_id: str | None = None
    state: ManagerState = ManagerState.UNAUTHENTICATED
    auth_error: str | None = None


def derive_conversation_id(a: str, b: str) -> str:
    """Return the id of the direct conversation between ``a`` and ``b``.

    Ids are ordered by code point so the result does not depend on argument
    order or locale.
    """

    first, second = str(a), str(b)
    if not first or not second:
        raise ValueError("Participant ids must be non-empty")
    if first == second:
        raise ValueError("A direct conversation needs two distinct participants")
    return "_".join([DIRECT_PREFIX, *sorted([first, second])])


def _conversation_path(conversation_id: str) -> str:
    return document_path(CONVERSATIONS, conversation_id)


def _messages_collection(conversation_id: str) -> str:
    return f"{_conversation_path(conversation_id)}/{MESSAGES}"


def _attachment_path(conversation_id: str, file_name: str) -> str:
    base_name = PurePosixPath(file_name.replace("\\", "/")).name or "file"
    return f"{ATTACHMENTS}/{conversation_id}/{uuid.uuid4().hex}_{base_name}"


@contextmanager
def _track(operation: str) -> Iterator[None]:
    try:
        yield
    except Exception:
        chat_operations_total.labels(operation, "error").inc()
        raise
    chat_operations_total.labels(operation, "ok").inc()


def _parse(model, documents: Iterable[DocumentSnapshot]) -> list:
    parsed = []
    for document in documents:
        try:
            parsed.append(model.from_snapshot(document))
        except ValidationError:
            logger.warning("Skipping malformed document", extra={"path": document.path})
    return parsed


class ConversationManager:
    """Direct-message operations and standing subscriptions for one user."""

    def __init__(
        self,
        store: DocumentStore,
        bridge: IdentityBridge,
        blobs: BlobStorage,
        *,
        directory: DirectorySync | None = None,
        context: ChatContext | None = None,
        message_max_length: int = 2000,
        read_batch_size: int = 20,
    ) -> None:
        self._store = store
        self._bridge = bridge
        self._blobs = blobs
        self._directory = directory
        self._context = context or ChatContext()
        self._message_max_length = message_max_length
        self._read_batch_size = max(int(read_batch_size), 1)

        self._listeners: list[ViewListener] = []
        self._streams: dict[str, Subscription] = {}
        self._switch_lock = asyncio.Lock()
        self._session: object | None = None

        self._conversations: list[Conversation] = []
        self._messages: list[Message] = []
        self._typing: dict[str, bool] = {}
        self._blocked: frozenset[str] = frozenset()
        self._users: list[DirectoryUser] = []

    @classmethod
    def from_settings(
        cls,
        credentials: SessionCredentials,
        *,
        settings: Settings | None = None,
        username: str | None = None,
        role: str | None = None,
        store: DocumentStore | None = None,
        blobs: BlobStorage | None = None,
    ) -> "ConversationManager":
        """Wire a manager with the backends and endpoints named in settings."""

        settings = settings or get_settings()
        store = store or create_store(settings)
        bridge = IdentityBridge(
            store,
            credentials,
            base_url=settings.api_base_url,
            token_path=settings.chat_token_path,
            timeout=settings.http_timeout_seconds,
        )
        directory = DirectorySync(
            credentials,
            base_url=settings.api_base_url,
            users_path=settings.chat_users_path,
            timeout=settings.http_timeout_seconds,
        )
        return cls(
            store,
            bridge,
            blobs or create_blob_storage(settings),
            directory=directory,
            context=ChatContext(username=username, role=role),
            message_max_length=settings.chat_message_max_length,
            read_batch_size=settings.chat_read_batch_size,
        )

    # ------------------------------------------------------------------
    # Cached views
    # ------------------------------------------------------------------
    @property
    def context(self) -> ChatContext:
        return self._context

    @property
    def state(self) -> ManagerState:
        return self._context.state

    @property
    def auth_error(self) -> str | None:
        return self._context.auth_error

    @property
    def uid(self) -> str | None:
        principal = self._context.principal
        return principal.uid if principal is not None else None

    @property
    def active_conversation_id(self) -> str | None:
        return self._context.active_conversation_id

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def typing(self) -> dict[str, bool]:
        return dict(self._typing)

    @property
    def blocked(self) -> frozenset[str]:
        return self._blocked

    @property
    def users(self) -> list[DirectoryUser]:
        return list(self._users)

    def add_listener(self, callback: ViewListener) -> Callable[[], None]:
        """Call ``callback(stream)`` whenever a cached view changes."""

        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self, stream: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(stream)
            except Exception:
                logger.exception("Chat view listener failed", extra={"stream": stream})

    def _set_state(self, state: ManagerState, auth_error: str | None = None) -> None:
        self._context.state = state
        self._context.auth_error = auth_error
        self._notify("state")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def init(self) -> ManagerState:
        """Authenticate, load the profile and open the standing subscriptions.

        A failed identity exchange leaves the manager in ``AUTH_FAILED`` with
        the error code in :attr:`auth_error`; it is not raised.
        """

        if self.state is ManagerState.AUTHENTICATING:
            raise AuthError("in_progress", "Authentication is already in progress")
        if self.state is ManagerState.READY:
            await self.teardown()

        self._set_state(ManagerState.AUTHENTICATING)
        try:
            principal = await self._bridge.exchange()
        except AuthError as exc:
            logger.warning("Chat authentication failed", extra={"code": exc.code})
            self._set_state(ManagerState.AUTH_FAILED, exc.code)
            return self.state

        self._context.principal = principal
        session = object()
        self._session = session
        try:
            await self._ensure_profile(principal.uid)
            await self._open_stream(
                "blocked",
                self._store.watch(document_path(USERS, principal.uid), self._on_profile(session)),
            )
            query = (
                Query(CONVERSATIONS)
                .where("participants", "array-contains", principal.uid)
                .order_by("lastMessageAt", "desc")
            )
            await self._open_stream("conversations", self._store.subscribe(query, self._on_conversations(session)))
        except Exception:
            await self._close_all_streams()
            self._session = None
            self._context.principal = None
            self._set_state(ManagerState.UNAUTHENTICATED)
            raise

        self._set_state(ManagerState.READY)
        logger.info("Conversation manager ready", extra={"uid": principal.uid})
        await self.refresh_users()
        return self.state

    async def teardown(self) -> None:
        """Close every standing subscription and forget the session."""

        async with self._switch_lock:
            await self._close_all_streams()
            self._session = None
            self._context.principal = None
            self._context.active_conversation_id = None
        self._conversations = []
        self._messages = []
        self._typing = {}
        self._blocked = frozenset()
        self._users = []
        for stream in ("conversations", "messages", "typing", "blocked", "users"):
            self._notify(stream)
        self._set_state(ManagerState.UNAUTHENTICATED)

    async def refresh_users(self) -> list[DirectoryUser]:
        """Reload the chat directory; failures leave an empty list."""

        if self._directory is None:
            return self.users
        self._users = await self._directory.fetch_users()
        self._notify("users")
        return self.users

    async def _ensure_profile(self, uid: str) -> None:
        path = document_path(USERS, uid)
        snapshot = await self._store.get(path)
        if snapshot.exists:
            self._blocked = frozenset(UserProfile.from_snapshot(snapshot).blocked)
            return
        profile = UserProfile(
            id=uid,
            username=self._context.username or "Unknown",
            role=self._context.role or "user",
        )
        document = profile.to_document()
        document["createdAt"] = SERVER_TIMESTAMP
        created = await self._store.create(path, document)
        if created:
            logger.info("Created chat profile", extra={"uid": uid})
        self._blocked = frozenset()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def _open_stream(self, name: str, opening) -> None:
        subscription = await opening
        self._streams[name] = subscription
        realtime_subscriptions.labels(name).inc()

    async def _close_stream(self, name: str) -> None:
        subscription = self._streams.pop(name, None)
        if subscription is None:
            return
        await subscription.close()
        realtime_subscriptions.labels(name).dec()

    async def _close_all_streams(self) -> None:
        for name in list(self._streams):
            await self._close_stream(name)

    def _on_profile(self, session: object):
        async def handle(snapshot: DocumentSnapshot) -> None:
            if self._session is not session:
                return
            self._blocked = frozenset(str(item) for item in snapshot.get("blocked", []))
            self._notify("blocked")

        return handle

    def _on_conversations(self, session: object):
        async def handle(snapshot: QuerySnapshot) -> None:
            if self._session is not session:
                return
            self._conversations = _parse(Conversation, snapshot)
            self._notify("conversations")

        return handle

    def _is_current(self, session: object, conversation_id: str) -> bool:
        return self._session is session and self._context.active_conversation_id == conversation_id

    def _on_messages(self, session: object, conversation_id: str):
        async def handle(snapshot: QuerySnapshot) -> None:
            if not self._is_current(session, conversation_id):
                logger.debug("Discarded stale message snapshot", extra={"conversation": conversation_id})
                return
            self._messages = _parse(Message, snapshot)
            self._notify("messages")

        return handle

    def _on_typing(self, session: object, conversation_id: str):
        async def handle(snapshot: DocumentSnapshot) -> None:
            if not self._is_current(session, conversation_id):
                return
            typing = snapshot.get("typing", {})
            self._typing = {str(key): bool(value) for key, value in typing.items()}
            self._notify("typing")

        return handle

    async def set_active_conversation(self, conversation_id: str | None) -> None:
        """Point the manager at a conversation and resubscribe its streams."""

        self._require_ready()
        async with self._switch_lock:
            if self._session is None or self.state is not ManagerState.READY:
                # A teardown finished while this switch was waiting for the lock.
                raise NotReadyError(self.state.value)
            if conversation_id == self._context.active_conversation_id and (
                conversation_id is None or MESSAGES in self._streams
            ):
                return
            await self._close_stream(MESSAGES)
            await self._close_stream("typing")
            self._context.active_conversation_id = conversation_id
            self._messages = []
            self._typing = {}
            self._notify("messages")
            self._notify("typing")
            if conversation_id is None:
                return
            session = self._session
            query = Query(_messages_collection(conversation_id)).order_by("createdAt")
            await self._open_stream(MESSAGES, self._store.subscribe(query, self._on_messages(session, conversation_id)))
            await self._open_stream(
                "typing",
                self._store.watch(_conversation_path(conversation_id), self._on_typing(session, conversation_id)),
            )

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------
    def _require_ready(self) -> str:
        principal = self._context.principal
        if self._context.state is not ManagerState.READY or principal is None:
            raise NotReadyError(self._context.state.value)
        return principal.uid

    def _require_active(self) -> str:
        conversation_id = self._context.active_conversation_id
        if conversation_id is None:
            raise NoActiveConversationError("No active conversation")
        return conversation_id

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def start_direct_conversation(self, other_id: str | int) -> str:
        """Open the conversation with ``other_id``, creating it when absent."""

        uid = self._require_ready()
        other = str(other_id)
        with _track("start_conversation"):
            conversation_id = derive_conversation_id(uid, other)
            if other in self._blocked:
                raise PermissionDeniedError(f"User '{other}' is blocked")
            path = _conversation_path(conversation_id)
            snapshot = await self._store.get(path)
            if not snapshot.exists:
                created = await self._store.create(
                    path,
                    {
                        "participants": [uid, other],
                        "isGroup": False,
                        "lastMessage": None,
                        "lastMessageAt": None,
                        "createdAt": SERVER_TIMESTAMP,
                        "createdBy": uid,
                        "typing": {},
                    },
                )
                if created:
                    logger.info("Created conversation", extra={"conversation": conversation_id})
                else:
                    logger.debug("Conversation created concurrently", extra={"conversation": conversation_id})
            await self.set_active_conversation(conversation_id)
        return conversation_id

    async def _upload_attachments(
        self, conversation_id: str, files: Sequence[OutgoingFile]
    ) -> list[Attachment]:
        uploaded: list[str] = []
        attachments: list[Attachment] = []
        try:
            for item in files:
                path = _attachment_path(conversation_id, item.name)
                content_type = item.resolved_content_type
                url = await self._blobs.upload(path, item.content, content_type)
                uploaded.append(path)
                attachments.append(Attachment(name=item.name, url=url, type=content_type, size=item.size))
        except UploadError:
            for path in uploaded:
                try:
                    await self._blobs.delete(path)
                except (UploadError, OSError):
                    logger.warning("Could not remove orphaned attachment", extra={"path": path})
            raise
        return attachments

    async def send_message(self, text: str = "", files: Iterable[OutgoingFile] = ()) -> str:
        """Send a message to the active conversation and return its id.

        The conversation is captured when the call starts, so switching
        conversations while uploads are running does not redirect the send.
        """

        uid = self._require_ready()
        conversation_id = self._require_active()
        outgoing = list(files)
        body = text or ""
        with _track("send_message"):
            if not body.strip() and not outgoing:
                raise ValueError("Cannot send an empty message")
            if len(body) > self._message_max_length:
                raise ValueError(f"Message exceeds {self._message_max_length} characters")

            attachments = await self._upload_attachments(conversation_id, outgoing)
            message_type = MessageType.MIXED if attachments else MessageType.TEXT
            message_id = await self._store.add(
                _messages_collection(conversation_id),
                {
                    "senderId": uid,
                    "text": body,
                    "attachments": [attachment.to_document() for attachment in attachments],
                    "createdAt": SERVER_TIMESTAMP,
                    "readBy": [uid],
                    "type": message_type.value,
                },
            )
            await self._store.update(
                _conversation_path(conversation_id),
                {
                    "lastMessage": body or ATTACHMENT_PLACEHOLDER,
                    "lastMessageAt": SERVER_TIMESTAMP,
                },
            )
        logger.debug(
            "Message sent",
            extra={"conversation": conversation_id, "message_id": message_id, "attachments": len(attachments)},
        )
        return message_id

    async def mark_conversation_read(self) -> int:
        """Add the caller to ``readBy`` of every message in the active conversation.

        Returns the number of messages that were marked. Receipts are written
        in concurrent batches; when some fail, the rest are still written and
        :class:`TransientStoreError` is raised at the end.
        """

        uid = self._require_ready()
        conversation_id = self._require_active()
        with _track("mark_read"):
            snapshot = await self._store.query(
                Query(_messages_collection(conversation_id)).order_by("createdAt")
            )
            pending = [document.path for document in snapshot if uid not in document.get("readBy", [])]
            marked = 0
            failed = 0
            for start in range(0, len(pending), self._read_batch_size):
                batch = pending[start:start + self._read_batch_size]
                results = await asyncio.gather(
                    *(self._store.update(path, {"readBy": ArrayUnion(uid)}) for path in batch),
                    return_exceptions=True,
                )
                for path, result in zip(batch, results):
                    if isinstance(result, NotFoundError):
                        continue
                    if isinstance(result, Exception):
                        failed += 1
                        logger.warning(
                            "Could not write read receipt",
                            extra={"path": path, "error": str(result)},
                        )
                    elif isinstance(result, BaseException):
                        raise result
                    else:
                        marked += 1
            if failed:
                raise TransientStoreError(
                    f"{failed} of {len(pending)} read receipts could not be written"
                )
        return marked

    async def _update_blocked(self, user_id: str | int, *, block: bool) -> bool:
        uid = self._require_ready()
        target = str(user_id)
        if (target in self._blocked) == block:
            return False
        transform = ArrayUnion(target) if block else ArrayRemove(target)
        await self._store.update(document_path(USERS, uid), {"blocked": transform})
        self._blocked = self._blocked | {target} if block else self._blocked - {target}
        self._notify("blocked")
        logger.info("Block list updated", extra={"target": target, "blocked": block})
        return True

    async def block_user(self, user_id: str | int) -> bool:
        """Block ``user_id``; returns ``False`` when already blocked."""

        with _track("block_user"):
            return await self._update_blocked(user_id, block=True)

    async def unblock_user(self, user_id: str | int) -> bool:
        with _track("unblock_user"):
            return await self._update_blocked(user_id, block=False)

    async def delete_conversation(self) -> None:
        """Delete the active conversation and its messages; creator only."""

        uid = self._require_ready()
        conversation_id = self._require_active()
        path = _conversation_path(conversation_id)
        with _track("delete_conversation"):
            snapshot = await self._store.get(path)
            if not snapshot.exists:
                raise NotFoundError(path)
            if snapshot.get("createdBy") != uid:
                raise PermissionDeniedError("Only the creator can delete this conversation")
            messages = await self._store.query(Query(_messages_collection(conversation_id)))
            await asyncio.gather(*(self._store.delete(document.path) for document in messages))
            await self._store.delete(path)
            logger.info(
                "Deleted conversation",
                extra={"conversation": conversation_id, "messages": len(messages)},
            )
        if self._context.active_conversation_id == conversation_id:
            await self.set_active_conversation(None)

    async def set_typing(self, is_typing: bool) -> None:
        uid = self._require_ready()
        conversation_id = self._require_active()
        with _track("set_typing"):
            await self._store.update(_conversation_path(conversation_id), {("typing", uid): bool(is_typing)})

    def conversation(self, conversation_id: str) -> Conversation | None:
        """Return the cached conversation with ``conversation_id``."""

        for item in self._conversations:
            if item.id == conversation_id:
                return item
        return None

    def unread_count(self) -> int:
        """Count cached messages of the active conversation not read by the caller."""

        uid = self.uid
        if uid is None:
            return 0
        return sum(1 for message in self._messages if not message.is_read_by(uid))
