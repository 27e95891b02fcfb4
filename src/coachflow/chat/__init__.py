"""Direct messaging between CoachFlow users."""

from .directory import DirectorySync
from .errors import (
    AuthError,
    ChatError,
    NoActiveConversationError,
    NotFoundError,
    NotReadyError,
    PermissionDeniedError,
    TransientStoreError,
    UploadError,
)
from .identity import IdentityBridge, SessionCredentials
from .manager import ChatContext, ConversationManager, ManagerState, derive_conversation_id
from .models import (
    Attachment,
    Conversation,
    DirectoryUser,
    Message,
    MessageType,
    OutgoingFile,
    UserProfile,
)

__all__ = [
    "Attachment",
    "AuthError",
    "ChatContext",
    "ChatError",
    "Conversation",
    "ConversationManager",
    "DirectorySync",
    "DirectoryUser",
    "IdentityBridge",
    "ManagerState",
    "Message",
    "MessageType",
    "NoActiveConversationError",
    "NotFoundError",
    "NotReadyError",
    "OutgoingFile",
    "PermissionDeniedError",
    "SessionCredentials",
    "TransientStoreError",
    "UploadError",
    "UserProfile",
    "derive_conversation_id",
]
