"""Errors surfaced by the conversation manager."""

from __future__ import annotations

from coachflow.realtime.errors import (
    InvalidCustomTokenError,
    NotFoundError,
    StoreError,
    TransientStoreError,
    UploadError,
)

__all__ = [
    "AuthError",
    "ChatError",
    "InvalidCustomTokenError",
    "NoActiveConversationError",
    "NotFoundError",
    "NotReadyError",
    "PermissionDeniedError",
    "StoreError",
    "TransientStoreError",
    "UploadError",
]


class ChatError(Exception):
    """Base class for conversation manager failures."""


class AuthError(ChatError):
    """Raised when the session could not be bridged to a store principal."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or f"Authentication failed: {code}")
        self.code = code


class NotReadyError(AuthError):
    """Raised for conversation operations attempted outside the READY state."""

    def __init__(self, state: str) -> None:
        super().__init__("not_ready", f"Conversation manager is not ready (state: {state})")
        self.state = state


class PermissionDeniedError(ChatError):
    """Raised when the caller is not allowed to perform an operation."""


class NoActiveConversationError(ChatError):
    """Raised when an operation needs an active conversation and none is set."""
