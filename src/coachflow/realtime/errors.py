"""Errors raised by the realtime document store layer."""

from __future__ import annotations


class StoreError(Exception):
    """Base class for document store failures."""


class NotFoundError(StoreError):
    """Raised when an operation targets a document that does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Document '{path}' does not exist")
        self.path = path


class TransientStoreError(StoreError):
    """Raised on network or contention failures that are safe to retry."""


class InvalidCustomTokenError(StoreError):
    """Raised when the store refuses a custom sign-in token."""


class UploadError(StoreError):
    """Raised when an attachment cannot be stored."""
