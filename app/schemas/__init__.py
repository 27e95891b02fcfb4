"""Pydantic schemas for API payloads."""

from .chat import ChatTokenResponse, ChatUser, ChatUsersResponse

__all__ = ["ChatTokenResponse", "ChatUser", "ChatUsersResponse"]
