"""Payloads served by the chat endpoints."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.enums import UserRole


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ChatTokenResponse(_CamelModel):
    """Custom realtime token for the current user."""

    success: bool = True
    token: str
    claims: dict[str, str] = Field(default_factory=dict)


class ChatUser(_CamelModel):
    """Entry of the chat directory."""

    id: int
    username: str
    display_name: str
    email: str
    role: UserRole
    unread_count: int = 0


class ChatUsersResponse(_CamelModel):
    success: bool = True
    users: list[ChatUser] = Field(default_factory=list)
