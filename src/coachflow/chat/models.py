"""Typed views over the chat documents kept in the realtime store."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coachflow.realtime.store import DocumentSnapshot


class MessageType(str, Enum):
    TEXT = "text"
    MIXED = "mixed"


class _StoreModel(BaseModel):
    """Base for documents stored with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot):
        data = snapshot.to_dict()
        data.setdefault("id", snapshot.id)
        return cls.model_validate(data)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="python")


class UserProfile(_StoreModel):
    id: str
    username: str = "Unknown"
    role: str = "user"
    created_at: datetime | None = None
    blocked: list[str] = Field(default_factory=list)


class Conversation(_StoreModel):
    id: str
    participants: list[str] = Field(default_factory=list)
    is_group: bool = False
    last_message: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime | None = None
    created_by: str
    typing: dict[str, bool] = Field(default_factory=dict)

    def other_participant(self, uid: str) -> str | None:
        for participant in self.participants:
            if participant != uid:
                return participant
        return None


class Attachment(_StoreModel):
    name: str
    url: str
    type: str
    size: int


class Message(_StoreModel):
    id: str
    sender_id: str
    text: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    created_at: datetime | None = None
    read_by: list[str] = Field(default_factory=list)
    type: MessageType = MessageType.TEXT

    def is_read_by(self, uid: str) -> bool:
        return uid in self.read_by


class DirectoryUser(_StoreModel):
    """Entry of the chat user list served by the backend."""

    id: int
    username: str
    display_name: str | None = None
    email: str | None = None
    role: str | None = None
    unread_count: int = 0

    @property
    def principal_id(self) -> str:
        return str(self.id)


@dataclass(frozen=True, slots=True)
class OutgoingFile:
    """File chosen by the user to be sent as an attachment."""

    name: str
    content: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def resolved_content_type(self) -> str:
        if self.content_type:
            return self.content_type
        guessed, _ = mimetypes.guess_type(self.name)
        return guessed or "application/octet-stream"
