from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.models.enums import CoachingStatus, UserRole


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """CoachFlow account as seen by the chat directory."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(128))
    role: Mapped[UserRole] = mapped_column(
        SAEnum(UserRole, name="user_role", values_callable=_enum_values),
        default=UserRole.TRAINEE,
        nullable=False,
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    clients: Mapped[list["CoachingRelationship"]] = relationship(
        back_populates="trainer",
        foreign_keys="CoachingRelationship.trainer_id",
        cascade="all, delete-orphan",
    )
    trainers: Mapped[list["CoachingRelationship"]] = relationship(
        back_populates="trainee",
        foreign_keys="CoachingRelationship.trainee_id",
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return not (self.is_deleted or self.is_disabled)

    @property
    def display_name(self) -> str:
        return self.full_name or self.username


class CoachingRelationship(Base):
    """Link between a trainer and one of their trainees."""

    __tablename__ = "coaching_relationships"
    __table_args__ = (
        UniqueConstraint("trainer_id", "trainee_id", name="uq_coaching_pair"),
        Index("ix_coaching_trainee_status", "trainee_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    trainee_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[CoachingStatus] = mapped_column(
        SAEnum(CoachingStatus, name="coaching_status", values_callable=_enum_values),
        default=CoachingStatus.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    trainer: Mapped[User] = relationship(back_populates="clients", foreign_keys=[trainer_id])
    trainee: Mapped[User] = relationship(back_populates="trainers", foreign_keys=[trainee_id])
