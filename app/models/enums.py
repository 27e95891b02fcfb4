from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Application roles of a CoachFlow account."""

    ADMIN = "admin"
    MANAGER = "manager"
    TRAINER = "trainer"
    TRAINEE = "trainee"


class CoachingStatus(str, Enum):
    """Lifecycle of a trainer/trainee coaching relationship."""

    PENDING = "pending"
    ACTIVE = "active"
    DECLINED = "declined"
    ENDED = "ended"
