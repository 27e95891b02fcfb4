"""Database models package."""

from .base import Base
from .enums import CoachingStatus, UserRole
from .users import CoachingRelationship, User

__all__ = [
    "Base",
    "User",
    "CoachingRelationship",
    "UserRole",
    "CoachingStatus",
]
