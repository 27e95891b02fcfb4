"""Chat token issuance and the chat user directory."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, require_roles
from app.config import get_settings
from app.core.security import create_chat_token
from app.database import get_db
from app.models import CoachingRelationship, CoachingStatus, User, UserRole
from app.monitoring.metrics import chat_token_issued_total
from app.schemas import ChatTokenResponse, ChatUser, ChatUsersResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

SEARCH_DEFAULT_LIMIT = 10
SEARCH_MAX_LIMIT = 50


def _chat_roles() -> list[str]:
    return get_settings().chat_token_roles


def _serialize_chat_user(user: User) -> ChatUser:
    return ChatUser(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        email=user.email,
        role=user.role,
    )


def _active_users():
    return select(User).where(User.is_deleted.is_(False), User.is_disabled.is_(False))


@router.get("/token", response_model=ChatTokenResponse, response_model_by_alias=True)
def issue_chat_token(current_user: User = Depends(require_roles(_chat_roles))) -> ChatTokenResponse:
    """Issue a custom realtime token for the logged-in user."""

    role = UserRole(current_user.role).value
    claims = {"role": role}
    token = create_chat_token(current_user.id, claims)
    chat_token_issued_total.labels(role).inc()
    logger.info("Issued realtime chat token", extra={"user_id": current_user.id, "role": role})
    return ChatTokenResponse(token=token, claims=claims)


@router.get("/users", response_model=ChatUsersResponse, response_model_by_alias=True)
def list_chat_users(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ChatUsersResponse:
    """Return the people the current user may chat with.

    Trainers see their active clients, trainees see their active trainer and
    every other role sees all other active users.
    """

    role = UserRole(current_user.role)
    stmt = _active_users()
    if role is UserRole.TRAINER:
        stmt = stmt.join(CoachingRelationship, CoachingRelationship.trainee_id == User.id).where(
            CoachingRelationship.trainer_id == current_user.id,
            CoachingRelationship.status == CoachingStatus.ACTIVE,
        )
    elif role is UserRole.TRAINEE:
        stmt = stmt.join(CoachingRelationship, CoachingRelationship.trainer_id == User.id).where(
            CoachingRelationship.trainee_id == current_user.id,
            CoachingRelationship.status == CoachingStatus.ACTIVE,
        )
    else:
        stmt = stmt.where(User.id != current_user.id)

    users = db.execute(stmt.order_by(User.username.asc())).scalars().unique().all()
    return ChatUsersResponse(users=[_serialize_chat_user(user) for user in users])


@router.get("/users/search", response_model=ChatUsersResponse, response_model_by_alias=True)
def search_chat_users(
    q: str = Query(default="", max_length=100),
    limit: int = Query(default=SEARCH_DEFAULT_LIMIT),
    current_user: User = Depends(require_roles(_chat_roles)),
    db: Session = Depends(get_db),
) -> ChatUsersResponse:
    if limit < 1 or limit > SEARCH_MAX_LIMIT:
        limit = SEARCH_DEFAULT_LIMIT

    stmt = _active_users().where(User.id != current_user.id)
    term = q.strip().lower()
    if term:
        pattern = f"%{term}%"
        stmt = stmt.where(
            or_(
                func.lower(User.username).like(pattern),
                func.lower(User.email).like(pattern),
            )
        )
    users = db.execute(stmt.order_by(User.username.asc()).limit(limit)).scalars().all()
    return ChatUsersResponse(users=[_serialize_chat_user(user) for user in users])
