"""Custom sign-in tokens exchanged for realtime store principals."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import jwt

from .errors import InvalidCustomTokenError

CUSTOM_TOKEN_AUDIENCE = "coachflow-realtime"


@dataclass(frozen=True, slots=True)
class Principal:
    """Store-level identity bound to an application user."""

    uid: str
    claims: dict[str, Any] = field(default_factory=dict)


def mint_custom_token(
    uid: str,
    claims: Mapping[str, Any] | None,
    *,
    secret: str,
    ttl_seconds: int,
    algorithm: str = "HS256",
) -> str:
    """Sign a short-lived token the realtime store accepts for ``uid``."""

    if not uid:
        raise ValueError("Custom tokens require a non-empty uid")
    issued_at = datetime.now(timezone.utc)
    payload = {
        "uid": str(uid),
        "claims": dict(claims or {}),
        "aud": CUSTOM_TOKEN_AUDIENCE,
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=max(int(ttl_seconds), 1)),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def verify_custom_token(token: str, *, secret: str, algorithm: str = "HS256") -> Principal:
    """Validate a custom token and return the principal it names."""

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            audience=CUSTOM_TOKEN_AUDIENCE,
        )
    except jwt.ExpiredSignatureError as exc:
        raise InvalidCustomTokenError("Custom token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidCustomTokenError("Custom token is invalid") from exc

    uid = payload.get("uid")
    if not isinstance(uid, str) or not uid:
        raise InvalidCustomTokenError("Custom token does not name a principal")
    claims = payload.get("claims") or {}
    if not isinstance(claims, dict):
        raise InvalidCustomTokenError("Custom token claims are malformed")
    return Principal(uid=uid, claims=claims)
