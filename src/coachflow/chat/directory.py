"""Chat user directory pulled from the backend for display."""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from .identity import SessionCredentials
from .models import DirectoryUser

logger = logging.getLogger(__name__)


class DirectorySync:
    """Loads the list of people the session user may talk to.

    Failures never propagate: the directory only feeds a display list, so a
    warning is logged and an empty list returned.
    """

    def __init__(
        self,
        credentials: SessionCredentials,
        *,
        base_url: str,
        users_path: str = "/api/chat/users",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._users_path = users_path
        self._timeout = timeout
        self._transport = transport

    async def fetch_users(self) -> list[DirectoryUser]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                cookies=self._credentials.cookies,
            ) as client:
                response = await client.get(self._users_path, headers=self._credentials.headers())
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Could not load chat users", extra={"error": str(exc)})
            return []

        if not isinstance(payload, dict) or not payload.get("success"):
            logger.warning("Chat users endpoint reported a failure")
            return []

        try:
            return [DirectoryUser.model_validate(entry) for entry in payload.get("users") or []]
        except ValidationError as exc:
            logger.warning("Chat users payload is malformed", extra={"error": str(exc)})
            return []
