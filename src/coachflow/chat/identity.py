"""Bridge from an application session to a realtime store principal."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from coachflow.realtime.store import DocumentStore
from coachflow.realtime.tokens import Principal

from .errors import AuthError, InvalidCustomTokenError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionCredentials:
    """Credentials of the logged-in application session."""

    access_token: str | None = None
    cookies: dict[str, str] = field(default_factory=dict)

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers


def _error_code(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        code = payload.get("error") or payload.get("detail")
        if isinstance(code, str) and code:
            return code
    return default


class IdentityBridge:
    """Fetches a custom token from the backend and signs into the store with it."""

    def __init__(
        self,
        store: DocumentStore,
        credentials: SessionCredentials,
        *,
        base_url: str,
        token_path: str = "/api/chat/token",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._token_path = token_path
        self._timeout = timeout
        self._transport = transport

    async def fetch_token(self) -> tuple[str, dict[str, Any]]:
        """Request a custom token for the session user.

        Raises:
            AuthError: with code ``network_error`` when the backend cannot be
                reached, ``http_error`` (or the body's ``error``) on an error
                status and ``token_fetch_failed`` when the body reports failure.
        """

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                cookies=self._credentials.cookies,
            ) as client:
                response = await client.get(self._token_path, headers=self._credentials.headers())
        except httpx.HTTPError as exc:
            logger.warning("Chat token request failed", extra={"error": str(exc)})
            raise AuthError("network_error") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_error:
            code = _error_code(payload, "http_error")
            logger.warning(
                "Chat token endpoint returned an error",
                extra={"status_code": response.status_code, "code": code},
            )
            raise AuthError(code)

        if not isinstance(payload, dict) or not payload.get("success") or not payload.get("token"):
            raise AuthError(_error_code(payload, "token_fetch_failed"))

        claims = payload.get("claims")
        return str(payload["token"]), claims if isinstance(claims, dict) else {}

    async def exchange(self) -> Principal:
        """Trade the session for a store principal."""

        token, _ = await self.fetch_token()
        try:
            principal = await self._store.sign_in_with_custom_token(token)
        except InvalidCustomTokenError as exc:
            logger.warning("Realtime store refused the custom token", extra={"error": str(exc)})
            raise AuthError("sign_in_failed") from exc
        logger.info("Realtime session established", extra={"uid": principal.uid})
        return principal
