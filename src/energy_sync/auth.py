"""Auth endpoint: consumption of an externally issued session."""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from typing import Any

import httpx

from .logger import get_logger
from .models import Session

logger = get_logger(__name__)

_TRANSIENT_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


class AuthEndpointError(Exception):
    """Raised by an :class:`AuthEndpoint` when a refresh fails."""

    def __init__(self, message: str, *, transient: bool, status: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status = status


class AuthEndpoint(ABC):
    """Abstract credential lifecycle provider."""

    @abstractmethod
    async def get_session(self) -> Session | None:
        """Return the session currently issued to this client, if any."""
        ...

    @abstractmethod
    async def refresh_session(self, session: Session) -> Session:
        ...

    @abstractmethod
    async def sign_out(self, session: Session) -> None:
        ...


class InMemoryAuthEndpoint(AuthEndpoint):
    """In-memory auth endpoint for testing."""

    def __init__(self, session: Session | None = None, ttl_seconds: float = 3600.0, clock: Any = None) -> None:
        self._session = session
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._failures: list[AuthEndpointError] = []
        self.refresh_calls = 0
        self.signed_out: list[str] = []

    def fail_next(self, error: AuthEndpointError) -> None:
        """Queue an error for the next refresh call."""
        self._failures.append(error)

    async def get_session(self) -> Session | None:
        return self._session

    async def refresh_session(self, session: Session) -> Session:
        self.refresh_calls += 1
        if self._failures:
            raise self._failures.pop(0)
        now = self._clock.now() if self._clock is not None else time.time()
        refreshed = Session(
            subject_id=session.subject_id,
            credential=str(uuid.uuid4()),
            expires_at=now + self._ttl_seconds,
            issued_at=now,
            refreshable=session.refreshable,
            refresh_token=session.refresh_token,
        )
        self._session = refreshed
        return refreshed

    async def sign_out(self, session: Session) -> None:
        self.signed_out.append(session.subject_id)
        self._session = None


class HttpAuthEndpoint(AuthEndpoint):
    """httpx を使った GoTrue 互換のトークン更新実装。"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Session | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._current = session
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_session(self) -> Session | None:
        return self._current

    async def refresh_session(self, session: Session) -> Session:
        if not session.refresh_token:
            raise AuthEndpointError("session has no refresh token", transient=False)
        try:
            resp = await self._client.post(
                f"{self._base_url}/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": session.refresh_token},
                headers={"apikey": self._api_key},
            )
        except httpx.TimeoutException as e:
            raise AuthEndpointError(f"refresh timed out: {e}", transient=True) from e
        except httpx.HTTPError as e:
            raise AuthEndpointError(f"refresh request failed: {e}", transient=True) from e

        if resp.status_code >= 400:
            raise AuthEndpointError(
                _error_message(resp),
                transient=resp.status_code in _TRANSIENT_STATUS,
                status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise AuthEndpointError(
                f"refresh response is not JSON: {e}", transient=True, status=resp.status_code
            ) from e
        if not isinstance(data, dict):
            raise AuthEndpointError("refresh response is not an object", transient=True, status=resp.status_code)
        refreshed = _session_from_token_response(data, session)
        self._current = refreshed
        return refreshed

    async def sign_out(self, session: Session) -> None:
        try:
            resp = await self._client.post(
                f"{self._base_url}/auth/v1/logout",
                headers={"apikey": self._api_key, "Authorization": f"Bearer {session.credential}"},
            )
            if resp.status_code >= 400:
                logger.warning("remote sign-out rejected", status=resp.status_code)
        except httpx.HTTPError as e:
            logger.warning("remote sign-out failed", error=str(e))
        self._current = None


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"refresh failed: HTTP {resp.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"refresh failed: HTTP {resp.status_code}"


def _session_from_token_response(data: dict[str, Any], previous: Session) -> Session:
    access_token = str(data.get("access_token") or "").strip()
    if not access_token:
        raise AuthEndpointError("access_token missing from response", transient=False)
    now = time.time()
    expires_at: float | None
    try:
        if data.get("expires_at") is not None:
            expires_at = float(data["expires_at"])
        elif data.get("expires_in") is not None:
            expires_at = now + float(data["expires_in"])
        else:
            expires_at = None
    except (TypeError, ValueError) as e:
        raise AuthEndpointError(f"invalid expiry in refresh response: {e}", transient=True) from e
    user = data.get("user") if isinstance(data.get("user"), dict) else {}
    subject_id = str(user.get("id") or previous.subject_id)
    return Session(
        subject_id=subject_id,
        credential=access_token,
        expires_at=expires_at,
        issued_at=now,
        refreshable=bool(data.get("refresh_token") or previous.refresh_token),
        refresh_token=data.get("refresh_token") or previous.refresh_token,
    )
