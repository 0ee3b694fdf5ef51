"""Session refresh coordinator.

At most one refresh is in flight. Every caller that arrives while it runs
joins it and receives the same outcome. A refresh attempt that would start
less than ``min_interval`` after the previous attempt's start is coalesced
into a no-op returning the current session.
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import StrEnum

from .auth import AuthEndpoint, AuthEndpointError
from .clock import Clock, TimerHandle
from .exceptions import AuthRequiredError
from .logger import get_logger
from .metrics import session_refresh_total
from .models import Session
from .session_store import SessionStore

logger = get_logger(__name__)


class RefreshState(StrEnum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    SIGNED_OUT = "signed_out"


class RefreshCoordinator:
    """Serialises and rate-limits session refreshes."""

    def __init__(
        self,
        store: SessionStore,
        auth: AuthEndpoint,
        clock: Clock,
        *,
        threshold_seconds: float = 300.0,
        min_interval_seconds: float = 300.0,
    ) -> None:
        self._store = store
        self._auth = auth
        self._clock = clock
        self.threshold_seconds = threshold_seconds
        self.min_interval_seconds = min_interval_seconds
        self._inflight: asyncio.Task[Session | None] | None = None
        self._last_attempt_at: float | None = None
        self._state = RefreshState.IDLE
        self._timer: TimerHandle | None = None
        self._check_task: asyncio.Task[None] | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def next_eligible_at(self) -> float | None:
        if self._last_attempt_at is None:
            return None
        return self._last_attempt_at + self.min_interval_seconds

    async def ensure_fresh(
        self,
        threshold_seconds: float | None = None,
        *,
        force: bool = False,
    ) -> Session | None:
        """Return a session whose lifetime exceeds the threshold when possible.

        Raises:
            AuthRequiredError: the refresh was rejected as terminal; the
                session has been cleared.
        """
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        session = self._store.get_session()
        if session is None:
            return None
        threshold = self.threshold_seconds if threshold_seconds is None else threshold_seconds
        now = self._clock.now()
        if not force and session.remaining(now) > threshold:
            return session
        if not session.refreshable:
            return session
        if self._last_attempt_at is not None and now - self._last_attempt_at < self.min_interval_seconds:
            logger.debug(
                "session refresh rate limited",
                subject_id=session.subject_id,
                next_eligible_at=self.next_eligible_at,
            )
            session_refresh_total.add(1, {"outcome": "coalesced"})
            return session

        self._last_attempt_at = now
        self._state = RefreshState.REFRESHING
        self._inflight = asyncio.ensure_future(self._refresh(session))
        return await asyncio.shield(self._inflight)

    async def _refresh(self, session: Session) -> Session | None:
        try:
            refreshed = await self._auth.refresh_session(session)
        except AuthEndpointError as e:
            self.last_error = str(e)
            if e.transient:
                return self._keep_session(session, e)
            self._state = RefreshState.SIGNED_OUT
            session_refresh_total.add(1, {"outcome": "terminal"})
            logger.error("session refresh rejected; signing out", subject_id=session.subject_id, error=str(e))
            await self._store.set_session(None)
            raise AuthRequiredError("Session expired. Please sign in again.", cause=e) from e
        except Exception as e:
            self.last_error = str(e)
            return self._keep_session(session, e)
        finally:
            self._inflight = None

        self._last_attempt_at = self._clock.now()
        self._state = RefreshState.IDLE
        self.last_error = None
        session_refresh_total.add(1, {"outcome": "success"})
        logger.info("session refreshed", subject_id=refreshed.subject_id, expires_at=refreshed.expires_at)
        await self._store.set_session(refreshed)
        return refreshed

    def _keep_session(self, session: Session, error: Exception) -> Session | None:
        self._state = RefreshState.IDLE
        session_refresh_total.add(1, {"outcome": "transient"})
        logger.warning(
            "session refresh failed; keeping current session",
            subject_id=session.subject_id,
            error=str(error),
            next_eligible_at=self.next_eligible_at,
        )
        return self._store.get_session()

    def reset(self) -> None:
        """Forget rate-limit history, e.g. after a new sign-in."""
        self._last_attempt_at = None
        self._state = RefreshState.IDLE
        self.last_error = None

    # ------------------------------------------------------------------
    def start_auto_refresh(self, check_interval_seconds: float) -> None:
        """Periodically run :meth:`ensure_fresh` until :meth:`stop`."""
        if self._timer is not None:
            return
        self._schedule(check_interval_seconds)

    def _schedule(self, interval: float) -> None:
        self._timer = self._clock.call_later(interval, self._on_check, interval)

    def _on_check(self, interval: float) -> None:
        self._check_task = asyncio.ensure_future(self._check())
        self._schedule(interval)

    async def _check(self) -> None:
        try:
            await self.ensure_fresh()
        except AuthRequiredError as e:
            logger.info("periodic session check ended the session", error=str(e))

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._check_task is not None and not self._check_task.done():
            self._check_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._check_task
        self._check_task = None
