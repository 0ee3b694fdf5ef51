"""Session store: the single source of truth for the current session."""

from __future__ import annotations

import json
from collections.abc import Callable

from .clock import Clock
from .logger import get_logger
from .models import Session
from .storage import DurableStorage

logger = get_logger(__name__)

SESSION_KEY = "session"

SubjectListener = Callable[[str | None, str | None], None]


class SessionStore:
    """Holds the current session and persists it best-effort.

    No network calls happen here.
    """

    def __init__(self, storage: DurableStorage, clock: Clock) -> None:
        self._storage = storage
        self._clock = clock
        self._session: Session | None = None
        self._listeners: list[SubjectListener] = []

    @staticmethod
    def is_valid(session: Session | None, now: float) -> bool:
        """有効期限内のセッションなら True。猶予は設けない。"""
        if session is None or session.expires_at is None:
            return False
        return session.expires_at > now

    @property
    def subject_id(self) -> str | None:
        return self._session.subject_id if self._session else None

    def get_session(self) -> Session | None:
        return self._session

    def has_valid_session(self) -> bool:
        return self.is_valid(self._session, self._clock.now())

    def add_subject_listener(self, listener: SubjectListener) -> Callable[[], None]:
        """Notify ``listener(previous, current)`` when the subject identity changes."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def set_session(self, session: Session | None) -> None:
        previous = self.subject_id
        self._session = session
        current = self.subject_id
        if previous != current:
            logger.info("session subject changed", previous=previous, current=current)
            for listener in list(self._listeners):
                listener(previous, current)
        await self._persist(session)

    async def restore(self) -> Session | None:
        """Load the persisted session, discarding it when no longer valid."""
        try:
            raw = await self._storage.get(SESSION_KEY)
        except Exception as e:
            logger.warning("could not read persisted session", error=str(e))
            return None
        if raw is None:
            return None
        try:
            session = Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("discarding malformed persisted session", error=str(e))
            await self._persist(None)
            return None
        if not self.is_valid(session, self._clock.now()):
            logger.info("discarding expired persisted session", subject_id=session.subject_id)
            await self._persist(None)
            return None
        await self.set_session(session)
        return session

    async def _persist(self, session: Session | None) -> None:
        try:
            if session is None:
                await self._storage.remove(SESSION_KEY)
            else:
                await self._storage.set(SESSION_KEY, json.dumps(session.to_dict()))
        except Exception as e:
            logger.warning("session persistence failed; continuing in memory", error=str(e))
