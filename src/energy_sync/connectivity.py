"""Connectivity monitor."""

from __future__ import annotations

from collections.abc import Callable

from .logger import get_logger

logger = get_logger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Tracks whether the backend is reachable.

    Listeners are called only on transitions.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def mark_offline(self, reason: str = "") -> None:
        if not self._online:
            return
        self._online = False
        logger.warning("connectivity lost", reason=reason)
        self._notify()

    def mark_online(self) -> None:
        if self._online:
            return
        self._online = True
        logger.info("connectivity restored")
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._online)
            except Exception:
                logger.exception("connectivity listener failed")
