"""Maps low-level backend failures onto the public error taxonomy."""

from __future__ import annotations

from collections.abc import Callable

from .backend import RemoteCallError
from .exceptions import (
    AuthRequiredError,
    ErrorKind,
    NotFoundError,
    PermanentError,
    SyncError,
    TransientError,
)

Rule = Callable[[RemoteCallError], ErrorKind | None]

NOT_FOUND_CODES = frozenset({"PGRST202", "42883", "42P01"})
AUTH_CODES = frozenset({"PGRST301", "PGRST302"})
DUPLICATE_CODES = frozenset({"23505"})
TRANSIENT_STATUS = frozenset({408, 425, 429})
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "fetch",
    "connection",
    "rate limit",
    "too many requests",
    "offline",
)


class ErrorClassifier:
    """Code and message heuristics for PostgREST/Postgres errors.

    Collaborator rules run first; the first one returning a kind wins.
    """

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._rules: list[Rule] = list(rules or [])

    def add_rule(self, rule: Rule) -> None:
        self._rules.append(rule)

    def kind_of(self, error: RemoteCallError) -> ErrorKind:
        for rule in self._rules:
            kind = rule(error)
            if kind is not None:
                return kind

        code = error.code or ""
        message = " ".join(filter(None, (error.message, error.details))).lower()
        if error.connection_lost:
            return ErrorKind.TRANSIENT
        if code in NOT_FOUND_CODES or error.status == 404:
            return ErrorKind.NOT_FOUND
        if error.status == 401 or code in AUTH_CODES or "jwt expired" in message:
            return ErrorKind.AUTH_REQUIRED
        if error.status is not None and (error.status in TRANSIENT_STATUS or error.status >= 500):
            return ErrorKind.TRANSIENT
        if code in DUPLICATE_CODES:
            return ErrorKind.PERMANENT
        if "404" in message or ("function" in message and "not found" in message):
            return ErrorKind.NOT_FOUND
        if any(marker in message for marker in TRANSIENT_MARKERS):
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT

    def classify(self, name: str, error: RemoteCallError) -> SyncError:
        """Wrap ``error`` in the public exception for its kind."""
        kind = self.kind_of(error)
        code = error.code or kind.value
        message = f"{name}: {error.message}"
        if error.details:
            message = f"{message} ({error.details})"
        if kind is ErrorKind.AUTH_REQUIRED:
            return AuthRequiredError(message, cause=error)
        if kind is ErrorKind.TRANSIENT:
            return TransientError(code, message, cause=error)
        if kind is ErrorKind.NOT_FOUND:
            return NotFoundError(code, message, cause=error)
        return PermanentError(code, message, cause=error, duplicate=is_duplicate(error))


def is_duplicate(error: RemoteCallError) -> bool:
    return (error.code or "") in DUPLICATE_CODES
