"""Session, cache, queue and change-feed models."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NO_FALLBACK"

    def __bool__(self) -> bool:
        return False


NO_FALLBACK: Any = _Missing()


def canonical_json(value: Any) -> str:
    """Stable JSON text used for fingerprints and equality checks."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass
class Session:
    """Locally held proof of authentication.

    ``expires_at`` is Unix-epoch seconds. A session without it is never valid.
    """

    subject_id: str
    credential: str
    expires_at: float | None
    issued_at: float | None = None
    refreshable: bool = True
    refresh_token: str | None = None

    def remaining(self, now: float) -> float:
        if self.expires_at is None:
            return float("-inf")
        return self.expires_at - now

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "credential": self.credential,
            "expires_at": self.expires_at,
            "issued_at": self.issued_at,
            "refreshable": self.refreshable,
            "refresh_token": self.refresh_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        expires_raw = data.get("expires_at")
        issued_raw = data.get("issued_at")
        return cls(
            subject_id=str(data["subject_id"]),
            credential=str(data["credential"]),
            expires_at=float(expires_raw) if expires_raw is not None else None,
            issued_at=float(issued_raw) if issued_raw is not None else None,
            refreshable=bool(data.get("refreshable", True)),
            refresh_token=data.get("refresh_token"),
        )


@dataclass
class CacheEntry:
    """キャッシュエントリ。``now >= expires_at`` で失効。"""

    key: str
    value: Any
    stored_at: float
    expires_at: float

    def __post_init__(self) -> None:
        if self.expires_at <= self.stored_at:
            raise ValueError("expires_at must be later than stored_at")

    def is_stale(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CallOptions:
    """Options recognised by :meth:`RemoteCallExecutor.call`."""

    cache_key: str | None = None
    cache_ttl_ms: int | None = None
    fallback: Any = NO_FALLBACK
    dedupe: bool = True
    max_attempts: int | None = None
    # dispatch only while this subject holds the session
    subject_id: str | None = None


@dataclass
class BatchCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    options: CallOptions | None = None


@dataclass
class BatchResult:
    name: str
    success: bool
    value: Any = None
    error: Exception | None = None


class MutationKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ChangeKind = MutationKind


def split_target(target_entity: str, payload: dict[str, Any] | None = None) -> tuple[str, str]:
    """Split ``"reading#42"`` into ``("reading", "42")``.

    Without a ``#`` the natural key comes from ``payload["id"]``.
    """
    entity_type, sep, natural_key = target_entity.partition("#")
    if not sep or not natural_key:
        raw = (payload or {}).get("id")
        if raw is None:
            raise ValueError(f"cannot determine natural key for {target_entity!r}")
        natural_key = str(raw)
    if not entity_type:
        raise ValueError("target_entity cannot be empty")
    return entity_type, natural_key


@dataclass
class QueuedMutation:
    """オフライン中に記録されたミューテーション。"""

    target_entity: str
    operation_kind: MutationKind
    payload: dict[str, Any]
    enqueued_at: float
    attempts: int = 0
    id: str = ""

    def __post_init__(self) -> None:
        self.operation_kind = MutationKind(self.operation_kind)
        if not self.id:
            entity_type, natural_key = split_target(self.target_entity, self.payload)
            self.id = f"{entity_type}#{natural_key}:{self.operation_kind.value}"

    @property
    def entity_type(self) -> str:
        return split_target(self.target_entity, self.payload)[0]

    @property
    def natural_key(self) -> str:
        return split_target(self.target_entity, self.payload)[1]

    @property
    def entity_key(self) -> str:
        """Stable identity used to order replays of the same row."""
        entity_type, natural_key = split_target(self.target_entity, self.payload)
        return f"{entity_type}#{natural_key}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_entity": self.target_entity,
            "operation_kind": self.operation_kind.value,
            "payload": copy.deepcopy(self.payload),
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedMutation:
        return cls(
            id=str(data.get("id") or ""),
            target_entity=str(data["target_entity"]),
            operation_kind=MutationKind(data["operation_kind"]),
            payload=dict(data.get("payload") or {}),
            enqueued_at=float(data.get("enqueued_at", 0.0)),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass
class ChangeEvent:
    """Push notification for a single entity."""

    entity_id: str
    kind: ChangeKind
    payload: dict[str, Any]
    observed_at: float

    def __post_init__(self) -> None:
        self.kind = ChangeKind(self.kind)
        self.entity_id = str(self.entity_id)

    @classmethod
    def from_postgres_payload(
        cls,
        payload: dict[str, Any],
        observed_at: float,
        id_field: str = "id",
    ) -> ChangeEvent:
        """Build an event from a realtime ``postgres_changes`` payload."""
        kind = ChangeKind(str(payload.get("eventType", "")).lower())
        row = payload.get("old") if kind is ChangeKind.DELETE else payload.get("new")
        if not isinstance(row, dict) or row.get(id_field) is None:
            raise ValueError(f"{kind.value} payload is missing {id_field!r}")
        return cls(entity_id=str(row[id_field]), kind=kind, payload=dict(row), observed_at=observed_at)


@dataclass
class MutationOutcome:
    """Result of :meth:`SessionClient.mutate`."""

    queued: bool
    value: Any = None
    mutation: QueuedMutation | None = None
