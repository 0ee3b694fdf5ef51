"""設定型定義（pydantic BaseModel）"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

from ..retry import RetryConfig


class SessionSection(BaseModel):
    """セッション更新設定。"""

    refresh_threshold_seconds: float = Field(default=300.0, ge=0)
    min_refresh_interval_seconds: float = Field(default=300.0, ge=0)
    check_interval_seconds: float = Field(default=45 * 60, gt=0)


class RetrySection(BaseModel):
    """リトライ設定。"""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )


class ExecutorSection(BaseModel):
    """リモート呼び出し設定。"""

    default_cache_ttl_ms: int = Field(default=30_000, gt=0)
    max_cache_ttl_ms: int = Field(default=300_000, gt=0)
    subject_param: str | None = None
    retry: RetrySection = Field(default_factory=RetrySection)

    @model_validator(mode="after")
    def _check_ttl(self) -> ExecutorSection:
        if self.default_cache_ttl_ms > self.max_cache_ttl_ms:
            raise ValueError("default_cache_ttl_ms cannot exceed max_cache_ttl_ms")
        return self


class ReconcilerSection(BaseModel):
    """変更フィード設定。"""

    throttle_window_ms: int = Field(default=1_000, ge=0)
    max_items: int = Field(default=100, ge=1)
    resubscribe_initial_delay: float = Field(default=1.0, ge=0)
    resubscribe_max_delay: float = Field(default=30.0, ge=0)
    resubscribe_max_attempts: int = Field(default=10, ge=1)


class QueueSection(BaseModel):
    """オフラインキュー設定。"""

    max_attempts: int = Field(default=5, ge=1)
    flush_interval_seconds: float = Field(default=300.0, gt=0)


class BackendSection(BaseModel):
    """バックエンド接続設定。"""

    url: str = ""
    api_key: str = ""
    timeout_seconds: float = Field(default=10.0, gt=0)


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class SyncConfig(BaseModel):
    """energy_sync 設定全体。"""

    session: SessionSection = Field(default_factory=SessionSection)
    executor: ExecutorSection = Field(default_factory=ExecutorSection)
    reconciler: ReconcilerSection = Field(default_factory=ReconcilerSection)
    queue: QueueSection = Field(default_factory=QueueSection)
    backend: BackendSection = Field(default_factory=BackendSection)
    log: LogSection = Field(default_factory=LogSection)
