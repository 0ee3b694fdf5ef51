"""リトライ実行エンジン"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """リトライポリシー設定。"""

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: bool = True

    def compute_delay(self, attempt: int) -> float:
        """リトライ間隔を秒単位で計算する。"""
        base = self.initial_delay * (self.multiplier**attempt)
        capped = min(base, self.max_delay)
        if self.jitter:
            return capped * (0.9 + random.random() * 0.2)
        return capped

    def with_attempts(self, max_attempts: int | None) -> RetryConfig:
        if max_attempts is None:
            return self
        return replace(self, max_attempts=max(1, max_attempts))


class RetryError(Exception):
    """リトライ上限に達した場合のエラー。"""

    def __init__(self, attempts: int, last_error: Exception | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        msg = f"Retries exhausted after {attempts} attempts"
        if last_error:
            msg += f": {last_error}"
        super().__init__(msg)
        if last_error is not None:
            self.__cause__ = last_error


async def with_retry(
    config: RetryConfig,
    fn: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> T:
    """非同期関数をリトライ付きで実行する。

    ``retry_on`` に該当しない例外はそのまま送出する。
    """
    last_error: Exception | None = None
    for attempt in range(config.max_attempts):
        try:
            return await fn()
        except retry_on as e:
            last_error = e
            if attempt + 1 < config.max_attempts:
                delay = config.compute_delay(attempt)
                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)
                await sleep(delay)
    raise RetryError(attempts=config.max_attempts, last_error=last_error)
