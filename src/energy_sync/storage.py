"""Durable storage for session and offline queue records."""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from pathlib import Path


class DurableStorage(ABC):
    """文字列レコードを保存する永続ストレージ抽象基底クラス。"""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """キーに対応するレコードを取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """レコードを保存する。"""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """レコードを削除する。存在しなくてもエラーにしない。"""
        ...


class InMemoryStorage(DurableStorage):
    """テスト用インメモリストレージ。"""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._records.get(key)

    async def set(self, key: str, value: str) -> None:
        self._records[key] = value

    async def remove(self, key: str) -> None:
        self._records.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._records)


_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileStorage(DurableStorage):
    """One JSON document per key inside ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE.sub('_', key)}.json"

    async def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_text, encoding="utf-8")

    async def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        await asyncio.to_thread(tmp.write_text, value, encoding="utf-8")
        await asyncio.to_thread(tmp.replace, path)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)
