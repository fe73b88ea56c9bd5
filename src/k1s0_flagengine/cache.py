"""キャッシュバックエンド抽象基底クラスとインメモリ実装"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable


class CacheBackend(ABC):
    """FlagStore が利用するキーバリューストアの抽象基底クラス。"""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """キーに対応する値を取得する。存在しなければ None。"""
        ...

    @abstractmethod
    def put(self, key: str, value: str, ttl: float | None = None) -> None:
        """キーと値を保存する。ttl 指定時は有効期限付き（秒）。"""
        ...

    @abstractmethod
    def has(self, key: str) -> bool:
        """キーが存在するか（期限切れでないか）確認する。"""
        ...

    @abstractmethod
    def forget(self, key: str) -> bool:
        """キーを削除する。削除できたら True。"""
        ...

    @abstractmethod
    def increment(self, key: str, amount: int = 1) -> int:
        """整数値を加算して加算後の値を返す。キーがなければ 0 から加算する。"""
        ...


class _CacheEntry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: str, expires_at: float | None) -> None:
        self.value = value
        self.expires_at = expires_at


class InMemoryCacheBackend(CacheBackend):
    """プロセス内インメモリキャッシュ。"""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._store[key]
            return None
        return entry

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    def put(self, key: str, value: str, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._store[key] = _CacheEntry(value, expires_at)

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def forget(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def increment(self, key: str, amount: int = 1) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._store[key] = _CacheEntry(str(amount), None)
                return amount
            value = int(entry.value) + amount
            entry.value = str(value)
            return value
