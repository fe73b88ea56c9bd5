"""フラグ・セグメントのインデックス付きストア"""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from typing import Any, Protocol

import structlog

from .cache import CacheBackend
from .models import Flag, Segment

logger = structlog.get_logger(__name__)

RawItems = list[dict[str, Any]]


class FlagStore(Protocol):
    """FlagService と FlagEvaluator が参照するストアのプロトコル。"""

    def put(self, flags: RawItems, ttl: float | None = None) -> None: ...

    def put_segments(self, segments: RawItems, ttl: float | None = None) -> None: ...

    def replace(self, flags: RawItems, segments: RawItems, ttl: float | None = None) -> None: ...

    def get(self, key: str) -> Flag | None: ...

    def get_segment(self, key: str) -> Segment | None: ...

    def all(self) -> list[Flag]: ...

    def all_segments(self) -> list[Segment]: ...

    def has(self) -> bool: ...

    def flush(self) -> None: ...


class CachedFlagStore:
    """キャッシュバックエンド上の TTL 付きスナップショットと、そこから導出する索引。

    索引は put/flush のたびに破棄され、次の参照時に一覧全体から作り直される。
    get と all はどちらも索引を読むため、バックエンドの TTL が切れた後も同じ内容を返す。
    作り直しは新しい dict を組み立ててから参照を差し替えるため、
    読み手が作りかけの索引を見ることはない。
    """

    def __init__(
        self,
        backend: CacheBackend,
        prefix: str = "featureflags",
        default_ttl: float = 300,
    ) -> None:
        self._backend = backend
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._lock = threading.Lock()
        self._flags_index: dict[str, Flag] | None = None
        self._segments_index: dict[str, Segment] | None = None

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{suffix}"

    def _read(self, suffix: str) -> RawItems | None:
        raw = self._backend.get(self._key(suffix))
        if raw is None:
            return None
        try:
            items = json.loads(raw)
        except ValueError as e:
            logger.warning("flag_cache_payload_invalid", key=self._key(suffix), error=str(e))
            return None
        if not isinstance(items, list):
            logger.warning("flag_cache_payload_invalid", key=self._key(suffix), error="not a list")
            return None
        return [item for item in items if isinstance(item, dict)]

    def _write(self, suffix: str, items: RawItems, ttl: float | None) -> None:
        self._backend.put(
            self._key(suffix),
            json.dumps(list(items)),
            ttl if ttl is not None else self._default_ttl,
        )

    def put(self, flags: RawItems, ttl: float | None = None) -> None:
        with self._lock:
            self._write("flags", flags, ttl)
            self._flags_index = None

    def put_segments(self, segments: RawItems, ttl: float | None = None) -> None:
        with self._lock:
            self._write("segments", segments, ttl)
            self._segments_index = None

    def replace(self, flags: RawItems, segments: RawItems, ttl: float | None = None) -> None:
        """フラグ一覧とセグメント一覧を一度に置き換える。"""
        with self._lock:
            self._write("flags", flags, ttl)
            self._write("segments", segments, ttl)
            self._flags_index = None
            self._segments_index = None

    def get(self, key: str) -> Flag | None:
        index = self._flags_index
        if index is None:
            index = self._build_flags_index()
        return index.get(key)

    def get_segment(self, key: str) -> Segment | None:
        index = self._segments_index
        if index is None:
            index = self._build_segments_index()
        return index.get(key)

    def all(self) -> list[Flag]:
        index = self._flags_index
        if index is None:
            index = self._build_flags_index()
        return list(index.values())

    def all_segments(self) -> list[Segment]:
        index = self._segments_index
        if index is None:
            index = self._build_segments_index()
        return list(index.values())

    def has(self) -> bool:
        return self._backend.has(self._key("flags"))

    def flush(self) -> None:
        with self._lock:
            self._backend.forget(self._key("flags"))
            self._backend.forget(self._key("segments"))
            self._flags_index = None
            self._segments_index = None

    def _build_flags_index(self) -> dict[str, Flag]:
        with self._lock:
            if self._flags_index is not None:
                return self._flags_index
            index: dict[str, Flag] = {}
            for item in self._read("flags") or []:
                if isinstance(item.get("key"), str):
                    index[item["key"]] = Flag.from_dict(item)
            self._flags_index = index
            return index

    def _build_segments_index(self) -> dict[str, Segment]:
        with self._lock:
            if self._segments_index is not None:
                return self._segments_index
            index: dict[str, Segment] = {}
            for item in self._read("segments") or []:
                if isinstance(item.get("key"), str):
                    index[item["key"]] = Segment.from_dict(item)
            self._segments_index = index
            return index


class LocalFlagStore:
    """ローカルモード用の静的ストア。オリジンに一切アクセスしない。

    リテラルは ``"key": 値`` または ``"key": {"value": 値, "rollout": 25}`` の形式。
    """

    def __init__(self, literals: Mapping[str, Any]) -> None:
        self._flags: dict[str, Flag] = {
            key: _literal_to_flag(key, value) for key, value in literals.items()
        }

    def put(self, flags: RawItems, ttl: float | None = None) -> None:
        return None

    def put_segments(self, segments: RawItems, ttl: float | None = None) -> None:
        return None

    def replace(self, flags: RawItems, segments: RawItems, ttl: float | None = None) -> None:
        return None

    def get(self, key: str) -> Flag | None:
        return self._flags.get(key)

    def get_segment(self, key: str) -> Segment | None:
        return None

    def all(self) -> list[Flag]:
        return list(self._flags.values())

    def all_segments(self) -> list[Segment]:
        return []

    def has(self) -> bool:
        return True

    def flush(self) -> None:
        return None


def _literal_to_flag(key: str, literal: Any) -> Flag:
    if not isinstance(literal, Mapping):
        return Flag.from_dict({"key": key, "enabled": True, "default_value": literal})
    return Flag.from_dict(
        {
            "key": key,
            "enabled": True,
            "default_value": literal.get("value", True),
            "rollout_percentage": literal.get("rollout"),
        }
    )
