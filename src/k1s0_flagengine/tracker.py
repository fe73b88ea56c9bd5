"""処理単位ごとの評価済みフラグの記録"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

from .context import Context
from .models import FlagValue


class FlagStateTracker:
    """評価したフラグと値を記録し、エラー報告時の相関情報として提供する。

    長寿命プロセスでは処理単位の終わりに reset() しないと、無関係なリクエストへ記録が漏れる。
    """

    def __init__(self) -> None:
        self._flags: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def record(self, flag_key: str, value: FlagValue, context: Context | None = None) -> None:
        with self._lock:
            self._flags[flag_key] = {
                "value": value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "context_id": context.id if context is not None else None,
            }

    def evaluated_flags(self) -> dict[str, FlagValue]:
        with self._lock:
            return {key: entry["value"] for key, entry in self._flags.items()}

    def with_metadata(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {key: dict(entry) for key, entry in self._flags.items()}

    def was_evaluated(self, flag_key: str) -> bool:
        with self._lock:
            return flag_key in self._flags

    def get_value(self, flag_key: str) -> FlagValue:
        with self._lock:
            entry = self._flags.get(flag_key)
        return entry["value"] if entry is not None else None

    def count(self) -> int:
        with self._lock:
            return len(self._flags)

    def reset(self) -> None:
        with self._lock:
            self._flags = {}

    def to_error_context(self, request_id: str | None = None) -> dict[str, Any]:
        with self._lock:
            flags = {key: entry["value"] for key, entry in self._flags.items()}
        return {
            "flags": flags,
            "count": len(flags),
            "request_id": request_id,
        }
