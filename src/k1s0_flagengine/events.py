"""フラグ評価・同期・テレメトリ送信のライフサイクルイベント"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Union

import structlog

from .config import EventsSection

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FlagEvaluated:
    name: ClassVar[str] = "flag_evaluated"

    flag_key: str
    value: Any
    match_reason: str
    matched_rule_index: int | None
    duration_ms: float
    context_id: str | int | None


@dataclass(frozen=True)
class FlagSyncCompleted:
    name: ClassVar[str] = "flag_sync_completed"

    flag_count: int
    segment_count: int
    duration_ms: float
    source: str = "api"


@dataclass(frozen=True)
class TelemetryFlushed:
    name: ClassVar[str] = "telemetry_flushed"

    type: str
    event_count: int
    success: bool
    duration_ms: float
    error: str | None = None


FlagEvent = Union[FlagEvaluated, FlagSyncCompleted, TelemetryFlushed]
EventHandler = Callable[[Any], None]


class EventDispatcher:
    """プロセス内の同期イベントディスパッチャー。

    events.enabled が False の場合、または events.dispatch で個別に無効化された
    イベントは配信しない。ハンドラーの例外はログに残して握りつぶす。
    config を省略するとすべてのイベントを配信する。
    """

    def __init__(self, config: EventsSection | None = None) -> None:
        self._config = config
        self._handlers: dict[type, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: type) -> None:
        """イベント型のハンドラーをすべて解除する。"""
        with self._lock:
            self._handlers.pop(event_type, None)

    def is_enabled(self, event_type: type) -> bool:
        if self._config is None:
            return True
        if not self._config.enabled:
            return False
        return bool(getattr(self._config.dispatch, getattr(event_type, "name", ""), False))

    def dispatch(self, event: FlagEvent) -> None:
        if not self.is_enabled(type(event)):
            return
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning("flag_event_handler_failed", event_name=event.name, error=str(e))
