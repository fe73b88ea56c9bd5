"""テレメトリ（評価・コンバージョン・エラー）のバッチ収集と送信"""

from __future__ import annotations

import random
import threading
import time
import traceback
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from .client import OriginClient
from .config import RateLimitSection, TelemetrySection
from .context import Context
from .events import EventDispatcher, TelemetryFlushed
from .metrics import telemetry_flush_total
from .models import FlagValue
from .scope import RequestScope
from .tracker import FlagStateTracker

logger = structlog.get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60.0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FlushRateLimiter:
    """直近 60 秒間の送信回数を数えるスライディングウィンドウ。3 つのコレクターで共有する。"""

    def __init__(
        self,
        config: RateLimitSection | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or RateLimitSection()
        self._clock = clock
        self._flushes: deque[float] = deque()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        if not self._config.enabled:
            return True
        with self._lock:
            self._evict()
            return len(self._flushes) < self._config.max_flushes_per_minute

    def record(self) -> None:
        if not self._config.enabled:
            return
        with self._lock:
            self._evict()
            self._flushes.append(self._clock())

    def _evict(self) -> None:
        cutoff = self._clock() - RATE_LIMIT_WINDOW_SECONDS
        while self._flushes and self._flushes[0] <= cutoff:
            self._flushes.popleft()


class _Collector(ABC):
    """3 種類のコレクターに共通するキューイングと送信処理。

    送信失敗は呼び出し元へ伝播させない。retry_on_failure が有効なら
    失敗したバッチを、その間に溜まったイベントの前に戻す。
    """

    telemetry_type: str = ""

    def __init__(
        self,
        origin: OriginClient,
        config: TelemetrySection,
        scope: RequestScope,
        rate_limiter: FlushRateLimiter | None = None,
        dispatcher: EventDispatcher | None = None,
    ) -> None:
        self._origin = origin
        self._config = config
        self._scope = scope
        self._rate_limiter = rate_limiter or FlushRateLimiter(config.rate_limit)
        self._dispatcher = dispatcher
        self._events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def batch_size(self) -> int:
        return self._config.batch_size

    def is_holding(self) -> bool:
        """同意待ちでイベントを保留しているか。"""
        return self._config.hold_until_consent and not self._scope.has_consent

    def pending_count(self) -> int:
        with self._lock:
            return len(self._events)

    def pending(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def discard_held(self) -> None:
        with self._lock:
            self._events = []

    def flush(self) -> None:
        with self._lock:
            if not self._events or self.is_holding() or not self._rate_limiter.allow():
                return
            batch = self._events
            self._events = []

        started = time.perf_counter()
        error: str | None = None
        try:
            self._send(batch)
        except Exception as e:
            error = str(e)
            logger.warning(
                "flag_telemetry_flush_failed",
                type=self.telemetry_type,
                event_count=len(batch),
                error=error,
            )
            if self._config.retry_on_failure:
                with self._lock:
                    self._events = batch + self._events
        else:
            self._rate_limiter.record()
        duration_ms = (time.perf_counter() - started) * 1000

        telemetry_flush_total.add(
            1, {"type": self.telemetry_type, "outcome": "failure" if error else "success"}
        )
        if self._dispatcher is not None:
            self._dispatcher.dispatch(
                TelemetryFlushed(
                    type=self.telemetry_type,
                    event_count=len(batch),
                    success=error is None,
                    duration_ms=duration_ms,
                    error=error,
                )
            )

    def _enqueue(self, event: dict[str, Any]) -> None:
        with self._lock:
            self._events.append(event)
            should_flush = not self.is_holding() and len(self._events) >= self.batch_size
        if should_flush:
            self.flush()

    def _device_id(self, context: Context | None) -> str:
        if context is not None and context.device_id is not None:
            return context.device_id
        return self._scope.device_id

    @abstractmethod
    def _send(self, events: list[dict[str, Any]]) -> None: ...


class EvaluationCollector(_Collector):
    """フラグ評価イベントのコレクター。記録前にサンプリングを行う。"""

    telemetry_type = "evaluations"

    def __init__(
        self,
        origin: OriginClient,
        config: TelemetrySection,
        scope: RequestScope,
        rate_limiter: FlushRateLimiter | None = None,
        dispatcher: EventDispatcher | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(origin, config, scope, rate_limiter, dispatcher)
        self._rng = rng or random.Random()

    def record(
        self,
        flag_key: str,
        value: FlagValue,
        context: Context | None,
        matched_rule_index: int | None = None,
        match_reason: str | None = None,
        duration_ms: float | None = None,
    ) -> None:
        if not self.enabled or not self._should_sample():
            return
        event: dict[str, Any] = {
            "flag_key": flag_key,
            "value": value,
            "context_id": context.id if context is not None else None,
            "device_id": self._device_id(context),
            "session_id": self._scope.session_id,
            "request_id": self._scope.request_id,
            "timestamp": _now_iso(),
        }
        if match_reason is not None:
            event["match_reason"] = match_reason
            if matched_rule_index is not None:
                event["matched_rule_index"] = matched_rule_index
        if duration_ms is not None:
            event["duration_ms"] = duration_ms
        self._enqueue(event)

    def _should_sample(self) -> bool:
        rate = self._config.sample_rate
        if rate >= 1.0:
            return True
        if rate <= 0.0:
            return False
        return self._rng.random() < rate

    def _send(self, events: list[dict[str, Any]]) -> None:
        self._origin.send_telemetry(events)


class ConversionCollector(_Collector):
    """コンバージョンイベントのコレクター。その時点までに評価したフラグを添付する。"""

    telemetry_type = "conversions"

    def __init__(
        self,
        origin: OriginClient,
        config: TelemetrySection,
        scope: RequestScope,
        rate_limiter: FlushRateLimiter | None = None,
        dispatcher: EventDispatcher | None = None,
        state_tracker: FlagStateTracker | None = None,
    ) -> None:
        super().__init__(origin, config, scope, rate_limiter, dispatcher)
        self._state_tracker = state_tracker

    def track(
        self,
        event_name: str,
        context: Context | None = None,
        properties: dict[str, Any] | None = None,
        flag_key: str | None = None,
        flag_value: FlagValue = None,
    ) -> None:
        if not self.enabled:
            return
        event: dict[str, Any] = {
            "event_name": event_name,
            "context_id": context.id if context is not None else None,
            "device_id": self._device_id(context),
            "session_id": self._scope.session_id,
            "request_id": self._scope.request_id,
            "timestamp": _now_iso(),
        }
        if properties:
            event["properties"] = properties
        if flag_key is not None:
            event["flag_key"] = flag_key
            event["flag_value"] = flag_value
        evaluated = self._state_tracker.evaluated_flags() if self._state_tracker else {}
        if evaluated:
            event["evaluated_flags"] = evaluated
        self._enqueue(event)

    def _send(self, events: list[dict[str, Any]]) -> None:
        self._origin.send_conversions(events)


class ErrorCollector(_Collector):
    """フラグに関連する例外のコレクター。バッチサイズは error_batch_size を使う。"""

    telemetry_type = "errors"

    def __init__(
        self,
        origin: OriginClient,
        config: TelemetrySection,
        scope: RequestScope,
        rate_limiter: FlushRateLimiter | None = None,
        dispatcher: EventDispatcher | None = None,
        state_tracker: FlagStateTracker | None = None,
    ) -> None:
        super().__init__(origin, config, scope, rate_limiter, dispatcher)
        self._state_tracker = state_tracker

    @property
    def batch_size(self) -> int:
        return self._config.error_batch_size

    def track(
        self,
        flag_key: str,
        exc: BaseException,
        metadata: dict[str, Any] | None = None,
        context: Context | None = None,
    ) -> None:
        """例外を記録する。フラグ値は評価済みフラグの記録から補う。"""
        if not self.enabled:
            return
        value = self._state_tracker.get_value(flag_key) if self._state_tracker else None
        self._record(flag_key, value, exc, metadata, context)

    def track_automatic(
        self,
        flag_key: str,
        flag_value: FlagValue,
        exc: BaseException,
        metadata: dict[str, Any] | None = None,
        context: Context | None = None,
    ) -> None:
        if not self.enabled:
            return
        self._record(flag_key, flag_value, exc, metadata, context)

    def _record(
        self,
        flag_key: str,
        flag_value: FlagValue,
        exc: BaseException,
        metadata: dict[str, Any] | None,
        context: Context | None,
    ) -> None:
        self._enqueue(
            {
                "flag_key": flag_key,
                "flag_value": flag_value,
                "error_type": type(exc).__qualname__,
                "error_message": str(exc),
                "stack_trace": "".join(traceback.format_exception(exc)),
                "metadata": dict(metadata or {}),
                "context_id": self._context_id(flag_key, context),
                "session_id": self._scope.session_id,
                "request_id": self._scope.request_id,
                "occurred_at": _now_iso(),
            }
        )

    def _context_id(self, flag_key: str, context: Context | None) -> str | None:
        if context is not None:
            return str(context.id)
        if self._state_tracker is None:
            return None
        entry = self._state_tracker.with_metadata().get(flag_key)
        if entry is None or entry["context_id"] is None:
            return None
        return str(entry["context_id"])

    def _send(self, events: list[dict[str, Any]]) -> None:
        self._origin.send_errors(events)
