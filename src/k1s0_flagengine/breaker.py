"""オリジン呼び出しを保護するサーキットブレーカー"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar

import structlog

from .exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """サーキットの状態。ハーフオープンは持たない。"""

    CLOSED = "closed"
    OPEN = "open"


@dataclass
class CircuitBreakerConfig:
    """サーキットブレーカー設定。"""

    enabled: bool = True
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0


class CircuitBreaker:
    """連続失敗が閾値に達したら cooldown_seconds の間、呼び出しを即座に失敗させる。

    クールダウン経過後は CLOSED に戻るが失敗回数は保持されるため、
    次の失敗で再び OPEN になる。失敗回数をリセットするのは成功のみ。
    失敗回数自体は連続失敗の最初から cooldown_seconds * 2 経過すると失効する。
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._failure_count = 0
        self._failures_expire_at: float | None = None
        self._open_until: float | None = None

    @property
    def state(self) -> CircuitState:
        return CircuitState.OPEN if self.is_open() else CircuitState.CLOSED

    @property
    def failure_count(self) -> int:
        with self._lock:
            self._expire_failures()
            return self._failure_count

    def is_open(self) -> bool:
        if not self._config.enabled:
            return False
        with self._lock:
            return self._open_until is not None and self._clock() < self._open_until

    def remaining_seconds(self) -> float:
        with self._lock:
            if self._open_until is None:
                return 0.0
            return max(0.0, self._open_until - self._clock())

    def record_success(self) -> None:
        if not self._config.enabled:
            return
        with self._lock:
            self._failure_count = 0
            self._failures_expire_at = None
            self._open_until = None

    def record_failure(self) -> None:
        if not self._config.enabled:
            return
        with self._lock:
            self._expire_failures()
            now = self._clock()
            if self._failure_count == 0:
                self._failures_expire_at = now + self._config.cooldown_seconds * 2
            self._failure_count += 1
            if self._failure_count >= self._config.failure_threshold:
                self._open_until = now + self._config.cooldown_seconds
                opened = True
            else:
                opened = False
            failures = self._failure_count
        if opened:
            logger.warning(
                "flag_circuit_opened",
                failures=failures,
                cooldown_seconds=self._config.cooldown_seconds,
            )

    def call(self, fn: Callable[[], T]) -> T:
        """fn をブレーカー経由で実行する。OPEN の間は fn を呼ばずに CircuitOpenError を送出する。"""
        if self.is_open():
            raise CircuitOpenError(self.remaining_seconds())
        try:
            result = fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._failures_expire_at = None
            self._open_until = None

    def _expire_failures(self) -> None:
        if self._failures_expire_at is not None and self._clock() >= self._failures_expire_at:
            self._failure_count = 0
            self._failures_expire_at = None
