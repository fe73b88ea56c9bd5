"""オリジンクライアント抽象基底クラスとインメモリ実装"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .breaker import CircuitBreaker
from .exceptions import FlagEngineErrorCodes, OriginUnavailableError


@dataclass
class FlagsPayload:
    """オリジンから取得したフラグ・セグメント一覧。

    cache_ttl はレスポンスに整数で含まれていた場合のみ設定され、それ以外は None。
    """

    flags: list[dict[str, Any]] = field(default_factory=list)
    segments: list[dict[str, Any]] = field(default_factory=list)
    cache_ttl: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlagsPayload:
        flags = data.get("flags")
        segments = data.get("segments")
        cache_ttl = data.get("cache_ttl")
        return cls(
            flags=[f for f in flags if isinstance(f, dict)] if isinstance(flags, list) else [],
            segments=(
                [s for s in segments if isinstance(s, dict)] if isinstance(segments, list) else []
            ),
            cache_ttl=(
                cache_ttl
                if isinstance(cache_ttl, int) and not isinstance(cache_ttl, bool)
                else None
            ),
        )


class OriginClient(ABC):
    """フラグ配信元（オリジン）クライアントの抽象基底クラス。

    失敗時は OriginUnavailableError（ブレーカーが開いている場合は CircuitOpenError）を送出する。
    """

    @abstractmethod
    def fetch_flags(self) -> FlagsPayload:
        """フラグとセグメントの一覧を取得する。"""
        ...

    @abstractmethod
    def send_telemetry(self, events: list[dict[str, Any]]) -> None:
        """評価イベントのバッチを送信する。"""
        ...

    @abstractmethod
    def send_conversions(self, events: list[dict[str, Any]]) -> None:
        """コンバージョンイベントのバッチを送信する。"""
        ...

    @abstractmethod
    def send_errors(self, events: list[dict[str, Any]]) -> None:
        """エラーイベントのバッチを送信する。"""
        ...


class InMemoryOriginClient(OriginClient):
    """テスト・組み込み用のインメモリオリジン。

    set_payload でフラグ一覧を、fail_with で失敗を仕込む。送信されたバッチは記録される。
    breaker を渡すと fetch_flags はブレーカー経由で実行される。
    """

    def __init__(
        self,
        payload: FlagsPayload | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._payload = payload or FlagsPayload()
        self._breaker = breaker
        self._failure: Exception | None = None
        self.fetch_count = 0
        self.sent_telemetry: list[list[dict[str, Any]]] = []
        self.sent_conversions: list[list[dict[str, Any]]] = []
        self.sent_errors: list[list[dict[str, Any]]] = []

    def set_payload(self, payload: FlagsPayload) -> None:
        self._payload = payload
        self._failure = None

    def fail_with(self, error: Exception | None = None) -> None:
        """以降の呼び出しを失敗させる。None を渡すと失敗を解除する。"""
        self._failure = error

    def fetch_flags(self) -> FlagsPayload:
        if self._breaker is not None:
            return self._breaker.call(self._fetch)
        return self._fetch()

    def _fetch(self) -> FlagsPayload:
        self.fetch_count += 1
        self._raise_if_failing()
        return FlagsPayload(
            flags=list(self._payload.flags),
            segments=list(self._payload.segments),
            cache_ttl=self._payload.cache_ttl,
        )

    def send_telemetry(self, events: list[dict[str, Any]]) -> None:
        self._send(self.sent_telemetry, events)

    def send_conversions(self, events: list[dict[str, Any]]) -> None:
        self._send(self.sent_conversions, events)

    def send_errors(self, events: list[dict[str, Any]]) -> None:
        self._send(self.sent_errors, events)

    def _send(self, sink: list[list[dict[str, Any]]], events: list[dict[str, Any]]) -> None:
        if not events:
            return
        self._raise_if_failing()
        sink.append(list(events))

    def _raise_if_failing(self) -> None:
        if self._failure is None:
            return
        if isinstance(self._failure, OriginUnavailableError):
            raise self._failure
        raise OriginUnavailableError(
            code=FlagEngineErrorCodes.CONNECTION_ERROR,
            message=str(self._failure),
            cause=self._failure,
        )
