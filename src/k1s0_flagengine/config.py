"""設定型定義（pydantic BaseModel）"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .breaker import CircuitBreakerConfig


class ApiSection(BaseModel):
    """オリジン API 接続設定。"""

    url: str = "https://api.turtlemilitia.com/v1"
    key: str | None = None
    timeout_seconds: float = Field(default=5.0, gt=0)
    verify_ssl: bool = True


class CacheSection(BaseModel):
    """フラグキャッシュ設定。"""

    enabled: bool = True
    prefix: str = "featureflags"
    ttl: int = Field(default=300, ge=0)


class FallbackSection(BaseModel):
    """同期失敗時のフォールバック設定。"""

    behavior: Literal["cache", "default", "exception"] = "cache"
    default_value: bool | int | float | str | dict[str, Any] | None = False


class ContextSection(BaseModel):
    auto_resolve: bool = True


class RateLimitSection(BaseModel):
    """テレメトリ送信のレート制限設定。"""

    enabled: bool = False
    max_flushes_per_minute: int = Field(default=60, ge=1)


class TelemetrySection(BaseModel):
    """テレメトリ（評価・コンバージョン・エラー）設定。"""

    enabled: bool = False
    batch_size: int = Field(default=100, ge=1)
    error_batch_size: int = Field(default=10, ge=1)
    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    retry_on_failure: bool = False
    hold_until_consent: bool = False
    rate_limit: RateLimitSection = Field(default_factory=RateLimitSection)


class CircuitBreakerSection(BaseModel):
    """サーキットブレーカー設定。"""

    enabled: bool = True
    failure_threshold: int = Field(default=5, ge=1)
    cooldown_seconds: float = Field(default=30, ge=0)

    def to_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            enabled=self.enabled,
            failure_threshold=self.failure_threshold,
            cooldown_seconds=self.cooldown_seconds,
        )


class SyncSection(BaseModel):
    circuit_breaker: CircuitBreakerSection = Field(default_factory=CircuitBreakerSection)


class LocalSection(BaseModel):
    """ローカルモード設定。有効時はオリジンに一切アクセスしない。"""

    enabled: bool = False
    flags: dict[str, Any] = Field(default_factory=dict)


class EventDispatchSection(BaseModel):
    flag_evaluated: bool = True
    flag_sync_completed: bool = True
    telemetry_flushed: bool = True


class EventsSection(BaseModel):
    """ライフサイクルイベント設定。"""

    enabled: bool = False
    dispatch: EventDispatchSection = Field(default_factory=EventDispatchSection)


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class FlagEngineConfig(BaseModel):
    """flagengine 設定全体。"""

    api: ApiSection = Field(default_factory=ApiSection)
    cache: CacheSection = Field(default_factory=CacheSection)
    fallback: FallbackSection = Field(default_factory=FallbackSection)
    context: ContextSection = Field(default_factory=ContextSection)
    telemetry: TelemetrySection = Field(default_factory=TelemetrySection)
    sync: SyncSection = Field(default_factory=SyncSection)
    local: LocalSection = Field(default_factory=LocalSection)
    events: EventsSection = Field(default_factory=EventsSection)
    log: LogSection = Field(default_factory=LogSection)
