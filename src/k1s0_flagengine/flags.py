"""アプリケーションから使う FeatureFlags ファサード"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable, TypeVar

from .breaker import CircuitBreaker
from .cache import CacheBackend, InMemoryCacheBackend
from .client import OriginClient
from .collectors import (
    ConversionCollector,
    ErrorCollector,
    EvaluationCollector,
    FlushRateLimiter,
)
from .config import FlagEngineConfig
from .context import ContextSource, VersionResolver
from .evaluator import FlagEvaluator
from .events import EventDispatcher
from .http_client import HttpOriginClient
from .models import EvaluationOutcome, Flag, FlagValue
from .operators import OperatorMatcher
from .resolver import ContextNormalizer, ContextResolver, PrincipalProvider
from .scope import RequestScope, SessionIdProvider
from .service import FlagService
from .store import CachedFlagStore, FlagStore, LocalFlagStore
from .tracker import FlagStateTracker

T = TypeVar("T")


class FeatureFlags:
    """フラグ評価とテレメトリの窓口。

    通常は from_config で組み立てる。処理単位（リクエスト・ジョブ）ごとに
    unit_of_work() で囲むと、終了時にテレメトリ送信とリクエストスコープのリセットが行われる。

    Example:
        flags = FeatureFlags.from_config(config)
        with flags.unit_of_work():
            if flags.active("new-checkout", {"id": user.id, "plan": user.plan}):
                ...
    """

    def __init__(
        self,
        service: FlagService,
        conversions: ConversionCollector,
        errors: ErrorCollector,
        scope: RequestScope,
        dispatcher: EventDispatcher | None = None,
    ) -> None:
        self._service = service
        self._conversions = conversions
        self._errors = errors
        self._scope = scope
        self._dispatcher = dispatcher

    @classmethod
    def from_config(
        cls,
        config: FlagEngineConfig,
        cache_backend: CacheBackend | None = None,
        origin: OriginClient | None = None,
        principal_provider: PrincipalProvider | None = None,
        version_resolver: VersionResolver | None = None,
        session_id_provider: SessionIdProvider | None = None,
    ) -> FeatureFlags:
        """設定から依存オブジェクト一式を組み立てる。

        origin を省略すると config.api を使う HttpOriginClient を、
        cache_backend を省略するとプロセス内の InMemoryCacheBackend を使う。
        """
        scope = RequestScope(session_id_provider)
        tracker = FlagStateTracker()
        dispatcher = EventDispatcher(config.events)
        if origin is None:
            breaker = CircuitBreaker(config.sync.circuit_breaker.to_breaker_config())
            origin = HttpOriginClient(config.api, breaker)

        store: FlagStore
        if config.local.enabled:
            store = LocalFlagStore(config.local.flags)
        else:
            store = CachedFlagStore(
                cache_backend or InMemoryCacheBackend(),
                prefix=config.cache.prefix,
                default_ttl=config.cache.ttl,
            )

        limiter = FlushRateLimiter(config.telemetry.rate_limit)
        evaluations = EvaluationCollector(origin, config.telemetry, scope, limiter, dispatcher)
        conversions = ConversionCollector(
            origin, config.telemetry, scope, limiter, dispatcher, state_tracker=tracker
        )
        errors = ErrorCollector(
            origin, config.telemetry, scope, limiter, dispatcher, state_tracker=tracker
        )
        resolver = ContextResolver(principal_provider, version_resolver, config.context.auto_resolve)
        service = FlagService(
            store=store,
            origin=origin,
            evaluator=FlagEvaluator(store, OperatorMatcher()),
            normalizer=ContextNormalizer(resolver),
            evaluations=evaluations,
            state_tracker=tracker,
            config=config,
            dispatcher=dispatcher,
        )
        return cls(service, conversions, errors, scope, dispatcher)

    @property
    def scope(self) -> RequestScope:
        return self._scope

    @property
    def events(self) -> EventDispatcher | None:
        return self._dispatcher

    @property
    def state_tracker(self) -> FlagStateTracker:
        return self._service.state_tracker

    def is_local_mode(self) -> bool:
        return self._service.is_local_mode()

    def active(self, key: str, context: ContextSource = None) -> bool:
        return self._service.active(key, context)

    def value(self, key: str, context: ContextSource = None) -> FlagValue:
        return self._service.value(key, context)

    def evaluate(self, key: str, context: ContextSource = None) -> EvaluationOutcome:
        return self._service.evaluate(key, context)

    def all(self) -> list[Flag]:
        return self._service.all()

    def sync(self) -> None:
        self._service.sync()

    def flush(self) -> None:
        self._service.flush()

    def track_conversion(
        self,
        event_name: str,
        context: ContextSource = None,
        properties: dict[str, Any] | None = None,
        flag_key: str | None = None,
        flag_value: FlagValue = None,
    ) -> None:
        normalized = self._service.normalize_context(context)
        self._conversions.track(event_name, normalized, properties, flag_key, flag_value)

    def flush_conversions(self) -> None:
        self._conversions.flush()

    def monitor(
        self,
        flag_key: str,
        callback: Callable[[FlagValue], T],
        context: ContextSource = None,
    ) -> T:
        """フラグ値を callback に渡して実行する。例外はエラーテレメトリに記録してから再送出する。"""
        flag_value = self.value(flag_key, context)
        try:
            return callback(flag_value)
        except Exception as e:
            self._errors.track_automatic(flag_key, flag_value, e, {"monitored": True})
            raise

    def track_error(
        self, flag_key: str, exc: BaseException, metadata: dict[str, Any] | None = None
    ) -> None:
        self._errors.track(flag_key, exc, metadata)

    def flush_errors(self) -> None:
        self._errors.flush()

    def flush_telemetry(self) -> None:
        self._service.evaluations.flush()

    def flush_all_telemetry_and_reset(self) -> None:
        """3 種類のテレメトリを送信し、評価記録とリクエストスコープをリセットする。

        同意が得られないまま保留されたイベントは破棄する。
        次の処理単位の同意で前の利用者のイベントが送信されてはならない。
        """
        for collector in self._collectors():
            collector.flush()
            if collector.is_holding():
                collector.discard_held()
        self._service.state_tracker.reset()
        self._scope.reset()

    def evaluated_flags(self) -> dict[str, FlagValue]:
        return self._service.state_tracker.evaluated_flags()

    def error_context(self) -> dict[str, Any]:
        return self._service.state_tracker.to_error_context(self._scope.request_id)

    def reset_state_tracker(self) -> None:
        self._service.state_tracker.reset()

    def grant_consent(self) -> None:
        """テレメトリ送信への同意を記録し、保留していたイベントを送信する。"""
        self._scope.grant_consent()
        for collector in self._collectors():
            collector.flush()

    def revoke_consent(self) -> None:
        self._scope.revoke_consent()

    def discard_held_telemetry(self) -> None:
        for collector in self._collectors():
            collector.discard_held()

    def is_holding_telemetry(self) -> bool:
        return self._service.evaluations.is_holding()

    def _collectors(self) -> tuple[EvaluationCollector, ConversionCollector, ErrorCollector]:
        return self._service.evaluations, self._conversions, self._errors

    @contextmanager
    def unit_of_work(self) -> Iterator[FeatureFlags]:
        """処理単位の境界。終了時（例外時も）にテレメトリ送信とリセットを行う。"""
        self._scope.initialize()
        try:
            yield self
        finally:
            self.flush_all_telemetry_and_reset()
