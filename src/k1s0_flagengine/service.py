"""フラグ同期・フォールバック・評価の統括"""

from __future__ import annotations

import time

import structlog

from .client import OriginClient
from .collectors import EvaluationCollector
from .config import FlagEngineConfig
from .context import Context, ContextSource
from .evaluator import FlagEvaluator
from .events import EventDispatcher, FlagEvaluated, FlagSyncCompleted
from .exceptions import CircularDependencyError, FlagSyncError, OriginUnavailableError
from .metrics import flag_evaluation_duration_ms, flag_evaluations_total, flag_sync_total
from .models import EvaluationOutcome, Flag, FlagValue, MatchReason, normalize_value
from .resolver import ContextNormalizer
from .store import FlagStore
from .tracker import FlagStateTracker

logger = structlog.get_logger(__name__)


class FlagService:
    """ストアからフラグを引き、必要ならオリジンと同期して評価する。

    同期失敗時の挙動は fallback.behavior で決まる:
        cache: 警告ログのみ。最後に取得できたキャッシュを使い続ける
        default: 警告ログに加え、キャッシュにないキーは無効化された合成フラグ
            （値は fallback.default_value）として扱う
        exception: FlagSyncError を送出する
    """

    def __init__(
        self,
        store: FlagStore,
        origin: OriginClient,
        evaluator: FlagEvaluator,
        normalizer: ContextNormalizer,
        evaluations: EvaluationCollector,
        state_tracker: FlagStateTracker,
        config: FlagEngineConfig | None = None,
        dispatcher: EventDispatcher | None = None,
    ) -> None:
        self._store = store
        self._origin = origin
        self._evaluator = evaluator
        self._normalizer = normalizer
        self._evaluations = evaluations
        self._state_tracker = state_tracker
        self._config = config or FlagEngineConfig()
        self._dispatcher = dispatcher

    @property
    def store(self) -> FlagStore:
        return self._store

    @property
    def state_tracker(self) -> FlagStateTracker:
        return self._state_tracker

    @property
    def evaluations(self) -> EvaluationCollector:
        return self._evaluations

    def is_local_mode(self) -> bool:
        return self._config.local.enabled

    def normalize_context(self, context: ContextSource) -> Context | None:
        return self._normalizer.normalize(context)

    def active(self, key: str, context: ContextSource = None) -> bool:
        return bool(self.value(key, context))

    def value(self, key: str, context: ContextSource = None) -> FlagValue:
        return self.evaluate(key, context).value

    def evaluate(self, key: str, context: ContextSource = None) -> EvaluationOutcome:
        """フラグを評価し、評価記録・テレメトリ・イベントへ結果を流す。"""
        started = time.perf_counter()
        flag = self._get_flag(key)
        resolved: Context | None = None
        if flag is None:
            outcome = EvaluationOutcome(False, MatchReason.NOT_FOUND)
        else:
            resolved = self._normalizer.normalize(context)
            outcome = self._evaluate_flag(flag, resolved, ())
        duration_ms = (time.perf_counter() - started) * 1000

        self._evaluations.record(
            key,
            outcome.value,
            resolved,
            outcome.matched_rule_index,
            outcome.match_reason.value,
            duration_ms,
        )
        self._state_tracker.record(key, outcome.value, resolved)
        flag_evaluations_total.add(
            1, {"flag_key": key, "match_reason": outcome.match_reason.value}
        )
        flag_evaluation_duration_ms.record(duration_ms, {"flag_key": key})
        if self._dispatcher is not None:
            self._dispatcher.dispatch(
                FlagEvaluated(
                    flag_key=key,
                    value=outcome.value,
                    match_reason=outcome.match_reason.value,
                    matched_rule_index=outcome.matched_rule_index,
                    duration_ms=duration_ms,
                    context_id=resolved.id if resolved is not None else None,
                )
            )
        return outcome

    def all(self) -> list[Flag]:
        if not self.is_local_mode():
            self._ensure_flags_loaded()
        return self._store.all()

    def sync(self) -> None:
        """オリジンからフラグとセグメントを取得し、ストアを丸ごと置き換える。"""
        if self.is_local_mode():
            return
        started = time.perf_counter()
        try:
            payload = self._origin.fetch_flags()
        except OriginUnavailableError as e:
            flag_sync_total.add(1, {"outcome": "failure"})
            self._handle_sync_failure(e)
            return
        self._store.replace(
            payload.flags,
            payload.segments,
            payload.cache_ttl if payload.cache_ttl and payload.cache_ttl > 0 else None,
        )
        duration_ms = (time.perf_counter() - started) * 1000
        flag_sync_total.add(1, {"outcome": "success"})
        logger.debug(
            "flag_sync_completed",
            flag_count=len(payload.flags),
            segment_count=len(payload.segments),
            duration_ms=duration_ms,
        )
        if self._dispatcher is not None:
            self._dispatcher.dispatch(
                FlagSyncCompleted(
                    flag_count=len(payload.flags),
                    segment_count=len(payload.segments),
                    duration_ms=duration_ms,
                )
            )

    def sync_if_needed(self) -> None:
        if self.is_local_mode():
            return
        self._ensure_flags_loaded()

    def flush(self) -> None:
        """キャッシュ済みのフラグとセグメントを破棄する。"""
        self._store.flush()

    def _handle_sync_failure(self, error: OriginUnavailableError) -> None:
        behavior = self._config.fallback.behavior
        if behavior == "exception":
            raise FlagSyncError(f"Failed to sync feature flags: {error}", cause=error) from error
        logger.warning("flag_sync_failed", behavior=behavior, code=error.code, error=str(error))

    def _ensure_flags_loaded(self) -> None:
        if self._config.cache.enabled and self._store.has():
            return
        self.sync()

    def _get_flag(self, key: str) -> Flag | None:
        if not self.is_local_mode():
            self._ensure_flags_loaded()
        flag = self._store.get(key)
        if flag is None and self._config.fallback.behavior == "default":
            return Flag(
                key=key,
                enabled=False,
                default_value=normalize_value(self._config.fallback.default_value),
            )
        return flag

    def _evaluate_flag(
        self, flag: Flag, context: Context | None, evaluating: tuple[str, ...]
    ) -> EvaluationOutcome:
        try:
            return self._evaluator.evaluate(flag, context, evaluating, self._dependency_value)
        except CircularDependencyError as e:
            # ネストした評価中の循環はルートまで伝播させ、ルートで一度だけ既定値に落とす
            if evaluating:
                raise
            logger.warning("flag_circular_dependency", flag_key=flag.key, detected_at=e.flag_key)
            return EvaluationOutcome(normalize_value(flag.default_value), MatchReason.DEPENDENCY)

    def _dependency_value(
        self, key: str, context: Context | None, evaluating: tuple[str, ...]
    ) -> tuple[bool, FlagValue]:
        # 依存先はストアから直接引く。フォールバックの合成フラグは依存を満たさない
        flag = self._store.get(key)
        if flag is None:
            return False, None
        return True, self._evaluate_flag(flag, context, evaluating).value
