"""FlagService（同期・フォールバック・評価）のユニットテスト"""

from typing import Any

import pytest
from structlog.testing import capture_logs

from k1s0_flagengine import (
    CachedFlagStore,
    CircuitBreaker,
    CircuitBreakerConfig,
    ContextNormalizer,
    ContextResolver,
    EvaluationCollector,
    EventDispatcher,
    FlagEngineConfig,
    FlagEvaluated,
    FlagEvaluator,
    FlagService,
    FlagStateTracker,
    FlagsPayload,
    FlagSyncCompleted,
    FlagSyncError,
    InMemoryCacheBackend,
    InMemoryOriginClient,
    LocalFlagStore,
    MatchReason,
    OriginUnavailableError,
    RequestScope,
)
from k1s0_flagengine.store import FlagStore

SINGLE_RULE_EQUALS = {
    "key": "single-rule-equals",
    "enabled": True,
    "default_value": False,
    "rules": [
        {
            "priority": 1,
            "conditions": [{"trait": "plan", "operator": "equals", "value": "pro"}],
            "value": True,
        }
    ],
}


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**sections: Any) -> FlagEngineConfig:
    return FlagEngineConfig.model_validate(sections)


def make_service(
    flags: list[dict[str, Any]] | None = None,
    segments: list[dict[str, Any]] | None = None,
    config: FlagEngineConfig | None = None,
    origin: InMemoryOriginClient | None = None,
    clock: FakeClock | None = None,
    dispatcher: EventDispatcher | None = None,
    cache_ttl: int = 300,
) -> tuple[FlagService, InMemoryOriginClient]:
    config = config or FlagEngineConfig()
    if origin is None:
        origin = InMemoryOriginClient(
            FlagsPayload(flags=flags or [], segments=segments or [], cache_ttl=cache_ttl)
        )
    store: FlagStore
    if config.local.enabled:
        store = LocalFlagStore(config.local.flags)
    else:
        store = CachedFlagStore(InMemoryCacheBackend(clock=clock or FakeClock()))
    scope = RequestScope()
    scope.initialize()
    service = FlagService(
        store=store,
        origin=origin,
        evaluator=FlagEvaluator(store),
        normalizer=ContextNormalizer(ContextResolver()),
        evaluations=EvaluationCollector(origin, config.telemetry, scope),
        state_tracker=FlagStateTracker(),
        config=config,
        dispatcher=dispatcher,
    )
    return service, origin


def test_end_to_end_single_rule() -> None:
    """plan=pro はルール 0 に一致し、plan=free は既定値。"""
    service, _ = make_service([SINGLE_RULE_EQUALS])
    pro = service.evaluate("single-rule-equals", {"id": "u1", "traits": {"plan": "pro"}})
    assert (pro.value, pro.match_reason, pro.matched_rule_index) == (True, MatchReason.RULE, 0)
    free = service.evaluate("single-rule-equals", {"id": "u1", "traits": {"plan": "free"}})
    assert (free.value, free.match_reason, free.matched_rule_index) == (
        False,
        MatchReason.DEFAULT,
        None,
    )
    assert service.active("single-rule-equals", {"id": "u1", "plan": "pro"}) is True


def test_unknown_flag_is_not_found() -> None:
    """存在しないキーは (False, not_found)。"""
    service, _ = make_service([SINGLE_RULE_EQUALS])
    outcome = service.evaluate("missing")
    assert outcome.value is False
    assert outcome.match_reason == MatchReason.NOT_FOUND
    assert outcome.matched_rule_index is None


def test_flags_are_synced_lazily_once() -> None:
    """初回評価でのみ同期し、以降はキャッシュを使う。"""
    service, origin = make_service([SINGLE_RULE_EQUALS])
    assert origin.fetch_count == 0
    service.value("single-rule-equals")
    service.value("single-rule-equals")
    service.sync_if_needed()
    assert origin.fetch_count == 1


def test_cache_disabled_syncs_on_every_lookup() -> None:
    """キャッシュ無効時は評価のたびに同期する。"""
    service, origin = make_service(
        [SINGLE_RULE_EQUALS], config=make_config(cache={"enabled": False})
    )
    service.value("single-rule-equals")
    service.value("single-rule-equals")
    assert origin.fetch_count == 2


def test_payload_cache_ttl_drives_resync() -> None:
    """レスポンスの cache_ttl 経過後は再同期する。"""
    clock = FakeClock()
    service, origin = make_service([SINGLE_RULE_EQUALS], clock=clock, cache_ttl=60)
    service.value("single-rule-equals")
    clock.advance(59)
    service.value("single-rule-equals")
    assert origin.fetch_count == 1
    clock.advance(2)
    service.value("single-rule-equals")
    assert origin.fetch_count == 2


def test_zero_cache_ttl_falls_back_to_store_default() -> None:
    """cache_ttl が 0 ならストアの既定 TTL を使う。"""
    clock = FakeClock()
    service, origin = make_service([SINGLE_RULE_EQUALS], clock=clock, cache_ttl=0)
    service.value("single-rule-equals")
    clock.advance(120)
    service.value("single-rule-equals")
    assert origin.fetch_count == 1


def test_sync_replaces_segments() -> None:
    """同期はセグメントも丸ごと置き換える。空の一覧なら以前のセグメントは消える。"""
    service, origin = make_service([SINGLE_RULE_EQUALS], segments=[{"key": "beta", "rules": []}])
    service.sync()
    assert service.store.get_segment("beta") is not None
    origin.set_payload(FlagsPayload(flags=[SINGLE_RULE_EQUALS], segments=[]))
    service.sync()
    assert service.store.get_segment("beta") is None


def test_cache_fallback_keeps_last_good_flags() -> None:
    """fallback=cache では同期失敗を警告ログに残し、キャッシュ済みフラグを使い続ける。"""
    service, origin = make_service([SINGLE_RULE_EQUALS])
    service.sync()
    origin.fail_with(ConnectionError("down"))
    with capture_logs() as logs:
        service.sync()
    assert any(
        log["event"] == "flag_sync_failed" and log["behavior"] == "cache" for log in logs
    )
    assert service.value("single-rule-equals", {"id": "u1", "plan": "pro"}) is True


def test_cache_fallback_with_empty_cache_is_not_found() -> None:
    """キャッシュが空のまま同期に失敗すると not_found。"""
    service, origin = make_service([SINGLE_RULE_EQUALS])
    origin.fail_with(ConnectionError("down"))
    assert service.evaluate("single-rule-equals").match_reason == MatchReason.NOT_FOUND


def test_default_fallback_synthesizes_disabled_flag() -> None:
    """fallback=default では未知のキーを default_value の無効フラグとして扱う。"""
    config = make_config(fallback={"behavior": "default", "default_value": "off"})
    service, origin = make_service([SINGLE_RULE_EQUALS], config=config)
    origin.fail_with(ConnectionError("down"))
    outcome = service.evaluate("single-rule-equals")
    assert outcome.value == "off"
    assert outcome.match_reason == MatchReason.DISABLED


def test_exception_fallback_raises_sync_error() -> None:
    """fallback=exception では FlagSyncError を送出し、原因を連鎖する。"""
    config = make_config(fallback={"behavior": "exception"})
    service, origin = make_service([SINGLE_RULE_EQUALS], config=config)
    origin.fail_with(ConnectionError("down"))
    with pytest.raises(FlagSyncError) as exc_info:
        service.sync()
    assert isinstance(exc_info.value.__cause__, OriginUnavailableError)
    with pytest.raises(FlagSyncError):
        service.value("single-rule-equals")


def test_open_breaker_skips_origin() -> None:
    """ブレーカーが開いている間はオリジンを呼ばず、クールダウン後に再試行する。"""
    clock = FakeClock()
    breaker = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=30), clock=clock
    )
    origin = InMemoryOriginClient(FlagsPayload(flags=[SINGLE_RULE_EQUALS]), breaker=breaker)
    service, _ = make_service(origin=origin)
    origin.fail_with(ConnectionError("down"))
    service.sync()
    service.sync()
    service.sync()
    assert origin.fetch_count == 2
    clock.advance(30)
    origin.fail_with(None)
    service.sync()
    assert origin.fetch_count == 3
    assert service.store.get("single-rule-equals") is not None


def test_dependency_satisfied_through_store() -> None:
    """依存フラグはストアから引いて評価する。"""
    flags = [
        {"key": "parent", "enabled": True, "default_value": True},
        {
            "key": "child",
            "enabled": True,
            "default_value": "on",
            "dependencies": [{"flag_key": "parent", "required_value": True}],
        },
    ]
    service, _ = make_service(flags)
    outcome = service.evaluate("child", {"id": "u1"})
    assert (outcome.value, outcome.match_reason) == ("on", MatchReason.DEFAULT)


def test_missing_dependency_is_unmet() -> None:
    """依存フラグが存在しなければ dependency。"""
    flags = [
        {
            "key": "child",
            "enabled": True,
            "default_value": "off",
            "rules": [{"conditions": [], "value": "on"}],
            "dependencies": [{"flag_key": "ghost", "required_value": True}],
        },
    ]
    service, _ = make_service(flags)
    outcome = service.evaluate("child", {"id": "u1"})
    assert (outcome.value, outcome.match_reason) == ("off", MatchReason.DEPENDENCY)


def test_missing_dependency_with_null_requirement_is_unmet() -> None:
    """依存先が存在しなければ required_value が null でも満たされない。"""
    flags = [
        {
            "key": "child",
            "enabled": True,
            "default_value": "child-default",
            "rules": [{"conditions": [], "value": "child-rule"}],
            "dependencies": [{"flag_key": "gone", "required_value": None}],
        },
    ]
    service, _ = make_service(flags)
    outcome = service.evaluate("child", {"id": "u1"})
    assert (outcome.value, outcome.match_reason) == ("child-default", MatchReason.DEPENDENCY)


def test_default_fallback_does_not_satisfy_dependencies() -> None:
    """fallback=default の合成フラグは依存先として扱わない。"""
    flags = [
        {
            "key": "child",
            "enabled": True,
            "default_value": "child-default",
            "rules": [{"conditions": [], "value": "child-rule"}],
            "dependencies": [{"flag_key": "gone", "required_value": True}],
        },
    ]
    config = make_config(fallback={"behavior": "default", "default_value": True})
    service, _ = make_service(flags, config=config)
    outcome = service.evaluate("child", {"id": "u1"})
    assert (outcome.value, outcome.match_reason) == ("child-default", MatchReason.DEPENDENCY)


def test_circular_dependency_degrades_to_default() -> None:
    """循環依存は評価を失敗させず、ルートのフラグの既定値 (dependency) に落とす。"""
    flags = [
        {
            "key": "flag-a",
            "enabled": True,
            "default_value": "a-default",
            "dependencies": [{"flag_key": "flag-b", "required_value": True}],
        },
        {
            "key": "flag-b",
            "enabled": True,
            "default_value": True,
            "dependencies": [{"flag_key": "flag-a", "required_value": True}],
        },
    ]
    service, _ = make_service(flags)
    with capture_logs() as logs:
        outcome = service.evaluate("flag-a", {"id": "u1"})
    assert (outcome.value, outcome.match_reason, outcome.matched_rule_index) == (
        "a-default",
        MatchReason.DEPENDENCY,
        None,
    )
    cycles = [log for log in logs if log["event"] == "flag_circular_dependency"]
    assert len(cycles) == 1
    assert cycles[0]["flag_key"] == "flag-a"
    assert cycles[0]["detected_at"] == "flag-a"


def test_local_mode_never_contacts_origin() -> None:
    """ローカルモードではオリジンに一切アクセスしない。"""
    config = make_config(local={"enabled": True, "flags": {"theme": "dark"}})
    service, origin = make_service([SINGLE_RULE_EQUALS], config=config)
    assert service.is_local_mode() is True
    assert service.value("theme") == "dark"
    service.sync()
    service.sync_if_needed()
    assert [f.key for f in service.all()] == ["theme"]
    assert origin.fetch_count == 0


def test_evaluation_is_recorded() -> None:
    """評価結果は評価記録とテレメトリへ流れる。"""
    config = make_config(telemetry={"enabled": True})
    service, _ = make_service([SINGLE_RULE_EQUALS], config=config)
    service.value("single-rule-equals", {"id": "u1", "plan": "pro"})
    assert service.state_tracker.get_value("single-rule-equals") is True
    [event] = service.evaluations.pending()
    assert event["flag_key"] == "single-rule-equals"
    assert event["match_reason"] == "rule"
    assert event["matched_rule_index"] == 0


def test_lifecycle_events_are_dispatched() -> None:
    """同期と評価のたびにイベントを配信する。"""
    dispatcher = EventDispatcher()
    synced: list[FlagSyncCompleted] = []
    evaluated: list[FlagEvaluated] = []
    dispatcher.subscribe(FlagSyncCompleted, synced.append)
    dispatcher.subscribe(FlagEvaluated, evaluated.append)
    service, _ = make_service(
        [SINGLE_RULE_EQUALS], segments=[{"key": "beta"}], dispatcher=dispatcher
    )
    service.value("single-rule-equals", {"id": "u1", "plan": "pro"})
    assert [(e.flag_count, e.segment_count, e.source) for e in synced] == [(1, 1, "api")]
    [event] = evaluated
    assert event.flag_key == "single-rule-equals"
    assert event.value is True
    assert event.match_reason == "rule"
    assert event.matched_rule_index == 0
    assert event.context_id == "u1"


def test_flush_forces_resync() -> None:
    """flush 後の評価では再同期する。"""
    service, origin = make_service([SINGLE_RULE_EQUALS])
    assert [f.key for f in service.all()] == ["single-rule-equals"]
    service.flush()
    service.value("single-rule-equals")
    assert origin.fetch_count == 2
