"""FlagStateTracker と RequestScope のユニットテスト"""

import threading
from datetime import datetime

from k1s0_flagengine import Context, FlagStateTracker, RequestScope


def test_tracker_records_latest_value() -> None:
    """同じキーは最後に評価した値で上書きされる。"""
    tracker = FlagStateTracker()
    tracker.record("a", False)
    tracker.record("a", True, Context("u1"))
    tracker.record("b", "blue")
    assert tracker.evaluated_flags() == {"a": True, "b": "blue"}
    assert tracker.count() == 2
    assert tracker.was_evaluated("a") is True
    assert tracker.was_evaluated("c") is False
    assert tracker.get_value("c") is None


def test_tracker_metadata() -> None:
    """メタデータには評価時刻とコンテキスト ID を含む。"""
    tracker = FlagStateTracker()
    tracker.record("a", True, Context("u1"))
    entry = tracker.with_metadata()["a"]
    assert entry["value"] is True
    assert entry["context_id"] == "u1"
    assert datetime.fromisoformat(entry["timestamp"]).tzinfo is not None


def test_tracker_reset_and_error_context() -> None:
    """reset で記録を消去する。"""
    tracker = FlagStateTracker()
    tracker.record("a", True)
    assert tracker.to_error_context("req-1") == {
        "flags": {"a": True},
        "count": 1,
        "request_id": "req-1",
    }
    tracker.reset()
    assert tracker.to_error_context() == {"flags": {}, "count": 0, "request_id": None}


def test_tracker_error_context_is_consistent_under_concurrent_records() -> None:
    """別スレッドが記録中でも、エラーコンテキストの flags と count は一致する。"""
    tracker = FlagStateTracker()

    def writer() -> None:
        for i in range(2000):
            tracker.record(f"flag-{i}", True)

    thread = threading.Thread(target=writer)
    thread.start()
    try:
        for _ in range(200):
            error_context = tracker.to_error_context()
            assert error_context["count"] == len(error_context["flags"])
            tracker.was_evaluated("flag-0")
            tracker.get_value("flag-0")
    finally:
        thread.join()
    assert tracker.count() == 2000


def test_scope_session_falls_back_to_request_id() -> None:
    """セッション ID が取れなければ request_id を使う。"""
    scope = RequestScope()
    scope.initialize()
    assert scope.initialized is True
    assert scope.request_id is not None
    assert scope.session_id == scope.request_id


def test_scope_uses_session_provider() -> None:
    """session_id_provider の値をセッション ID に使う。"""
    scope = RequestScope(lambda: "sess-1")
    scope.initialize()
    assert scope.session_id == "sess-1"
    assert scope.to_dict() == {"session_id": "sess-1", "request_id": scope.request_id}


def test_scope_device_id_is_stable_until_reset() -> None:
    """デバイス ID はスコープ内で一定で、reset で作り直される。"""
    scope = RequestScope()
    first = scope.device_id
    assert scope.device_id == first
    scope.reset()
    assert scope.device_id != first
    scope.device_id = "dev-1"
    assert scope.device_id == "dev-1"


def test_scope_consent_is_reset() -> None:
    """同意状態は reset で未設定に戻る。"""
    scope = RequestScope()
    assert scope.has_consent is False
    scope.grant_consent()
    assert scope.has_consent is True
    scope.revoke_consent()
    assert scope.has_consent is False
    scope.grant_consent()
    scope.reset()
    assert scope.has_consent is False
    assert scope.request_id is None
