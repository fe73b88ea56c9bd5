"""Context / ContextResolver / ContextNormalizer のユニットテスト"""

import dataclasses
from typing import Any

import pytest

from k1s0_flagengine import Context, ContextNormalizer, ContextResolver


class User:
    def __init__(self, user_id: int, plan: str) -> None:
        self.user_id = user_id
        self.plan = plan

    def to_feature_flag_context(self) -> dict[str, Any]:
        return {"id": self.user_id, "plan": self.plan}


class AnonymousVisitor:
    def to_feature_flag_context(self) -> dict[str, Any]:
        return {"country": "JP"}

    def get_auth_identifier(self) -> str:
        return "visitor-9"


class StaticVersions:
    def __init__(self, versions: dict[str, str | None]) -> None:
        self._versions = versions

    def resolve(self) -> dict[str, str | None]:
        return self._versions


def make_normalizer(
    principal: object | None = None,
    versions: dict[str, str | None] | None = None,
    auto_resolve: bool = True,
) -> ContextNormalizer:
    resolver = ContextResolver(
        principal_provider=lambda: principal,
        version_resolver=StaticVersions(versions) if versions is not None else None,
        auto_resolve=auto_resolve,
    )
    return ContextNormalizer(resolver)


def test_context_dotted_lookup() -> None:
    """ドット区切りでネストしたトレイトを参照できる。"""
    ctx = Context("u1", {"plan": {"name": "pro", "seats": 5}})
    assert ctx.get("plan.name") == "pro"
    assert ctx.get("plan.seats") == 5
    assert ctx.get("plan.missing") is None
    assert ctx.get("missing", "fallback") == "fallback"
    assert ctx.has("plan.name") is True
    assert ctx.has("plan.missing") is False


def test_context_exact_key_wins_over_path() -> None:
    """ドットを含むキーがそのまま存在すればそちらを優先する。"""
    ctx = Context("u1", {"app.version": "2.0.0", "app": {"version": "1.0.0"}})
    assert ctx.get("app.version") == "2.0.0"


def test_context_is_immutable() -> None:
    """生成後の Context は変更できない。"""
    source = {"plan": "pro"}
    ctx = Context("u1", source)
    source["plan"] = "free"
    assert ctx.get("plan") == "pro"
    with pytest.raises(TypeError):
        ctx.traits["plan"] = "free"  # type: ignore[index]
    with pytest.raises(dataclasses.FrozenInstanceError):
        ctx.id = "u2"  # type: ignore[misc]


def test_context_bucketing_id() -> None:
    """bucketing_id は device_id を優先する。"""
    assert Context(42).bucketing_id == "42"
    assert Context(42, device_id="dev-1").bucketing_id == "dev-1"


def test_context_with_traits() -> None:
    """with_traits は元の Context を変えずに新しい Context を返す。"""
    ctx = Context("u1", {"plan": "free"})
    upgraded = ctx.with_traits({"plan": "pro"})
    assert upgraded.get("plan") == "pro"
    assert ctx.get("plan") == "free"


def test_normalize_mapping_with_traits_key() -> None:
    """traits キーを持つ辞書。"""
    ctx = make_normalizer().normalize({"id": "u1", "traits": {"plan": "pro"}})
    assert ctx is not None
    assert ctx.id == "u1"
    assert dict(ctx.traits) == {"plan": "pro"}


def test_normalize_flat_mapping() -> None:
    """traits キーがなければ id 以外のキーをトレイトとして扱う。"""
    ctx = make_normalizer().normalize({"id": 7, "plan": "pro", "country": "JP"})
    assert ctx is not None
    assert ctx.id == 7
    assert dict(ctx.traits) == {"plan": "pro", "country": "JP"}


def test_normalize_mapping_without_id() -> None:
    """id のない辞書はコンテキストにならない。"""
    assert make_normalizer().normalize({"plan": "pro"}) is None


def test_normalize_provider() -> None:
    """to_feature_flag_context を持つオブジェクト。"""
    ctx = make_normalizer().normalize(User(1, "pro"))
    assert ctx is not None
    assert ctx.id == 1
    assert ctx.get("plan") == "pro"
    assert ctx.has("id") is False


def test_normalize_provider_without_id_uses_auth_identifier() -> None:
    """id を返さないプロバイダーは get_auth_identifier を使う。"""
    ctx = make_normalizer().normalize(AnonymousVisitor())
    assert ctx is not None
    assert ctx.id == "visitor-9"


def test_normalize_none_resolves_principal() -> None:
    """コンテキスト未指定ならプリンシパルから解決する。"""
    ctx = make_normalizer(principal=User(3, "team")).normalize(None)
    assert ctx is not None
    assert ctx.id == 3


def test_normalize_none_without_auto_resolve() -> None:
    """auto_resolve が無効ならプリンシパルを参照しない。"""
    assert make_normalizer(principal=User(3, "team"), auto_resolve=False).normalize(None) is None


def test_normalize_none_without_principal() -> None:
    """プリンシパルがいなければ None。"""
    assert make_normalizer().normalize(None) is None


def test_version_traits_merged_and_explicit_traits_win() -> None:
    """バージョントレイトはマージされるが、明示したトレイトが優先される。"""
    normalizer = make_normalizer(versions={"app_version": "2.1.0", "plan": "ignored"})
    ctx = normalizer.normalize(Context("u1", {"plan": "pro"}, device_id="dev-1"))
    assert ctx is not None
    assert ctx.get("app_version") == "2.1.0"
    assert ctx.get("plan") == "pro"
    assert ctx.device_id == "dev-1"


def test_unsupported_source_is_none() -> None:
    """未対応の型は None。"""
    assert make_normalizer().normalize(12345) is None  # type: ignore[arg-type]
