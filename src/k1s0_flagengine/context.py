"""評価コンテキスト定義"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol, Union, runtime_checkable

_MISSING = object()


@dataclass(frozen=True)
class Context:
    """フラグ評価の対象となる ID とトレイトの組。生成後は変更できない。"""

    id: str | int
    traits: Mapping[str, Any] = field(default_factory=dict)
    device_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "traits", MappingProxyType(dict(self.traits)))

    @property
    def bucketing_id(self) -> str:
        """ロールアウト判定に使う ID。device_id があればそちらを優先する。"""
        return self.device_id if self.device_id is not None else str(self.id)

    def get(self, trait: str, default: Any = None) -> Any:
        """トレイト値を取得する。"plan.name" のようなドット区切りでネストを辿る。"""
        value = _lookup(self.traits, trait)
        return default if value is _MISSING else value

    def has(self, trait: str) -> bool:
        return _lookup(self.traits, trait) is not _MISSING

    def with_traits(self, traits: Mapping[str, Any]) -> Context:
        """traits を上書きした新しい Context を返す。"""
        return Context(self.id, {**self.traits, **traits}, self.device_id)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "traits": dict(self.traits), "device_id": self.device_id}


def _lookup(traits: Mapping[str, Any], path: str) -> Any:
    if path in traits:
        return traits[path]
    node: Any = traits
    for part in path.split("."):
        if isinstance(node, Mapping) and part in node:
            node = node[part]
        else:
            return _MISSING
    return node


@runtime_checkable
class HasFlagContext(Protocol):
    """フラグコンテキストを提供できるオブジェクト（認証済みユーザーモデルなど）。"""

    def to_feature_flag_context(self) -> dict[str, Any]:
        """'id' キーを含むトレイト辞書を返す。"""
        ...


class VersionResolver(Protocol):
    """semver ターゲティング用のバージョントレイトを解決するプロトコル。"""

    def resolve(self) -> Mapping[str, str | None]: ...


ContextSource = Union[Context, HasFlagContext, Mapping[str, Any], None]
