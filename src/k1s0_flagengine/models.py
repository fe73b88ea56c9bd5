"""flagengine データモデル"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

FlagValue = Union[bool, int, float, str, dict[str, Any], None]


def normalize_value(value: Any) -> FlagValue:
    """フラグ値を bool/int/float/str/dict/None のいずれかに正規化する。

    それ以外の型（list やオブジェクト）は None に潰す。
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, dict):
        return value
    return None


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _as_int(value: Any, default: int | None) -> int | None:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return default
    return default


class MatchReason(StrEnum):
    """評価結果の理由。"""

    DISABLED = "disabled"
    DEPENDENCY = "dependency"
    RULE = "rule"
    ROLLOUT = "rollout"
    ROLLOUT_MISS = "rollout_miss"
    DEFAULT = "default"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Condition:
    """ルール条件。trait 条件または segment 条件。"""

    trait: str = ""
    operator: str = "equals"
    value: Any = None
    type: str = "trait"
    segment: str = ""

    @property
    def is_segment(self) -> bool:
        return self.type == "segment"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            trait=str(data.get("trait") or ""),
            operator=str(data.get("operator") or "equals"),
            value=data.get("value"),
            type=str(data.get("type") or "trait"),
            segment=str(data.get("segment") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        if self.is_segment:
            return {"type": "segment", "segment": self.segment}
        return {"trait": self.trait, "operator": self.operator, "value": self.value}


def _conditions(data: dict[str, Any]) -> list[Condition]:
    return [
        Condition.from_dict(c) for c in _as_list(data.get("conditions")) if isinstance(c, dict)
    ]


@dataclass(frozen=True)
class Rule:
    """フラグのターゲティングルール。条件は AND で結合する。"""

    priority: int = 0
    conditions: list[Condition] = field(default_factory=list)
    value: FlagValue = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rule:
        return cls(
            priority=_as_int(data.get("priority"), 0) or 0,
            conditions=_conditions(data),
            value=normalize_value(data.get("value")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "conditions": [c.to_dict() for c in self.conditions],
            "value": self.value,
        }


@dataclass(frozen=True)
class Dependency:
    """フラグ間依存。flag_key のフラグが required_value に解決される必要がある。"""

    flag_key: str
    required_value: FlagValue = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Dependency | None:
        flag_key = data.get("flag_key")
        if not isinstance(flag_key, str) or flag_key == "":
            return None
        return cls(flag_key=flag_key, required_value=normalize_value(data.get("required_value")))

    def to_dict(self) -> dict[str, Any]:
        return {"flag_key": self.flag_key, "required_value": self.required_value}


@dataclass(frozen=True)
class Flag:
    """フィーチャーフラグ定義。"""

    key: str
    enabled: bool = False
    default_value: FlagValue = None
    rules: list[Rule] = field(default_factory=list)
    rollout_percentage: int | None = None
    dependencies: list[Dependency] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flag:
        """API レスポンス辞書から Flag を生成する。未知のキーは無視する。"""
        dependencies = []
        for raw in _as_list(data.get("dependencies")):
            if isinstance(raw, dict) and (dep := Dependency.from_dict(raw)) is not None:
                dependencies.append(dep)
        return cls(
            key=str(data.get("key") or ""),
            enabled=data.get("enabled") is True,
            default_value=normalize_value(data.get("default_value")),
            rules=[Rule.from_dict(r) for r in _as_list(data.get("rules")) if isinstance(r, dict)],
            rollout_percentage=_as_int(data.get("rollout_percentage"), None),
            dependencies=dependencies,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "enabled": self.enabled,
            "default_value": self.default_value,
            "rules": [r.to_dict() for r in self.rules],
        }
        if self.rollout_percentage is not None:
            data["rollout_percentage"] = self.rollout_percentage
        if self.dependencies:
            data["dependencies"] = [d.to_dict() for d in self.dependencies]
        return data


@dataclass(frozen=True)
class SegmentRule:
    """セグメントルール。条件は AND で結合する。"""

    conditions: list[Condition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SegmentRule:
        return cls(conditions=_conditions(data))


@dataclass(frozen=True)
class Segment:
    """名前付きオーディエンス。ルールのいずれかに一致すればメンバー。"""

    key: str
    rules: list[SegmentRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Segment:
        return cls(
            key=str(data.get("key") or ""),
            rules=[
                SegmentRule.from_dict(r) for r in _as_list(data.get("rules")) if isinstance(r, dict)
            ],
        )


@dataclass(frozen=True)
class EvaluationOutcome:
    """フラグ評価結果。"""

    value: FlagValue
    match_reason: MatchReason
    matched_rule_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "matched_rule_index": self.matched_rule_index,
            "match_reason": self.match_reason.value,
        }
