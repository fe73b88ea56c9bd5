"""フラグ評価ロジック"""

from __future__ import annotations

from typing import Any, Callable

from .bucket import in_percentage
from .context import Context
from .exceptions import CircularDependencyError
from .models import (
    Condition,
    EvaluationOutcome,
    Flag,
    FlagValue,
    MatchReason,
    Rule,
    normalize_value,
)
from .operators import OperatorMatcher
from .store import FlagStore

# 依存フラグのキーから (見つかったか, 評価値) を返す
DependencyResolver = Callable[[str, "Context | None", tuple[str, ...]], "tuple[bool, FlagValue]"]

ROLLOUT_RULE_INDEX = -1


def _strict_equals(actual: Any, required: Any) -> bool:
    """依存値の比較。型まで一致する必要がある（True と 1 は別物）。"""
    return type(actual) is type(required) and actual == required


class FlagEvaluator:
    """1 つのフラグを値と一致理由に解決する。

    評価順序:
        1. 評価中スタックに自身があれば CircularDependencyError
        2. 無効化されていれば default_value (disabled)
        3. 依存フラグが存在しないか、required_value に解決されなければ default_value (dependency)
        4. コンテキストがあればルールを (priority, 定義順) で評価し、最初に一致したルールの値 (rule)
        5. ロールアウト判定 (rollout / rollout_miss / default)

    Args:
        store: セグメント参照に使うストア
        matcher: 演算子評価器
    """

    def __init__(self, store: FlagStore, matcher: OperatorMatcher | None = None) -> None:
        self._store = store
        self._matcher = matcher or OperatorMatcher()

    def evaluate(
        self,
        flag: Flag,
        context: Context | None,
        evaluating: tuple[str, ...],
        resolve_dependency: DependencyResolver,
    ) -> EvaluationOutcome:
        if flag.key in evaluating:
            raise CircularDependencyError(flag.key)

        if not flag.enabled:
            return _outcome(flag.default_value, MatchReason.DISABLED)

        if not self._dependencies_satisfied(flag, context, evaluating, resolve_dependency):
            return _outcome(flag.default_value, MatchReason.DEPENDENCY)

        if flag.rules and context is not None:
            matched = self._match_rules(flag, context)
            if matched is not None:
                index, rule = matched
                return _outcome(rule.value, MatchReason.RULE, index)

        return self._evaluate_rollout(flag, context)

    def _dependencies_satisfied(
        self,
        flag: Flag,
        context: Context | None,
        evaluating: tuple[str, ...],
        resolve_dependency: DependencyResolver,
    ) -> bool:
        if not flag.dependencies:
            return True
        stack = evaluating + (flag.key,)
        for dependency in flag.dependencies:
            found, actual = resolve_dependency(dependency.flag_key, context, stack)
            if not found:
                return False
            required = normalize_value(dependency.required_value)
            if not _strict_equals(normalize_value(actual), required):
                return False
        return True

    def _match_rules(self, flag: Flag, context: Context) -> tuple[int, Rule] | None:
        ordered = sorted(enumerate(flag.rules), key=lambda item: (item[1].priority, item[0]))
        for index, rule in ordered:
            if all(self._condition_matches(c, context, flag.key) for c in rule.conditions):
                return index, rule
        return None

    def _condition_matches(self, condition: Condition, context: Context, flag_key: str) -> bool:
        if condition.is_segment:
            return self._segment_matches(condition.segment, context, flag_key)
        return self._trait_matches(condition, context, flag_key)

    def _trait_matches(self, condition: Condition, context: Context, flag_key: str) -> bool:
        if condition.trait == "":
            return False
        actual = context.get(condition.trait)
        return self._matcher.match(actual, condition.operator, condition.value, flag_key)

    def _segment_matches(self, segment_key: str, context: Context, flag_key: str) -> bool:
        if segment_key == "":
            return False
        segment = self._store.get_segment(segment_key)
        if segment is None:
            return False
        # セグメントのネストは不可。セグメントルール内の条件はすべてトレイト条件として扱う
        return any(
            rule.conditions
            and all(self._trait_matches(c, context, flag_key) for c in rule.conditions)
            for rule in segment.rules
        )

    @staticmethod
    def _evaluate_rollout(flag: Flag, context: Context | None) -> EvaluationOutcome:
        percentage = flag.rollout_percentage
        if percentage is None:
            return _outcome(flag.default_value, MatchReason.DEFAULT)
        if percentage >= 100:
            return _outcome(flag.default_value, MatchReason.ROLLOUT, ROLLOUT_RULE_INDEX)
        if percentage <= 0 or context is None:
            return _outcome(False, MatchReason.ROLLOUT_MISS)
        if in_percentage(flag.key + context.bucketing_id, percentage):
            return _outcome(flag.default_value, MatchReason.ROLLOUT, ROLLOUT_RULE_INDEX)
        return _outcome(False, MatchReason.ROLLOUT_MISS)


def _outcome(
    value: Any, reason: MatchReason, matched_rule_index: int | None = None
) -> EvaluationOutcome:
    return EvaluationOutcome(normalize_value(value), reason, matched_rule_index)
