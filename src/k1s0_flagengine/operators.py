"""ルール条件の演算子評価"""

from __future__ import annotations

import json
import re
import threading
from datetime import date, datetime, timezone
from typing import Any, Callable

import structlog

from .bucket import in_percentage

logger = structlog.get_logger(__name__)

_NUMERIC_RE = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")
_DELIMITED_RE = re.compile(r"^([/#~!@%|])(.*)\1([imsxu]*)$", re.DOTALL)
_SEMVER_RE = re.compile(r"^[vV]?(\d+(?:\.\d+)*)(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMERIC_RE.match(value):
        return float(value)
    return None


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value not in ("", "0")
    return bool(value)


def loose_equals(actual: Any, expected: Any) -> bool:
    """緩い等価比較。数値文字列と数値は数値として比較する。"""
    if actual is None or expected is None:
        return actual is None and expected is None
    if isinstance(actual, bool) or isinstance(expected, bool):
        return _truthy(actual) == _truthy(expected)
    a, b = _to_number(actual), _to_number(expected)
    if a is not None and b is not None:
        return a == b
    return bool(actual == expected)


def _both_str(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and isinstance(expected, str)


def _semver_key(version: str) -> tuple[tuple[int, ...], int, tuple[tuple[int, Any], ...]] | None:
    m = _SEMVER_RE.match(version.strip())
    if m is None:
        return None
    core = tuple(int(part) for part in m.group(1).split("."))
    pre = m.group(2)
    if pre is None:
        return core, 1, ()
    ids = tuple((0, int(p)) if p.isdigit() else (1, p) for p in pre.split("."))
    return core, 0, ids


def compare_semver(a: str, b: str) -> int | None:
    """セマンティックバージョンを比較する。解析できなければ None。"""
    ka, kb = _semver_key(a), _semver_key(b)
    if ka is None or kb is None:
        return None
    width = max(len(ka[0]), len(kb[0]))
    ca = ka[0] + (0,) * (width - len(ka[0]))
    cb = kb[0] + (0,) * (width - len(kb[0]))
    left = (ca, ka[1], ka[2])
    right = (cb, kb[1], kb[2])
    return (left > right) - (left < right)


def to_datetime(value: Any) -> datetime | None:
    """日付らしい値を timezone 付き datetime に変換する。変換できなければ None。"""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip() != "":
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return None


def stringify(value: Any) -> str:
    """percentage_of のシードに使う文字列表現。"""
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, separators=(",", ":"), sort_keys=False, default=str)


class OperatorMatcher:
    """(actual, operator, expected) の三つ組を真偽値に評価する。

    未知の演算子は False（フェイルクローズ）。不正な正規表現は例外にせず False を返し、
    パターンごとに一度だけ警告ログを出す。
    """

    def __init__(self) -> None:
        self._logged_bad_patterns: set[str] = set()
        self._lock = threading.Lock()
        self._operators: dict[str, Callable[[Any, Any, str], bool]] = {
            "equals": lambda a, e, _: loose_equals(a, e),
            "not_equals": lambda a, e, _: not loose_equals(a, e),
            "contains": lambda a, e, _: _both_str(a, e) and e in a,
            "not_contains": lambda a, e, _: _both_str(a, e) and e not in a,
            "starts_with": lambda a, e, _: _both_str(a, e) and a.startswith(e),
            "ends_with": lambda a, e, _: _both_str(a, e) and a.endswith(e),
            "matches_regex": lambda a, e, _: self._matches_regex(a, e),
            "gt": lambda a, e, _: self._compare_numbers(a, e, lambda x, y: x > y),
            "gte": lambda a, e, _: self._compare_numbers(a, e, lambda x, y: x >= y),
            "lt": lambda a, e, _: self._compare_numbers(a, e, lambda x, y: x < y),
            "lte": lambda a, e, _: self._compare_numbers(a, e, lambda x, y: x <= y),
            "in": lambda a, e, _: isinstance(e, (list, tuple))
            and any(loose_equals(a, item) for item in e),
            "not_in": lambda a, e, _: isinstance(e, (list, tuple))
            and not any(loose_equals(a, item) for item in e),
            "semver_gt": lambda a, e, _: self._compare_semver(a, e, lambda c: c > 0),
            "semver_gte": lambda a, e, _: self._compare_semver(a, e, lambda c: c >= 0),
            "semver_lt": lambda a, e, _: self._compare_semver(a, e, lambda c: c < 0),
            "semver_lte": lambda a, e, _: self._compare_semver(a, e, lambda c: c <= 0),
            "before_date": lambda a, e, _: self._compare_dates(a, e, lambda x, y: x < y),
            "after_date": lambda a, e, _: self._compare_dates(a, e, lambda x, y: x > y),
            "percentage_of": self._percentage_of,
        }

    def match(self, actual: Any, operator: str, expected: Any, flag_key: str = "") -> bool:
        fn = self._operators.get(operator)
        if fn is None:
            return False
        return fn(actual, expected, flag_key)

    def _matches_regex(self, actual: Any, pattern: Any) -> bool:
        if not _both_str(actual, pattern):
            return False
        try:
            return _compile(pattern).search(actual) is not None
        except re.error as e:
            with self._lock:
                first = pattern not in self._logged_bad_patterns
                self._logged_bad_patterns.add(pattern)
            if first:
                logger.warning("flag_regex_evaluation_failed", pattern=pattern, error=str(e))
            return False

    @staticmethod
    def _compare_numbers(actual: Any, expected: Any, op: Callable[[float, float], bool]) -> bool:
        a, e = _to_number(actual), _to_number(expected)
        return a is not None and e is not None and op(a, e)

    @staticmethod
    def _compare_semver(actual: Any, expected: Any, op: Callable[[int], bool]) -> bool:
        if not _both_str(actual, expected):
            return False
        result = compare_semver(actual, expected)
        return result is not None and op(result)

    @staticmethod
    def _compare_dates(
        actual: Any, expected: Any, op: Callable[[datetime, datetime], bool]
    ) -> bool:
        a, e = to_datetime(actual), to_datetime(expected)
        return a is not None and e is not None and op(a, e)

    @staticmethod
    def _percentage_of(actual: Any, percentage: Any, flag_key: str) -> bool:
        pct_number = _to_number(percentage)
        if pct_number is None:
            return False
        pct = int(pct_number)
        if pct >= 100:
            return True
        if pct <= 0 or actual is None:
            return False
        return in_percentage(f"{flag_key}:{stringify(actual)}", pct)


def _compile(pattern: str) -> re.Pattern[str]:
    m = _DELIMITED_RE.match(pattern)
    if m is None:
        return re.compile(pattern)
    flags = 0
    for ch in m.group(3):
        flags |= _REGEX_FLAGS.get(ch, 0)
    return re.compile(m.group(2), flags)
