"""フラグ評価エンジン

フラグ定義とコンテキストから有効な値を計算する純粋関数群。不正なデータでも
例外は送出せず、適用できないルールは不一致として扱う。
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import xxhash

from .models import Flag, Operator, Rule, is_number, stringify

logger = logging.getLogger(__name__)

# 1990-01-01T00:00:00Z のミリ秒値。これより小さいタイムスタンプは秒とみなす
EPOCH_SECONDS_THRESHOLD = 631_152_000_000

MAX_PATTERN_CACHE_SIZE = 256

_UINT32_MAX = 0xFFFFFFFF
_AFTER_TEMPLATE = "2000-01-01T23:59:59"
_BEFORE_TEMPLATE = "2000-01-01T00:00:00"
_INT_RE = re.compile(r"[+-]?[0-9]+")

_pattern_cache: dict[str, re.Pattern[str]] = {}


def eval_flag(context: Mapping[str, Any], flag: Flag) -> Any:
    """context に対するフラグの値を返す。値がなければ None。

    全ルールが一致した最初の条件で結果が決まる。その条件のバリエーションが
    active でなくても、後続の条件やデフォルトには進まない。
    """
    for condition in flag.conditions:
        if eval_rules(context, condition.rules):
            variation = condition.variation
            return variation.value if variation.active else None
    default = flag.default_variation
    return default.value if default.active else None


def eval_rules(context: Mapping[str, Any], rules: Sequence[Rule]) -> bool:
    """全ルールを AND で評価する。最初の不一致で打ち切る。"""
    for rule in rules:
        if not eval_rule(rule, context.get(rule.key)):
            return False
    return True


def eval_rule(rule: Rule, value: Any) -> bool:
    """rule.key のコンテキスト値に対してルールを 1 件評価する。"""
    op = rule.operator
    if op is Operator.UNKNOWN:
        logger.warning(
            "Skipping rule with unknown operator",
            extra={"rule_key": rule.key, "operator": rule.operator_tag},
        )
        return False

    if op is Operator.EMPTY:
        return (value is None or value == "") != rule.negate

    # 値がなければ negate に関係なく不一致
    if value is None:
        return False

    handler = _HANDLERS.get(op)
    if handler is None:
        return False
    matches = handler(rule, value)
    if matches is None:
        return False
    return matches != rule.negate


# ハンドラは一致結果を返す。値やルールのパラメータが演算子に合わない場合は
# None を返し、negate を適用する前に不一致とする


def _eval_true(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, bool):
        return None
    return value


def _eval_str_equal(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or rule.values is None:
        return None
    return value in rule.values


def _eval_str_equal_soft(rule: Rule, value: Any) -> bool | None:
    if not (isinstance(value, str) or is_number(value)) or rule.values is None:
        return None
    return stringify(value).lower() in rule.values


def _eval_str_contains(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or rule.values is None:
        return None
    return any(v in value for v in rule.values)


def _eval_str_starts_with(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or rule.values is None:
        return None
    return any(value.startswith(v) for v in rule.values)


def _eval_str_ends_with(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or rule.values is None:
        return None
    return any(value.endswith(v) for v in rule.values)


def _eval_str_after(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or rule.value is None:
        return None
    return value >= rule.value


def _eval_str_before(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or rule.value is None:
        return None
    return value <= rule.value


def _compile(pattern: str) -> re.Pattern[str]:
    compiled = _pattern_cache.get(pattern)
    if compiled is None:
        if len(_pattern_cache) >= MAX_PATTERN_CACHE_SIZE:
            _pattern_cache.clear()
        compiled = re.compile(pattern)
        _pattern_cache[pattern] = compiled
    return compiled


def _eval_regexp(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or rule.value is None:
        return None
    try:
        compiled = _compile(rule.value)
    except re.error:
        return None
    return compiled.search(value) is not None


def _eval_eq(rule: Rule, value: Any) -> bool | None:
    if not is_number(value) or rule.numeric_value is None:
        return None
    return float(value) == rule.numeric_value


def _eval_lt(rule: Rule, value: Any) -> bool | None:
    if not is_number(value) or rule.numeric_value is None:
        return None
    return float(value) < rule.numeric_value


def _eval_gt(rule: Rule, value: Any) -> bool | None:
    if not is_number(value) or rule.numeric_value is None:
        return None
    return float(value) > rule.numeric_value


def _eval_arr_overlap(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, (list, tuple, set, frozenset)) or rule.values is None:
        return None
    return any(stringify(item) in rule.values for item in value)


def _pad_to(value: str, template: str) -> str:
    if len(value) < len(template):
        return value + template[len(value):]
    return value[: len(template)]


def _epoch_millis(value: int | float) -> int | None:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    millis = int(value)
    if millis < EPOCH_SECONDS_THRESHOLD:
        millis *= 1000
    return millis


def _eval_date_after(rule: Rule, value: Any) -> bool | None:
    if isinstance(value, str):
        if rule.iso is None:
            return None
        return rule.iso <= _pad_to(value, _AFTER_TEMPLATE)
    if is_number(value):
        millis = _epoch_millis(value)
        if rule.timestamp is None or millis is None:
            return None
        return millis >= rule.timestamp
    return None


def _eval_date_before(rule: Rule, value: Any) -> bool | None:
    if isinstance(value, str):
        if rule.iso is None:
            return None
        return rule.iso >= _pad_to(value, _BEFORE_TEMPLATE)
    if is_number(value):
        millis = _epoch_millis(value)
        if rule.timestamp is None or millis is None:
            return None
        return millis <= rule.timestamp
    return None


def parse_semver(version: str) -> list[int]:
    """ドットで分割する。整数でない要素は 0 とみなす。"""
    parts = version.split(".")
    while len(parts) > 1 and parts[-1] == "":
        parts.pop()
    return [int(p) if _INT_RE.fullmatch(p) else 0 for p in parts]


def _eval_semver_eq(rule: Rule, value: Any) -> bool | None:
    if not isinstance(value, str) or not rule.version:
        return None
    semver = parse_semver(value)
    for i, target in enumerate(rule.version):
        if i >= len(semver) or semver[i] != target:
            return False
    return True


def _semver_compare(rule: Rule, value: Any, greater: bool) -> bool | None:
    if not isinstance(value, str) or not rule.version:
        return None
    semver = parse_semver(value)
    for i, target in enumerate(rule.version):
        if i >= len(semver):
            return False
        if semver[i] != target:
            return (semver[i] > target) == greater
    return True


def _eval_semver_gte(rule: Rule, value: Any) -> bool | None:
    return _semver_compare(rule, value, greater=True)


def _eval_semver_lte(rule: Rule, value: Any) -> bool | None:
    return _semver_compare(rule, value, greater=False)


def bucket(value: str, seed: int) -> float:
    """xxHash32 で value を [0, 1) に写像する。他言語の SDK と同じ値になる。"""
    digest = xxhash.xxh32_intdigest(value.encode("utf-8"), seed=seed & _UINT32_MAX)
    probability = digest / _UINT32_MAX
    if probability == 1.0:
        probability = math.nextafter(1.0, 0.0)
    return probability


def _eval_percentage(rule: Rule, value: Any) -> bool | None:
    if not (isinstance(value, str) or is_number(value)):
        return None
    if rule.range_start is None or rule.range_end is None or rule.seed is None:
        return None
    probability = bucket(stringify(value), rule.seed)
    return rule.range_start <= probability < rule.range_end


_HANDLERS: dict[Operator, Callable[[Rule, Any], bool | None]] = {
    Operator.TRUE: _eval_true,
    Operator.STR_EQUAL: _eval_str_equal,
    Operator.STR_EQUAL_SOFT: _eval_str_equal_soft,
    Operator.STR_CONTAINS: _eval_str_contains,
    Operator.STR_STARTS_WITH: _eval_str_starts_with,
    Operator.STR_ENDS_WITH: _eval_str_ends_with,
    Operator.STR_AFTER: _eval_str_after,
    Operator.STR_BEFORE: _eval_str_before,
    Operator.REGEXP: _eval_regexp,
    Operator.EQ: _eval_eq,
    Operator.LT: _eval_lt,
    Operator.GT: _eval_gt,
    Operator.ARR_OVERLAP: _eval_arr_overlap,
    Operator.DATE_AFTER: _eval_date_after,
    Operator.DATE_BEFORE: _eval_date_before,
    Operator.SEMVER_EQ: _eval_semver_eq,
    Operator.SEMVER_GTE: _eval_semver_gte,
    Operator.SEMVER_LTE: _eval_semver_lte,
    Operator.PERCENTAGE: _eval_percentage,
}
