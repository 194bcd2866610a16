"""フラグ設定のデータモデル"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

Context = dict[str, Any]


class Operator(StrEnum):
    """評価エンジンが扱うルール演算子。

    ここにない演算子は UNKNOWN として読み込み、そのルールは一致しない。
    """

    EMPTY = "EMPTY"
    TRUE = "TRUE"
    STR_EQUAL = "STR_EQUAL"
    STR_EQUAL_SOFT = "STR_EQUAL_SOFT"
    STR_STARTS_WITH = "STR_STARTS_WITH"
    STR_ENDS_WITH = "STR_ENDS_WITH"
    STR_CONTAINS = "STR_CONTAINS"
    PERCENTAGE = "PERCENTAGE"
    ARR_OVERLAP = "ARR_OVERLAP"
    REGEXP = "REGEXP"
    STR_BEFORE = "STR_BEFORE"
    STR_AFTER = "STR_AFTER"
    EQ = "EQ"
    LT = "LT"
    GT = "GT"
    DATE_AFTER = "DATE_AFTER"
    DATE_BEFORE = "DATE_BEFORE"
    SEMVER_EQ = "SEMVER_EQ"
    SEMVER_GTE = "SEMVER_GTE"
    SEMVER_LTE = "SEMVER_LTE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, tag: Any) -> Operator:
        try:
            op = cls(tag)
        except ValueError:
            return cls.UNKNOWN
        return op


def is_number(value: Any) -> bool:
    """int/float なら True。bool は数値として扱わない。"""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def stringify(value: Any) -> str:
    """スカラー値の文字列表現。bool と null は JSON の表記に合わせる。"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=stringify)
    return str(value)


def canonical_json(value: Any) -> str:
    """決定的な JSON エンコード。構造的に等しい値は同じ文字列になる。"""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


@dataclass(frozen=True)
class Variation:
    """フラグの結果。active でないバリエーションは値を返さない。"""

    active: bool = False
    value: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Variation:
        if data is None:
            return cls()
        return cls(active=bool(data.get("active", False)), value=data.get("value"))

    def to_dict(self) -> dict[str, Any]:
        return {"active": self.active, "value": self.value}


@dataclass(frozen=True)
class Rule:
    """コンテキストの 1 キーに対する条件。

    operator が使うパラメータだけが設定される。
    values: 文字列系と ARR_OVERLAP
    value: REGEXP、STR_BEFORE、STR_AFTER
    numeric_value: EQ、LT、GT
    range_start / range_end / seed: PERCENTAGE
    timestamp / iso: 日付系
    version: SEMVER 系
    """

    key: str
    operator: Operator
    negate: bool = False
    operator_tag: str = ""
    values: tuple[str, ...] | None = None
    value: str | None = None
    numeric_value: float | None = None
    range_start: float | None = None
    range_end: float | None = None
    seed: int | None = None
    timestamp: int | None = None
    iso: str | None = None
    version: tuple[int, ...] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rule:
        tag = data.get("operator", "")
        raw_value = data.get("value")
        values = data.get("values")
        version = data.get("version")
        return cls(
            key=data["key"],
            operator=Operator.parse(tag),
            operator_tag=str(tag),
            negate=bool(data.get("negate") or False),
            values=tuple(stringify(v) for v in values) if values is not None else None,
            value=raw_value if isinstance(raw_value, str) else None,
            numeric_value=float(raw_value) if is_number(raw_value) else None,
            range_start=_optional_float(data.get("rangeStart")),
            range_end=_optional_float(data.get("rangeEnd")),
            seed=_optional_int(data.get("seed")),
            timestamp=_optional_int(data.get("timestamp")),
            iso=data.get("iso"),
            version=tuple(int(v) for v in version) if version is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "operator": self.operator_tag or self.operator.value,
            "negate": self.negate,
        }
        if self.values is not None:
            data["values"] = list(self.values)
        if self.value is not None:
            data["value"] = self.value
        elif self.numeric_value is not None:
            data["value"] = self.numeric_value
        optional = {
            "rangeStart": self.range_start,
            "rangeEnd": self.range_end,
            "seed": self.seed,
            "timestamp": self.timestamp,
            "iso": self.iso,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.version is not None:
            data["version"] = list(self.version)
        return data


@dataclass(frozen=True)
class Condition:
    """AND で結合されるルール群と、一致時に選ばれるバリエーション。"""

    rules: tuple[Rule, ...] = ()
    variation: Variation = field(default_factory=Variation)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            rules=tuple(Rule.from_dict(r) for r in data.get("rules") or ()),
            variation=Variation.from_dict(data.get("variation")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": [r.to_dict() for r in self.rules],
            "variation": self.variation.to_dict(),
        }


@dataclass(frozen=True)
class Flag:
    """設定エンドポイントが返すフラグ定義。

    conditions はサーバーの順序を保ち、最初に一致した条件が採用される。
    """

    slug: str | None = None
    default_variation: Variation = field(default_factory=Variation)
    conditions: tuple[Condition, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flag:
        return cls(
            slug=data.get("slug"),
            default_variation=Variation.from_dict(data.get("defaultVariation")),
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "defaultVariation": self.default_variation.to_dict(),
            "conditions": [c.to_dict() for c in self.conditions],
        }


@dataclass(frozen=True)
class FlagEvalEvent:
    """フラグを 1 件取得するたびに発行されるイベント。"""

    value: Any
    default_value: Any
    slug: str


def _optional_float(value: Any) -> float | None:
    return float(value) if is_number(value) else None


def _optional_int(value: Any) -> int | None:
    return int(value) if is_number(value) else None
