"""読み取り側に公開する不変のフラグ集合"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from .models import Flag, canonical_json


class ConfigSnapshot(Mapping[str, Flag]):
    """slug から Flag への読み取り専用マッピング。

    生成後は変更しない。フラグ集合の更新は新しいスナップショットを作り、
    クライアントの参照を差し替えることで行う。
    """

    __slots__ = ("_flags", "_fingerprints")

    def __init__(self, flags: Mapping[str, Flag] | None = None) -> None:
        self._flags: Mapping[str, Flag] = MappingProxyType(dict(flags or {}))
        self._fingerprints: dict[str, str] | None = None

    @classmethod
    def from_flags(cls, flags: Iterable[Flag]) -> ConfigSnapshot:
        """設定レスポンスから作る。slug が重複した場合は後のものが優先。"""
        return cls({flag.slug: flag for flag in flags if flag.slug is not None})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConfigSnapshot:
        """シリアライズ形式（slug -> フラグ辞書）から作る。"""
        flags: dict[str, Flag] = {}
        for slug, raw in data.items():
            flag = raw if isinstance(raw, Flag) else Flag.from_dict(raw)
            flags[slug] = flag
        return cls(flags)

    def to_dict(self) -> dict[str, Any]:
        return {slug: flag.to_dict() for slug, flag in self._flags.items()}

    def __getitem__(self, slug: str) -> Flag:
        return self._flags[slug]

    def __iter__(self) -> Iterator[str]:
        return iter(self._flags)

    def __len__(self) -> int:
        return len(self._flags)

    def __repr__(self) -> str:
        return f"ConfigSnapshot({sorted(self._flags)!r})"

    def _fingerprint(self, slug: str) -> str:
        if self._fingerprints is None:
            self._fingerprints = {s: canonical_json(f) for s, f in self._flags.items()}
        return self._fingerprints[slug]

    def diff(self, other: ConfigSnapshot) -> set[str]:
        """2 つのスナップショット間で追加、削除、変更された slug を返す。"""
        changed = set(self._flags.keys() ^ other._flags.keys())
        for slug in self._flags.keys() & other._flags.keys():
            if self._fingerprint(slug) != other._fingerprint(slug):
                changed.add(slug)
        return changed


EMPTY_SNAPSHOT = ConfigSnapshot()
