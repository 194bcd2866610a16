"""1 つのコンテキストのフラグ評価を API に任せるクライアント"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from types import MappingProxyType
from typing import Any

from .base import BaseFlagClient, typed_or_default
from .config import RemoteClientConfig
from .events import Unsubscribe
from .models import canonical_json
from .reporting import UsageReporter
from .storage import REMOTE_STATE_TYPE, FlagStorage
from .transport import FlagTransport

_EMPTY: Mapping[str, Any] = MappingProxyType({})


class RemoteFlagClient(BaseFlagClient):
    """現在のコンテキストに対してサーバーが評価したフラグ値を保持する。

    コンテキストを変更すると常に新しいリクエストを発行する。古いコンテキストの
    レスポンスは後から届いても破棄する。
    """

    state_type = REMOTE_STATE_TYPE
    state_key = "flags"

    def __init__(
        self,
        config: RemoteClientConfig | None = None,
        *,
        transport: FlagTransport | None = None,
        reporter: UsageReporter | None = None,
        storages: Sequence[FlagStorage] = (),
    ) -> None:
        config = config or RemoteClientConfig()
        super().__init__(config, transport=transport, reporter=reporter, storages=storages)
        self._context: Mapping[str, Any] = MappingProxyType(dict(config.initial_context))
        self._flags: Mapping[str, Any] = _EMPTY

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def flags(self) -> Mapping[str, Any]:
        return self._flags

    async def set_context(self, context: Mapping[str, Any]) -> None:
        """context に切り替え、そのフラグ値の取得完了を待つ。"""
        frozen: Mapping[str, Any] = MappingProxyType(dict(context))
        self._context = frozen

        async def request(base_url: str) -> dict[str, Any]:
            return await self._transport.fetch_flags(base_url, dict(frozen))

        await self._fetcher.refetch(request, supersede=True)

    def set_flags(self, flags: Mapping[str, Any]) -> None:
        """通信せずにフラグ値を直接公開する。"""
        self._publish(flags)

    def on_flags_change(self, listener: Callable[[set[str]], Any]) -> Unsubscribe:
        return self.on_config_change(listener)

    def get(self, slug: str, default: Any = None) -> Any:
        value = typed_or_default(self._flags.get(slug), default)
        self._report(slug, value, default)
        return value

    def get_all(self) -> dict[str, Any]:
        return {slug: value for slug, value in self._flags.items() if value is not None}

    async def _request(self, base_url: str) -> dict[str, Any]:
        return await self._transport.fetch_flags(base_url, dict(self._context))

    def _install(self, result: Any) -> set[str]:
        new: Mapping[str, Any] = MappingProxyType(dict(result))
        old = self._flags
        changed = set(old.keys() ^ new.keys())
        for slug in old.keys() & new.keys():
            if canonical_json(old[slug]) != canonical_json(new[slug]):
                changed.add(slug)
        self._flags = new
        return changed

    def _dump_state(self) -> dict[str, Any]:
        return dict(self._flags)

    def _restore(self, payload: dict[str, Any]) -> dict[str, Any]:
        return payload
