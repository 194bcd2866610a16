"""取得した設定でフラグをローカル評価するクライアント"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from .base import BaseFlagClient, typed_or_default
from .config import ClientConfig
from .evaluator import eval_flag
from .models import Flag
from .reporting import UsageReporter
from .snapshot import EMPTY_SNAPSHOT, ConfigSnapshot
from .static import StaticFlagClient
from .storage import LOCAL_STATE_TYPE, FlagStorage
from .transport import FlagTransport

logger = logging.getLogger(__name__)

ConfigInput = ConfigSnapshot | Mapping[str, Flag | dict[str, Any]] | Iterable[Flag]


def _to_snapshot(config: ConfigInput) -> ConfigSnapshot:
    if isinstance(config, ConfigSnapshot):
        return config
    if isinstance(config, Mapping):
        return ConfigSnapshot.from_dict(config)
    return ConfigSnapshot.from_flags(config)


class FlagClient(BaseFlagClient):
    """全フラグ定義を取得し、コンテキストをプロセス内で評価する。

    get と get_all は同期でスレッドセーフ、例外を送出しない。通信は start を
    呼んだイベントループ上で行う。

    使用例::

        async with FlagClient(ClientConfig(api_key="...")) as client:
            if client.get({"userId": "abc"}, "new-checkout", False):
                ...
    """

    state_type = LOCAL_STATE_TYPE
    state_key = "config"

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: FlagTransport | None = None,
        reporter: UsageReporter | None = None,
        storages: Sequence[FlagStorage] = (),
    ) -> None:
        super().__init__(
            config or ClientConfig(),
            transport=transport,
            reporter=reporter,
            storages=storages,
        )
        self._snapshot: ConfigSnapshot = EMPTY_SNAPSHOT

    @property
    def config(self) -> ConfigSnapshot:
        """現在公開中のフラグ集合。"""
        return self._snapshot

    def set_config(self, config: ConfigInput) -> None:
        """通信せずにフラグ集合を直接公開する。"""
        self._publish(_to_snapshot(config))

    def get(self, context: Mapping[str, Any], slug: str, default: Any = None) -> Any:
        """context に対して slug を評価する。

        フラグが存在しない、値がない、または default と型が異なる場合は
        default を返す。
        """
        snapshot = self._snapshot
        value = None
        flag = snapshot.get(slug)
        if flag is not None:
            try:
                value = eval_flag(context, flag)
            except Exception as e:
                logger.warning("Flag evaluation failed", extra={"slug": slug, "error": str(e)})
        value = typed_or_default(value, default)
        self._report(slug, value, default)
        if self._reporter is not None:
            self._reporter.report_context(context)
        return value

    def get_all(self, context: Mapping[str, Any]) -> dict[str, Any]:
        """全フラグを評価する。値のないフラグは含めない。"""
        snapshot = self._snapshot
        result: dict[str, Any] = {}
        for slug, flag in snapshot.items():
            try:
                value = eval_flag(context, flag)
            except Exception as e:
                logger.warning("Flag evaluation failed", extra={"slug": slug, "error": str(e)})
                continue
            if value is not None:
                result[slug] = value
        if self._reporter is not None:
            self._reporter.report_context(context)
        return result

    def create_client_for_context(self, context: Mapping[str, Any]) -> StaticFlagClient:
        """context に対するフラグ値を固定した軽量クライアントを返す。"""
        return StaticFlagClient(
            context,
            self.get_all(context),
            reporter=self._reporter,
            app_name=self._config.app_name,
        )

    async def _request(self, base_url: str) -> list[Flag]:
        return await self._transport.fetch_config(base_url)

    def _install(self, result: Any) -> set[str]:
        snapshot = result if isinstance(result, ConfigSnapshot) else ConfigSnapshot.from_flags(result)
        changed = self._snapshot.diff(snapshot)
        self._snapshot = snapshot
        return changed

    def _dump_state(self) -> dict[str, Any]:
        return self._snapshot.to_dict()

    def _restore(self, payload: dict[str, Any]) -> ConfigSnapshot:
        return ConfigSnapshot.from_dict(payload)
