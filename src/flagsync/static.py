"""評価済みフラグを 1 つのコンテキストに束ねたクライアント"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from .base import make_client_id, typed_or_default
from .events import ListenerRegistry, Unsubscribe
from .models import FlagEvalEvent
from .reporting import UsageReporter


class StaticFlagClient:
    """1 つのコンテキストに対して事前に評価したフラグ値を返す。

    通信は行わず、値はクライアントの生存中変わらない。
    """

    def __init__(
        self,
        context: Mapping[str, Any],
        flags: Mapping[str, Any],
        *,
        reporter: UsageReporter | None = None,
        app_name: str | None = None,
    ) -> None:
        self._context: Mapping[str, Any] = MappingProxyType(dict(context))
        self._flags: Mapping[str, Any] = MappingProxyType(dict(flags))
        self._reporter = reporter
        self._client_id = make_client_id(type(self).__name__, app_name)
        self._flag_eval: ListenerRegistry[FlagEvalEvent] = ListenerRegistry("flag_eval")

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def reporting(self) -> UsageReporter | None:
        return self._reporter

    def get(self, slug: str, default: Any = None) -> Any:
        value = typed_or_default(self._flags.get(slug), default)
        if self._reporter is not None:
            self._reporter.report_flag(slug, value, default, self._client_id)
            self._reporter.report_context(self._context)
        self._flag_eval.emit(FlagEvalEvent(value=value, default_value=default, slug=slug))
        return value

    def get_all(self) -> dict[str, Any]:
        return dict(self._flags)

    def on_flag_eval(self, listener: Callable[[FlagEvalEvent], Any]) -> Unsubscribe:
        return self._flag_eval.register(listener)
