"""クライアント通知用の購読レジストリ"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from .models import FlagEvalEvent

T = TypeVar("T")

Unsubscribe = Callable[[], None]

logger = logging.getLogger(__name__)


class ListenerRegistry(Generic[T]):
    """引数 1 つのリスナーを管理するスレッドセーフなレジストリ。

    emit は開始時点で登録済みのリスナーに通知する。emit 中（リスナー内を含む）の
    登録と解除は次回以降の emit にだけ反映される。
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._lock = threading.Lock()
        self._ids = itertools.count()
        self._listeners: dict[int, Callable[[T], Any]] = {}

    def register(self, listener: Callable[[T], Any]) -> Unsubscribe:
        """リスナーを登録し、解除用の関数を返す。解除は何度呼んでもよい。"""
        with self._lock:
            key = next(self._ids)
            self._listeners[key] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(key, None)

        return unsubscribe

    def emit(self, value: T) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(value)
            except Exception as e:
                logger.debug(
                    "Listener raised",
                    extra={"registry": self._name, "error": str(e)},
                )

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


class CallbackRegistry:
    """引数なしコールバックのレジストリ。"""

    def __init__(self, name: str = "") -> None:
        self._registry: ListenerRegistry[None] = ListenerRegistry(name)

    def register(self, callback: Callable[[], Any]) -> Unsubscribe:
        return self._registry.register(lambda _: callback())

    def emit(self) -> None:
        self._registry.emit(None)

    def clear(self) -> None:
        self._registry.clear()

    def __len__(self) -> int:
        return len(self._registry)


class EventHub:
    """クライアントの通知チャネル一式。"""

    def __init__(self) -> None:
        self.config_change: ListenerRegistry[set[str]] = ListenerRegistry("config_change")
        self.fetch_successful = CallbackRegistry("fetch_successful")
        self.error: ListenerRegistry[Exception] = ListenerRegistry("error")
        self.flag_eval: ListenerRegistry[FlagEvalEvent] = ListenerRegistry("flag_eval")
        self.ready = CallbackRegistry("ready")

    def clear(self) -> None:
        for registry in (
            self.config_change,
            self.fetch_successful,
            self.error,
            self.flag_eval,
            self.ready,
        ):
            registry.clear()
