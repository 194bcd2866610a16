"""定期更新のスケジューラ"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class PollingScheduler:
    """取得完了を起点に interval 秒ごとに tick を呼ぶ。

    取得のタイミングは自身では測らない。取得を実行する側が完了時に
    schedule_next を呼び、別の理由で更新を始めるときに cancel_pending を呼ぶ。
    interval が 0 ならポーリングしない。set_interval はどのスレッドからも呼べる。
    """

    def __init__(self, tick: Callable[[], Any], interval: float = 0.0) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self._tick = tick
        self._interval = interval
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def interval(self) -> float:
        with self._lock:
            return self._interval

    @property
    def is_polling(self) -> bool:
        return self.interval > 0

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """取得を実行するイベントループに紐付ける。"""
        with self._lock:
            self._loop = loop

    def set_interval(self, interval: float) -> None:
        """ポーリング間隔を変更する。

        有効にした時点で即座に更新し、無効にすると待機中の tick を取り消す。
        正の間隔同士の変更は次の tick から反映される。
        """
        if interval < 0:
            raise ValueError("interval must be >= 0")
        with self._lock:
            previous = self._interval
            self._interval = interval
            loop = self._loop
        if loop is None or self._closed:
            return
        if previous <= 0 < interval:
            self._dispatch(loop, self._fire)
        elif interval <= 0 < previous:
            self._dispatch(loop, self._cancel)

    def start(self) -> None:
        """間隔が設定されていればポーリングを開始する。初回は即座に実行する。"""
        with self._lock:
            loop = self._loop
            active = self._interval > 0
        if loop is not None and active and not self._closed:
            self._dispatch(loop, self._fire)

    def schedule_next(self) -> None:
        """次の tick を予約する。取得完了後にループのスレッドから呼ぶこと。"""
        with self._lock:
            interval = self._interval
            loop = self._loop
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None
            if loop is None or interval <= 0 or self._closed:
                return
            self._handle = loop.call_later(interval, self._fire)

    def cancel_pending(self) -> None:
        """待機中の tick を取り消す。次の取得完了で再び予約される。"""
        self._cancel()

    def stop(self) -> None:
        with self._lock:
            self._closed = True
            self._interval = 0.0
            loop = self._loop
        if loop is not None:
            self._dispatch(loop, self._cancel)

    def _cancel(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def _fire(self) -> None:
        with self._lock:
            self._handle = None
            if self._interval <= 0 or self._closed:
                return
        try:
            self._tick()
        except Exception as e:
            logger.warning("Polling tick failed", extra={"error": str(e)})

    @staticmethod
    def _dispatch(loop: asyncio.AbstractEventLoop, fn: Callable[[], Any]) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(fn)
