"""ネットワークを使うクライアント共通のライフサイクル"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any, ClassVar

from ._version import __version__
from .config import ClientConfig
from .events import EventHub, Unsubscribe
from .fetch import FetchCoordinator
from .http_client import HttpFlagTransport
from .models import FlagEvalEvent, is_number
from .polling import PollingScheduler
from .reporting import UsageReporter
from .storage import FlagStorage, parse_state, serialize_state
from .transport import FlagTransport

logger = logging.getLogger(__name__)


def typed_or_default(value: Any, default: Any) -> Any:
    """value が default と同じ型なら value を、そうでなければ default を返す。

    default が None ならどんな値も受け付ける。bool は bool にのみ一致する。
    float の default に対する int の値は float に変換する（逆は行わない）。
    """
    if value is None:
        return default
    if default is None:
        return value
    if isinstance(default, bool) or isinstance(value, bool):
        return value if isinstance(value, bool) and isinstance(default, bool) else default
    if isinstance(default, float) and is_number(value):
        return float(value)
    return value if isinstance(value, type(default)) else default


def make_client_id(client_class: str, app_name: str | None = None) -> str:
    client_id = f"python-client:{__version__}/{client_class}"
    if app_name:
        client_id = f"{client_id}/{app_name}"
    return client_id


class BaseFlagClient(ABC):
    """取得ループ、ポーリング、準備完了、永続化、イベントをまとめる基底クライアント。

    公開中の状態はサブクラスが持ち、取得結果の解釈と保存形式もサブクラスが決める。
    読み取りはブロックせず、_lock の下で最後に差し替えられた状態を見る。
    """

    state_type: ClassVar[str]
    state_key: ClassVar[str]

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: FlagTransport | None = None,
        reporter: UsageReporter | None = None,
        storages: Sequence[FlagStorage] = (),
    ) -> None:
        self._config = config
        self._owns_transport = transport is None
        self._transport = transport or HttpFlagTransport(
            api_key=config.api_key,
            timeout=config.timeout,
            api_key_header=config.api_key_header,
        )
        self._owns_reporter = reporter is None and config.reporting_enabled
        if reporter is None and config.reporting_enabled:
            reporter = UsageReporter(config.reporting_config())
        self._reporter = reporter
        self._storages = list(storages)
        self._client_id = make_client_id(type(self).__name__, config.app_name)
        self._events = EventHub()
        self._lock = threading.Lock()
        self._ready = False
        self._fetched = False
        self._started = False
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready_event: asyncio.Event | None = None
        self._save_tasks: set[asyncio.Task[None]] = set()
        self._scheduler = PollingScheduler(self._on_poll, config.polling_interval)
        self._fetcher: FetchCoordinator[Any] = FetchCoordinator(
            config.base_urls,
            self._request,
            retry=config.retry,
            on_result=self._on_fetch_result,
            on_error=self._on_fetch_error,
            on_start=self._scheduler.cancel_pending,
            on_settled=self._scheduler.schedule_next,
        )

    # -- サブクラスのフック ----------------------------------------------

    @abstractmethod
    async def _request(self, base_url: str) -> Any:
        """base_url に対して 1 回取得する。"""

    @abstractmethod
    def _install(self, result: Any) -> set[str]:
        """result から作った状態に差し替え、変更された slug を返す。

        _lock を保持した状態で呼ばれる。
        """

    @abstractmethod
    def _dump_state(self) -> dict[str, Any]:
        """現在の状態をシリアライズ可能な形で返す。"""

    @abstractmethod
    def _restore(self, payload: dict[str, Any]) -> Any:
        """永続化されたペイロードを _install が受け付ける形に変換する。"""

    # -- プロパティ ------------------------------------------------------

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def reporting(self) -> UsageReporter | None:
        return self._reporter

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def error(self) -> Exception | None:
        """直近の取得エラー。次の取得成功でクリアされる。"""
        return self._fetcher.last_error

    @property
    def polling_interval(self) -> float:
        return self._scheduler.interval

    # -- ライフサイクル --------------------------------------------------

    async def start(self) -> None:
        """永続化された状態を読み込み、初回取得を開始する（完了は待たない）。"""
        if self._started:
            return
        self._started = True
        self._loop = asyncio.get_running_loop()
        self._ready_event = asyncio.Event()
        if self._ready:
            self._ready_event.set()
        self._scheduler.attach(self._loop)
        if self._reporter is not None and self._owns_reporter:
            self._reporter.start(self._config.reporting_flush_interval)

        await self._load_storages()

        if self._config.initial_fetch:
            # ポーリング初回は同期で発火するので request_fetch はそれに合流する
            self._scheduler.start()
            pending = self._fetcher.request_fetch()
            pending.add_done_callback(lambda _: self._release_waiters())
        else:
            self._scheduler.schedule_next()
            self._release_waiters()

    async def wait_ready(self) -> None:
        """状態が公開されるか初回取得が完了するまで待つ。"""
        if self._ready_event is None:
            raise RuntimeError("client is not started")
        await self._ready_event.wait()

    async def refetch(self) -> None:
        """今すぐ取得して完了を待つ。実行中の取得があればそれに合流する。"""
        await self._fetcher.refetch()

    def start_polling(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._scheduler.set_interval(interval)

    def stop_polling(self) -> None:
        self._scheduler.set_interval(0)

    async def close(self) -> None:
        """ポーリングを止め、実行中の取得を破棄し、レポートを送ってリソースを解放する。"""
        if self._closed:
            return
        self._closed = True
        self._scheduler.stop()
        await self._fetcher.close()
        if self._save_tasks:
            await asyncio.gather(*self._save_tasks, return_exceptions=True)
        if self._reporter is not None and self._owns_reporter:
            await self._reporter.close()
        for storage in self._storages:
            try:
                await storage.close()
            except Exception as e:
                logger.debug("Failed to close storage", extra={"error": str(e)})
        if self._owns_transport:
            await self._transport.close()
        self._release_waiters()

    async def __aenter__(self) -> BaseFlagClient:
        await self.start()
        await self.wait_ready()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- イベント --------------------------------------------------------

    def on_ready(self, callback: Callable[[], Any]) -> Unsubscribe:
        """準備完了時に callback を呼ぶ。準備済みなら即座に呼ぶ。"""
        if self._ready:
            callback()
            return lambda: None
        return self._events.ready.register(callback)

    def on_config_change(self, listener: Callable[[set[str]], Any]) -> Unsubscribe:
        return self._events.config_change.register(listener)

    def on_fetch_successful(self, callback: Callable[[], Any]) -> Unsubscribe:
        return self._events.fetch_successful.register(callback)

    def on_error(self, listener: Callable[[Exception], Any]) -> Unsubscribe:
        return self._events.error.register(listener)

    def on_flag_eval(self, listener: Callable[[FlagEvalEvent], Any]) -> Unsubscribe:
        return self._events.flag_eval.register(listener)

    # -- 内部処理 --------------------------------------------------------

    def _publish(self, result: Any) -> set[str]:
        with self._lock:
            changed = self._install(result)
            first = not self._ready
            self._ready = True
        if changed:
            self._events.config_change.emit(changed)
            if self._fetched:
                self._schedule_save()
        if first:
            self._events.ready.emit()
            self._release_waiters()
        return changed

    def _on_poll(self) -> None:
        self._fetcher.request_fetch()

    def _on_fetch_result(self, result: Any) -> None:
        first_fetch = not self._fetched
        self._fetched = True
        changed = self._publish(result)
        self._events.fetch_successful.emit()
        if first_fetch and not changed:
            self._schedule_save()

    def _on_fetch_error(self, error: Exception) -> None:
        self._events.error.emit(error)

    def _report(self, slug: str, value: Any, default: Any, client_id: str | None = None) -> None:
        if self._reporter is not None:
            self._reporter.report_flag(slug, value, default, client_id or self._client_id)
        self._events.flag_eval.emit(FlagEvalEvent(value=value, default_value=default, slug=slug))

    def _release_waiters(self) -> None:
        event, loop = self._ready_event, self._loop
        if event is None or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(event.set)

    def _schedule_save(self) -> None:
        loop = self._loop
        if not self._storages or loop is None or self._closed or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn_save()
        else:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(self._spawn_save)

    def _spawn_save(self) -> None:
        loop = self._loop
        if loop is None or self._closed:
            return
        task = loop.create_task(self._save_state())
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    async def _save_state(self) -> None:
        with self._lock:
            payload = self._dump_state()
        try:
            raw = serialize_state(self.state_type, self.state_key, payload)
        except (TypeError, ValueError) as e:
            logger.debug("Failed to serialize state", extra={"error": str(e)})
            return
        results = await asyncio.gather(
            *(storage.save(raw) for storage in self._storages),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.debug("Failed to save state", extra={"error": str(result)})

    async def _load_storages(self) -> None:
        if not self._storages:
            return
        results = await asyncio.gather(
            *(storage.load() for storage in self._storages),
            return_exceptions=True,
        )
        best: dict[str, Any] | None = None
        for result in results:
            if isinstance(result, BaseException):
                logger.debug("Failed to load state", extra={"error": str(result)})
                continue
            state = parse_state(result, self.state_type)
            if state is None or not isinstance(state.get(self.state_key), dict):
                continue
            if best is None or state["date"] > best["date"]:
                best = state
        if best is None or self._fetched:
            return
        try:
            self._publish(self._restore(best[self.state_key]))
        except Exception as e:
            logger.debug("Ignoring unreadable persisted state", extra={"error": str(e)})
