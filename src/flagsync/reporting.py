"""使用状況のバッチレポート"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from .config import ReportingConfig
from .http_client import HttpFlagTransport
from .models import canonical_json
from .transport import FlagTransport

logger = logging.getLogger(__name__)

CLOSE_FLUSH_TIMEOUT = 5.0

# クライアント ID -> slug -> フィンガープリント -> {"value", "default", "count"}
FlagCounts = dict[str | None, dict[str, dict[str, dict[str, Any]]]]
# コンテキストキー -> [初回観測, 最終観測]（エポック秒）
PropertyWindows = dict[str, list[int]]
# コンテキストキー -> 観測値 -> ラベル
ObservedValues = dict[str, dict[str, str | None]]

_CAMEL_RE = re.compile(r"([a-z])([A-Z])")
_SEPARATOR_RE = re.compile(r"[\W_]+")


def to_constant_case(key: str) -> str:
    """userId、user-id、USER_ID をいずれも USER_ID に変換する。"""
    s = _CAMEL_RE.sub(r"\1_\2", key)
    s = _SEPARATOR_RE.sub("_", s).upper()
    return re.sub(r"_I_D$", "_ID", s)


def fingerprint(value: Any, default: Any) -> str:
    return canonical_json([value, default])


class UsageReporter:
    """フラグ評価とコンテキストの観測値を集計し、バッチで送信する。

    report_* はスレッドセーフで例外を送出しない。送信時は集計を空のものと
    入れ替えて取り出した分を送る。送信に失敗した分は集計に戻すため失われないが、
    同じレポートが複数回届くことはある。
    """

    def __init__(
        self,
        config: ReportingConfig | None = None,
        transport: FlagTransport | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ReportingConfig()
        if transport is None:
            transport = HttpFlagTransport(
                api_key=self._config.api_key,
                timeout=self._config.timeout,
                api_key_header=self._config.api_key_header,
            )
            self._owns_transport = True
        else:
            self._owns_transport = False
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self._flags: FlagCounts = {}
        self._properties: PropertyWindows = {}
        self._values: ObservedValues = {}
        self._flush_interval = 0.0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._flush_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def config(self) -> ReportingConfig:
        return self._config

    @property
    def is_active(self) -> bool:
        return self._flush_interval > 0 and not self._closed

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not (self._flags or self._properties or self._values)

    def start(self, flush_interval: float | None = None) -> None:
        """バックグラウンド送信を有効にする。イベントループのスレッドから呼ぶこと。"""
        interval = self._config.flush_interval if flush_interval is None else flush_interval
        if interval < 0:
            raise ValueError("flush_interval must be >= 0")
        with contextlib.suppress(RuntimeError):
            self._loop = asyncio.get_running_loop()
        self._flush_interval = interval
        self._schedule()

    def stop(self) -> None:
        """バックグラウンド送信を止める。蓄積済みのデータは保持する。"""
        self._flush_interval = 0.0
        self._dispatch(self._cancel_timer)

    def report_flag(
        self,
        slug: str,
        value: Any,
        default: Any,
        client_id: str | None = None,
        count: int = 1,
    ) -> None:
        try:
            key = fingerprint(value, default)
            with self._lock:
                slugs = self._flags.setdefault(client_id, {})
                entries = slugs.setdefault(slug, {})
                entry = entries.get(key)
                if entry is None:
                    entries[key] = {"value": value, "default": default, "count": count}
                else:
                    entry["count"] += count
        except Exception as e:
            logger.debug("Failed to record flag evaluation", extra={"slug": slug, "error": str(e)})
            return
        self._schedule()

    def report_context(self, context: Mapping[str, Any]) -> None:
        try:
            now = int(self._clock())
            constant_keys = {to_constant_case(k): k for k in context}
            with self._lock:
                for key, value in context.items():
                    window = self._properties.get(key)
                    if window is None:
                        self._properties[key] = [now, now]
                    else:
                        window[0] = min(window[0], now)
                        window[1] = max(window[1], now)
                    if isinstance(value, str) and value:
                        label = self._label_for(key, context, constant_keys)
                        observed = self._values.setdefault(key, {})
                        if label is not None or value not in observed:
                            observed[value] = label
        except Exception as e:
            logger.debug("Failed to record context", extra={"error": str(e)})
            return
        self._schedule()

    @staticmethod
    def _label_for(key: str, context: Mapping[str, Any], constant_keys: dict[str, str]) -> str | None:
        constant = to_constant_case(key)
        if not constant.endswith("_ID"):
            return None
        name_key = constant_keys.get(constant[:-3] + "_NAME")
        if name_key is None:
            return None
        label = context.get(name_key)
        return label if isinstance(label, str) and label else None

    def merge_report(self, report: Mapping[str, Any]) -> None:
        """シリアライズ済みのレポートを集計に戻す。

        カウントは加算し、観測期間は広げる。null でないラベルは既存のものを置き換える。
        """
        with self._lock:
            for client in report.get("clients") or ():
                slugs = self._flags.setdefault(client.get("id"), {})
                for slug, items in (client.get("flags") or {}).items():
                    entries = slugs.setdefault(slug, {})
                    for item in items:
                        key = fingerprint(item.get("value"), item.get("default"))
                        entry = entries.get(key)
                        if entry is None:
                            entries[key] = {
                                "value": item.get("value"),
                                "default": item.get("default"),
                                "count": item.get("count", 0),
                            }
                        else:
                            entry["count"] += item.get("count", 0)

            for key, (first, last) in (report.get("receivedProperties") or {}).items():
                window = self._properties.get(key)
                if window is None:
                    self._properties[key] = [first, last]
                else:
                    window[0] = min(window[0], first)
                    window[1] = max(window[1], last)

            for key, entries in (report.get("receivedValues") or {}).items():
                observed = self._values.setdefault(key, {})
                for entry in entries:
                    value = entry[0]
                    label = entry[1] if len(entry) > 1 else None
                    if label is not None or value not in observed:
                        observed[value] = label
        self._schedule()

    def _take(self) -> tuple[FlagCounts, PropertyWindows, ObservedValues]:
        with self._lock:
            taken = (self._flags, self._properties, self._values)
            self._flags, self._properties, self._values = {}, {}, {}
        return taken

    def build_reports(
        self,
        flags: FlagCounts,
        properties: PropertyWindows,
        values: ObservedValues,
    ) -> list[dict[str, Any]]:
        """集計データをサイズ上限付きのレポートに分割する。

        1 レポートあたりの観測値は最大 batch_size 件。clients と
        receivedProperties は最初のレポートにだけ含める。
        """
        limit = self._config.max_value_length
        first: dict[str, Any] = {}
        if flags:
            clients = []
            for client_id, slugs in flags.items():
                client: dict[str, Any] = {
                    "flags": {slug: list(entries.values()) for slug, entries in slugs.items()}
                }
                if client_id is not None:
                    client["id"] = client_id
                clients.append(client)
            first["clients"] = clients
        if properties:
            first["receivedProperties"] = {k: list(v) for k, v in properties.items()}

        entries: list[tuple[str, list[str]]] = []
        for key, observed in values.items():
            for value, label in observed.items():
                item = [value[:limit]] if label is None else [value[:limit], label[:limit]]
                entries.append((key, item))

        reports: list[dict[str, Any]] = []
        size = self._config.batch_size
        for start in range(0, len(entries), size):
            received: dict[str, list[list[str]]] = {}
            for key, item in entries[start : start + size]:
                received.setdefault(key, []).append(item)
            report = first if not reports else {}
            report["receivedValues"] = received
            reports.append(report)
        if not reports and first:
            reports.append(first)
        return reports

    async def _send(self, report: dict[str, Any]) -> None:
        base_urls = self._config.base_urls
        for index, base_url in enumerate(base_urls):
            try:
                await self._transport.send_report(base_url, report)
                return
            except Exception as e:
                if index == len(base_urls) - 1:
                    raise
                logger.debug(
                    "Report endpoint failed, trying next",
                    extra={"endpoint": base_url, "error": str(e)},
                )

    async def _flush_once(self) -> None:
        reports = self.build_reports(*self._take())
        for i, report in enumerate(reports):
            try:
                await self._send(report)
            except asyncio.CancelledError:
                for unsent in reports[i:]:
                    self.merge_report(unsent)
                raise
            except Exception as e:
                logger.warning("Failed to send usage report", extra={"error": str(e)})
                self.merge_report(report)

    async def flush(self) -> None:
        """蓄積済みのデータをすべて送信し、完了を待つ。"""
        if self._loop is None:
            with contextlib.suppress(RuntimeError):
                self._loop = asyncio.get_running_loop()
        self._cancel_timer()
        try:
            await self._flush_once()
        finally:
            self._schedule()

    async def close(self) -> None:
        """停止して上限付きで送信し、トランスポートを解放する。"""
        self.stop()
        tasks = list(self._flush_tasks)
        try:
            await asyncio.wait_for(self._drain(tasks), CLOSE_FLUSH_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out flushing usage reports on close")
        self._closed = True
        if self._owns_transport:
            await self._transport.close()

    async def _drain(self, tasks: list[asyncio.Task[None]]) -> None:
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._flush_once()

    def _schedule(self) -> None:
        if self._flush_interval > 0 and not self._closed:
            self._dispatch(self._arm_timer)

    def _arm_timer(self) -> None:
        if self._timer is not None or self._flush_interval <= 0 or self._closed:
            return
        if self.is_empty or self._loop is None:
            return
        self._timer = self._loop.call_later(self._flush_interval, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        loop = self._loop
        if loop is None or self._closed:
            return
        task = loop.create_task(self._background_flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _background_flush(self) -> None:
        try:
            await self._flush_once()
        finally:
            self._schedule()

    def _dispatch(self, fn: Callable[[], Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn()
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(fn)
