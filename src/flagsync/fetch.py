"""バージョン管理と重複排除、エンドポイントのフェイルオーバー付き設定取得"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Generic, TypeVar

from .config import RetryPolicy

T = TypeVar("T")

Request = Callable[[str], Awaitable[T]]

logger = logging.getLogger(__name__)

_STALE = object()


class FetchCoordinator(Generic[T]):
    """取得を実行し、最新の結果だけを公開する。

    取得要求のたびに version を進める。取得は開始時の version を覚えておき、
    実行中に version が進んでいれば結果を捨てる。古いレスポンスが新しい状態を
    上書きすることはない。実行中のリクエスト自体はキャンセルしない。

    request はベース URL ごとに優先順で呼ばれ、1 URL あたり最大
    retry.max_retries + 1 回試行する。

    イベントループのスレッドから操作すること。
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        request: Request[T],
        *,
        retry: RetryPolicy | None = None,
        on_result: Callable[[T], Any],
        on_error: Callable[[Exception], Any] | None = None,
        on_start: Callable[[], Any] | None = None,
        on_settled: Callable[[], Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not endpoints:
            raise ValueError("at least one endpoint is required")
        self._endpoints = list(endpoints)
        self._request = request
        self._retry = retry or RetryPolicy()
        self._on_result = on_result
        self._on_error = on_error
        self._on_start = on_start
        self._on_settled = on_settled
        self._sleep = sleep
        self._version = 0
        self._pending: asyncio.Future[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._last_error: Exception | None = None
        self._closed = False

    @property
    def version(self) -> int:
        return self._version

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def is_fetching(self) -> bool:
        return self._pending is not None

    def request_fetch(
        self,
        request: Request[T] | None = None,
        *,
        supersede: bool = False,
    ) -> asyncio.Future[None]:
        """取得を開始する。実行中の取得があればそれに合流する。

        supersede を指定すると常に新しいリクエストを発行し、実行中の結果は
        古いものとして扱われる。呼び出し元は同じ完了 Future を共有し、
        最新の取得が完了した時点で解決される。
        """
        loop = asyncio.get_running_loop()
        if self._closed:
            done: asyncio.Future[None] = loop.create_future()
            done.set_result(None)
            return done
        if self._pending is not None and not supersede:
            return self._pending

        self._version += 1
        if self._pending is None:
            self._pending = loop.create_future()
        future = self._pending
        if self._on_start is not None:
            self._on_start()

        task = loop.create_task(self._run(self._version, request or self._request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return future

    async def refetch(self, request: Request[T] | None = None, *, supersede: bool = False) -> None:
        """取得して、最新の取得が完了するまで待つ。"""
        await asyncio.shield(self.request_fetch(request, supersede=supersede))

    def _is_stale(self, version: int) -> bool:
        return version != self._version

    async def _fetch_any(self, version: int, request: Request[T]) -> Any:
        """優先順にエンドポイントを試し、最初に成功した結果を返す。

        全て失敗した場合は最後のエラーを送出する。途中でバージョンが進んだら _STALE を返す。
        """
        attempts = self._retry.max_retries + 1
        last_index = len(self._endpoints) - 1
        for index, endpoint in enumerate(self._endpoints):
            for attempt in range(attempts):
                try:
                    return await request(endpoint)
                except Exception as e:
                    if self._is_stale(version):
                        return _STALE
                    logger.debug(
                        "Fetch attempt failed",
                        extra={"endpoint": endpoint, "attempt": attempt, "error": str(e)},
                    )
                    if attempt + 1 < attempts:
                        await self._sleep(self._retry.compute_delay(attempt))
                        if self._is_stale(version):
                            return _STALE
                    elif index == last_index:
                        raise
        return _STALE

    async def _run(self, version: int, request: Request[T]) -> None:
        try:
            result = await self._fetch_any(version, request)
        except Exception as e:
            if self._is_stale(version):
                return
            self._last_error = e
            logger.warning("Fetch failed on every endpoint", extra={"error": str(e)})
            try:
                if self._on_error is not None:
                    self._on_error(e)
            finally:
                self._settle(version)
            return

        if result is _STALE:
            return
        if self._is_stale(version):
            logger.debug("Discarding stale fetch result", extra={"version": version})
            return
        self._last_error = None
        try:
            self._on_result(result)
        finally:
            self._settle(version)

    def _settle(self, version: int) -> None:
        if self._is_stale(version):
            return
        future, self._pending = self._pending, None
        if future is not None and not future.done():
            future.set_result(None)
        if self._on_settled is not None and not self._closed:
            self._on_settled()

    async def close(self) -> None:
        """実行中の取得をキャンセルし、待機中の呼び出し元を解放する。"""
        self._closed = True
        self._version += 1
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        future, self._pending = self._pending, None
        if future is not None and not future.done():
            future.set_result(None)
