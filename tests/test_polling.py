"""PollingScheduler のテスト"""

import asyncio

import pytest
from flagsync.polling import PollingScheduler


class FakeFetcher:
    """各 tick の取得を次のループ反復で完了させる。"""

    def __init__(self) -> None:
        self.ticks = 0
        self.scheduler = PollingScheduler(self.tick)

    def tick(self) -> None:
        self.ticks += 1
        asyncio.get_running_loop().call_soon(self.scheduler.schedule_next)


async def test_enabling_polling_refreshes_immediately() -> None:
    """ポーリングを有効にすると即座に tick すること。"""
    fetcher = FakeFetcher()
    fetcher.scheduler.attach(asyncio.get_running_loop())
    fetcher.scheduler.set_interval(10)
    assert fetcher.ticks == 1
    fetcher.scheduler.stop()


async def test_ticks_repeat_at_interval() -> None:
    """間隔ごとに tick が繰り返されること。"""
    fetcher = FakeFetcher()
    fetcher.scheduler.attach(asyncio.get_running_loop())
    fetcher.scheduler.set_interval(0.02)
    await asyncio.sleep(0.15)
    fetcher.scheduler.stop()
    assert fetcher.ticks >= 3


async def test_disabling_polling_cancels_pending_tick() -> None:
    """ポーリングを無効にすると待機中の tick が取り消されること。"""
    fetcher = FakeFetcher()
    fetcher.scheduler.attach(asyncio.get_running_loop())
    fetcher.scheduler.set_interval(0.03)
    await asyncio.sleep(0)
    fetcher.scheduler.set_interval(0)
    ticks = fetcher.ticks
    await asyncio.sleep(0.1)
    assert fetcher.ticks == ticks
    assert fetcher.scheduler.is_polling is False


async def test_changing_interval_does_not_force_refresh() -> None:
    """正の間隔同士の変更では即座に tick しないこと。"""
    fetcher = FakeFetcher()
    fetcher.scheduler.attach(asyncio.get_running_loop())
    fetcher.scheduler.set_interval(10)
    await asyncio.sleep(0)
    fetcher.scheduler.set_interval(20)
    assert fetcher.ticks == 1
    assert fetcher.scheduler.interval == 20
    fetcher.scheduler.stop()


async def test_cancel_pending_skips_scheduled_tick() -> None:
    """cancel_pending で予約済みの tick が実行されないこと。"""
    fetcher = FakeFetcher()
    fetcher.scheduler.attach(asyncio.get_running_loop())
    fetcher.scheduler.set_interval(0.03)
    await asyncio.sleep(0)
    fetcher.scheduler.cancel_pending()
    await asyncio.sleep(0.1)
    assert fetcher.ticks == 1
    fetcher.scheduler.schedule_next()
    await asyncio.sleep(0.05)
    assert fetcher.ticks >= 2
    fetcher.scheduler.stop()


async def test_set_interval_from_another_thread() -> None:
    """別スレッドから set_interval を呼べること。"""
    fetcher = FakeFetcher()
    fetcher.scheduler.attach(asyncio.get_running_loop())
    await asyncio.to_thread(fetcher.scheduler.set_interval, 0.02)
    await asyncio.sleep(0.08)
    fetcher.scheduler.stop()
    assert fetcher.ticks >= 2


async def test_interval_before_attach_is_stored() -> None:
    """attach 前に設定した間隔が保持されること。"""
    fetcher = FakeFetcher()
    fetcher.scheduler.set_interval(5)
    assert fetcher.ticks == 0
    assert fetcher.scheduler.interval == 5


def test_negative_interval_rejected() -> None:
    """負の間隔は ValueError。"""
    with pytest.raises(ValueError):
        PollingScheduler(lambda: None, -1)
    with pytest.raises(ValueError):
        PollingScheduler(lambda: None).set_interval(-0.5)
