"""テスト共通のテストダブル"""

import asyncio
from typing import Any

import pytest
from flagsync.exceptions import ServerError, TransportError
from flagsync.models import Flag
from flagsync.transport import FlagTransport


class FakeTransport(FlagTransport):
    """応答をテストから制御できるプロセス内トランスポート。"""

    def __init__(self) -> None:
        self.flags: list[Flag] = []
        self.flag_values: dict[str, Any] = {}
        self.reports: list[tuple[str, dict[str, Any]]] = []
        self.config_calls: list[str] = []
        self.flags_calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_reports = 0
        self.fail_config = False
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def fetch_config(self, base_url: str) -> list[Flag]:
        self.config_calls.append(base_url)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_config:
            raise ServerError(500, "fetch_config: HTTP 500")
        return list(self.flags)

    async def fetch_flags(self, base_url: str, context: dict[str, Any]) -> dict[str, Any]:
        self.flags_calls.append((base_url, context))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_config:
            raise ServerError(500, "fetch_flags: HTTP 500")
        return dict(self.flag_values)

    async def send_report(self, base_url: str, report: dict[str, Any]) -> None:
        if self.fail_reports > 0:
            self.fail_reports -= 1
            raise TransportError("send_report: connection reset")
        self.reports.append((base_url, report))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
