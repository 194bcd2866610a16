"""ネットワークトランスポートのインターフェース"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .models import Flag


class FlagTransport(ABC):
    """フラグ API との通信を担う抽象クラス。

    実装は FlagError のサブクラス以外の例外を送出しないこと。
    """

    @abstractmethod
    async def fetch_config(self, base_url: str) -> list[Flag]:
        """全フラグ定義をサーバーの順序で取得する。"""
        ...

    @abstractmethod
    async def fetch_flags(self, base_url: str, context: dict[str, Any]) -> dict[str, Any]:
        """context に対してサーバーが評価したフラグ値を取得する。"""
        ...

    @abstractmethod
    async def send_report(self, base_url: str, report: dict[str, Any]) -> None:
        """使用状況レポートを送信する。"""
        ...

    async def close(self) -> None:
        """トランスポートのリソースを解放する。"""
        return None
