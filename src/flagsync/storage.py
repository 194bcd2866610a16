"""最後に取得したフラグ状態の永続化バックエンド"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .exceptions import PersistenceError

LOCAL_STATE_TYPE = "FlagClientState"
REMOTE_STATE_TYPE = "RemoteFlagClientState"


class FlagStorage(ABC):
    """シリアライズ済みのクライアント状態を 1 件保存する。"""

    @abstractmethod
    async def load(self) -> str | None:
        """保存済みの状態を返す。未保存なら None。"""
        ...

    @abstractmethod
    async def save(self, value: str) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemoryFlagStorage(FlagStorage):
    """プロセス内メモリのストレージ。"""

    def __init__(self, value: str | None = None) -> None:
        self.value = value
        self.closed = False

    async def load(self) -> str | None:
        return self.value

    async def save(self, value: str) -> None:
        self.value = value

    async def close(self) -> None:
        self.closed = True


class FileFlagStorage(FlagStorage):
    """ディスク上の JSON ファイル。保存のたびにアトミックに置き換える。"""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> str | None:
        try:
            return self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read {self._path}", cause=e) from e

    def _write(self, value: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write {self._path}", cause=e) from e

    async def load(self) -> str | None:
        return await asyncio.to_thread(self._read)

    async def save(self, value: str) -> None:
        await asyncio.to_thread(self._write, value)


def serialize_state(state_type: str, key: str, payload: dict[str, Any]) -> str:
    """現在時刻付きのクライアント状態をエンコードする。"""
    return json.dumps(
        {"type": state_type, "date": int(time.time() * 1000), key: payload},
        default=str,
    )


def parse_state(raw: str | None, state_type: str) -> dict[str, Any] | None:
    """状態をデコードする。空、破損、種別違いの場合は None。"""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type") != state_type:
        return None
    if not isinstance(data.get("date"), (int, float)):
        return None
    return data
