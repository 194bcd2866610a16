"""フラグ API の httpx トランスポート実装"""

from __future__ import annotations

import json
from typing import Any

import httpx

from .config import DEFAULT_API_KEY_HEADER
from .exceptions import (
    FlagError,
    MalformedResponseError,
    SerializationError,
    ServerError,
    TransportError,
)
from .models import Flag
from .transport import FlagTransport


def _encode(body: Any) -> bytes:
    try:
        return json.dumps(body, separators=(",", ":"), default=str).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to encode request body: {e}", cause=e) from e


class HttpFlagTransport(FlagTransport):
    """httpx を使ったフラグ API クライアント。

    timeout は秒単位。0 でタイムアウトなし。
    """

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 8.0,
        api_key_header: str = DEFAULT_API_KEY_HEADER,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers[api_key_header] = api_key
        self._headers = headers
        self._timeout = timeout or None
        self._transport = transport

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    def _handle_error(self, resp: httpx.Response, context: str) -> None:
        if resp.is_success:
            return
        message = f"{context}: HTTP {resp.status_code}"
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            message = f"{message}: {body['error']}"
        raise ServerError(resp.status_code, message)

    def _decode(self, resp: httpx.Response, context: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"{context}: invalid JSON body", cause=e) from e

    async def _request(self, method: str, url: str, context: str, body: Any = None) -> httpx.Response:
        content = _encode(body) if body is not None else None
        try:
            async with self._make_client() as client:
                resp = await client.request(method, url, content=content)
            self._handle_error(resp, context)
        except FlagError:
            raise
        except Exception as e:
            raise TransportError(f"{context}: {e!r}", cause=e) from e
        return resp

    async def fetch_config(self, base_url: str) -> list[Flag]:
        """GET {base_url}/config でフラグ定義一覧を取得する。"""
        resp = await self._request("GET", f"{base_url}/config", "fetch_config")
        data = self._decode(resp, "fetch_config")
        if not isinstance(data, list):
            raise MalformedResponseError("fetch_config: expected a list of flags")
        try:
            flags = [Flag.from_dict(item) for item in data]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"fetch_config: invalid flag definition: {e}", cause=e) from e
        # slug のないフラグは捨てる
        return [flag for flag in flags if flag.slug is not None]

    async def fetch_flags(self, base_url: str, context: dict[str, Any]) -> dict[str, Any]:
        """POST {base_url}/flags でコンテキストに対するフラグ値を取得する。"""
        resp = await self._request("POST", f"{base_url}/flags", "fetch_flags", body=context)
        data = self._decode(resp, "fetch_flags")
        if not isinstance(data, dict):
            raise MalformedResponseError("fetch_flags: expected an object of flag values")
        return data

    async def send_report(self, base_url: str, report: dict[str, Any]) -> None:
        """POST {base_url}/report で使用状況レポートを送信する。"""
        await self._request("POST", f"{base_url}/report", "send_report", body=report)
