"""クライアント設定モデルと設定ファイル読み込み"""

from __future__ import annotations

from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import FlagError, FlagErrorCodes

DEFAULT_BASE_URL = "https://api.tggl.io"
DEFAULT_API_KEY_HEADER = "x-tggl-api-key"
ENV_PREFIX = "FLAGSYNC_"

ModelT = TypeVar("ModelT", bound=BaseModel)


def _strip_urls(urls: list[str]) -> list[str]:
    return [url.rstrip("/") for url in urls]


class RetryPolicy(BaseModel):
    """設定取得のエンドポイント単位のリトライ設定。"""

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=0.1, ge=0.0)
    max_delay: float = Field(default=0.5, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)

    def compute_delay(self, attempt: int) -> float:
        """0 始まりの attempt 回目が失敗した後の待機秒数。"""
        return min(self.initial_delay * (self.multiplier**attempt), self.max_delay)


class ReportingConfig(BaseModel):
    """使用状況レポートの設定。"""

    api_key: str | None = None
    base_urls: list[str] = Field(default_factory=lambda: [DEFAULT_BASE_URL])
    flush_interval: float = Field(default=5.0, ge=0.0)
    timeout: float = Field(default=10.0, ge=0.0)
    batch_size: int = Field(default=2000, ge=1)
    max_value_length: int = Field(default=240, ge=1)
    api_key_header: str = DEFAULT_API_KEY_HEADER

    @field_validator("base_urls")
    @classmethod
    def _normalize_urls(cls, urls: list[str]) -> list[str]:
        return _strip_urls(urls) or [DEFAULT_BASE_URL]


class ClientConfig(BaseModel):
    """ネットワークを使うクライアント共通の設定。"""

    api_key: str | None = None
    base_urls: list[str] = Field(default_factory=list, validate_default=True)
    app_name: str | None = None
    timeout: float = Field(default=8.0, ge=0.0)
    polling_interval: float = Field(default=5.0, ge=0.0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    reporting_enabled: bool = True
    reporting_flush_interval: float = Field(default=10.0, ge=0.0)
    initial_fetch: bool = True
    api_key_header: str = DEFAULT_API_KEY_HEADER

    @field_validator("base_urls")
    @classmethod
    def _append_default_url(cls, urls: list[str]) -> list[str]:
        urls = _strip_urls(urls)
        if DEFAULT_BASE_URL not in urls:
            urls.append(DEFAULT_BASE_URL)
        return urls

    def reporting_config(self) -> ReportingConfig:
        return ReportingConfig(
            api_key=self.api_key,
            base_urls=self.base_urls,
            flush_interval=self.reporting_flush_interval,
            timeout=self.timeout,
            api_key_header=self.api_key_header,
        )


class RemoteClientConfig(ClientConfig):
    """サーバー側評価クライアントの設定。"""

    initial_context: dict[str, Any] = Field(default_factory=dict)


class _RetryOverrides(BaseModel):
    max_retries: int | None = None
    initial_delay: float | None = None
    max_delay: float | None = None
    multiplier: float | None = None


class EnvOverrides(BaseSettings):
    """FLAGSYNC_ で始まる環境変数による設定の上書き。

    FLAGSYNC_API_KEY、FLAGSYNC_POLLING_INTERVAL のように指定する。
    リトライ設定は FLAGSYNC_RETRY__MAX_RETRIES のように __ で区切る。
    FLAGSYNC_BASE_URLS は JSON 配列で指定する。
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
    )

    api_key: str | None = None
    base_urls: list[str] | None = None
    app_name: str | None = None
    timeout: float | None = None
    polling_interval: float | None = None
    retry: _RetryOverrides | None = None
    reporting_enabled: bool | None = None
    reporting_flush_interval: float | None = None
    initial_fetch: bool | None = None
    api_key_header: str | None = None

    def as_overlay(self) -> dict[str, Any]:
        """設定された値だけを上書き用の辞書として返す。"""
        return self.model_dump(exclude_none=True)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """override を base に重ねた新しい辞書を返す。

    辞書は再帰的にマージし、リストは置換する。override 側の None は
    キーを削除し、モデルのデフォルト値に戻す。
    """
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path, section: str | None = None) -> dict[str, Any]:
    """YAML ファイルを読み込み、section 指定時はそのキー配下を返す。"""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FlagError(
            code=FlagErrorCodes.READ_FILE,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise FlagError(
            code=FlagErrorCodes.PARSE_YAML,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if isinstance(data, dict) and section is not None:
        data = data.get(section) or {}
    if not isinstance(data, dict):
        where = f"'{section}' in {path}" if section is not None else f"the top of {path}"
        raise FlagError(
            code=FlagErrorCodes.PARSE_YAML,
            message=f"Expected a mapping at {where}",
        )
    return data


def load_config(
    base_path: Path | str | None = None,
    env_path: Path | str | None = None,
    model: type[ModelT] = ClientConfig,  # type: ignore[assignment]
    *,
    section: str | None = None,
    use_env: bool = True,
) -> ModelT:
    """設定を読み込んで model のインスタンスを返す。

    base_path: ベース設定ファイル（省略時は空の設定から始める）
    env_path: 環境別設定ファイル。存在する場合はベースにマージ。
    section: アプリ全体の設定ファイル内で flagsync 用の設定が置かれたキー。
    use_env: FLAGSYNC_ 環境変数を最後に重ねるかどうか。
    """
    data: dict[str, Any] = {}
    if base_path is not None:
        data = _read_yaml(Path(base_path), section)
    if env_path is not None and Path(env_path).exists():
        data = deep_merge(data, _read_yaml(Path(env_path), section))
    try:
        if use_env:
            data = deep_merge(data, EnvOverrides().as_overlay())
        return model.model_validate(data)
    except ValidationError as e:
        raise FlagError(
            code=FlagErrorCodes.CONFIG_ERROR,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
