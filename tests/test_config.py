"""設定モデルと設定読み込みのテスト"""

from pathlib import Path

import pytest
from flagsync.config import (
    DEFAULT_BASE_URL,
    ClientConfig,
    EnvOverrides,
    RemoteClientConfig,
    RetryPolicy,
    deep_merge,
    load_config,
)
from flagsync.exceptions import FlagError, FlagErrorCodes
from pydantic import ValidationError


def test_client_config_defaults() -> None:
    """デフォルト値。"""
    config = ClientConfig()
    assert config.base_urls == [DEFAULT_BASE_URL]
    assert config.timeout == 8.0
    assert config.polling_interval == 5.0
    assert config.retry.max_retries == 3
    assert config.reporting_enabled is True
    assert config.initial_fetch is True
    assert config.api_key_header == "x-tggl-api-key"


def test_default_url_is_appended_last() -> None:
    """デフォルト URL が末尾に追加され、末尾のスラッシュが除去されること。"""
    config = ClientConfig(base_urls=["https://proxy.internal/"])
    assert config.base_urls == ["https://proxy.internal", DEFAULT_BASE_URL]


def test_default_url_not_duplicated() -> None:
    """デフォルト URL が既にあれば重複させないこと。"""
    config = ClientConfig(base_urls=[DEFAULT_BASE_URL, "https://b"])
    assert config.base_urls == [DEFAULT_BASE_URL, "https://b"]


@pytest.mark.parametrize(
    "field",
    ["timeout", "polling_interval", "reporting_flush_interval"],
)
def test_negative_values_are_rejected(field: str) -> None:
    """負の秒数は ValidationError。"""
    with pytest.raises(ValidationError):
        ClientConfig(**{field: -1})


def test_negative_retry_count_is_rejected() -> None:
    """負のリトライ回数は ValidationError。"""
    with pytest.raises(ValidationError):
        RetryPolicy(max_retries=-1)


def test_retry_delay_is_capped() -> None:
    """待機時間が倍々に増え max_delay で頭打ちになること。"""
    policy = RetryPolicy()
    assert [policy.compute_delay(i) for i in range(4)] == [0.1, 0.2, 0.4, 0.5]


def test_reporting_config_inherits_client_settings() -> None:
    """レポート設定がクライアント設定を引き継ぐこと。"""
    config = ClientConfig(api_key="k", base_urls=["https://a"], reporting_flush_interval=3)
    reporting = config.reporting_config()
    assert reporting.api_key == "k"
    assert reporting.base_urls == ["https://a", DEFAULT_BASE_URL]
    assert reporting.flush_interval == 3


def test_deep_merge_replaces_lists() -> None:
    """辞書はマージ、リストは置換。"""
    base = {"retry": {"max_retries": 3, "max_delay": 1}, "base_urls": ["a"]}
    override = {"retry": {"max_retries": 5}, "base_urls": ["b"]}
    assert deep_merge(base, override) == {
        "retry": {"max_retries": 5, "max_delay": 1},
        "base_urls": ["b"],
    }


def test_deep_merge_none_removes_key() -> None:
    """上書き側の None はキーを削除すること。"""
    base = {"api_key": "k", "retry": {"max_retries": 1, "max_delay": 2}}
    merged = deep_merge(base, {"api_key": None, "retry": {"max_delay": None}})
    assert merged == {"retry": {"max_retries": 1}}


def test_load_config(tmp_path: Path) -> None:
    """ベース設定に環境別設定がマージされること。"""
    base = tmp_path / "flags.yaml"
    base.write_text("api_key: abc\npolling_interval: 10\nretry:\n  max_retries: 1\n")
    env = tmp_path / "flags.prod.yaml"
    env.write_text("polling_interval: 30\n")
    config = load_config(base, env)
    assert config.api_key == "abc"
    assert config.polling_interval == 30
    assert config.retry.max_retries == 1


def test_load_config_env_file_resets_to_default(tmp_path: Path) -> None:
    """環境別設定の null でデフォルト値に戻ること。"""
    base = tmp_path / "flags.yaml"
    base.write_text("polling_interval: 10\n")
    env = tmp_path / "flags.dev.yaml"
    env.write_text("polling_interval: null\n")
    assert load_config(base, env).polling_interval == 5.0


def test_load_config_section(tmp_path: Path) -> None:
    """アプリ設定ファイル内のセクションを読み込めること。"""
    app = tmp_path / "app.yaml"
    app.write_text("database:\n  url: x\nflags:\n  app_name: web\n  timeout: 2\n")
    config = load_config(app, section="flags")
    assert config.app_name == "web"
    assert config.timeout == 2


def test_load_config_missing_section_uses_defaults(tmp_path: Path) -> None:
    """セクションがなければデフォルト設定になること。"""
    app = tmp_path / "app.yaml"
    app.write_text("database:\n  url: x\n")
    assert load_config(app, section="flags") == ClientConfig()


def test_load_config_section_must_be_mapping(tmp_path: Path) -> None:
    """セクションが辞書でなければ PARSE_YAML エラー。"""
    app = tmp_path / "app.yaml"
    app.write_text("flags: [1, 2]\n")
    with pytest.raises(FlagError) as exc_info:
        load_config(app, section="flags")
    assert exc_info.value.code == FlagErrorCodes.PARSE_YAML


def test_load_remote_config(tmp_path: Path) -> None:
    """RemoteClientConfig として読み込めること。"""
    base = tmp_path / "flags.yaml"
    base.write_text("initial_context:\n  userId: u1\n")
    config = load_config(base, model=RemoteClientConfig)
    assert isinstance(config, RemoteClientConfig)
    assert config.initial_context == {"userId": "u1"}


def test_load_config_missing_env_is_ignored(tmp_path: Path) -> None:
    """存在しない環境別設定ファイルは無視されること。"""
    base = tmp_path / "flags.yaml"
    base.write_text("app_name: web\n")
    assert load_config(base, tmp_path / "missing.yaml").app_name == "web"


def test_load_config_missing_file(tmp_path: Path) -> None:
    """ベース設定ファイルがなければ READ_FILE エラー。"""
    with pytest.raises(FlagError) as exc_info:
        load_config(tmp_path / "missing.yaml")
    assert exc_info.value.code == FlagErrorCodes.READ_FILE


def test_load_config_invalid_yaml(tmp_path: Path) -> None:
    """不正な YAML は PARSE_YAML エラー。"""
    bad = tmp_path / "bad.yaml"
    bad.write_text("retry: {invalid: yaml: content:\n")
    with pytest.raises(FlagError) as exc_info:
        load_config(bad)
    assert exc_info.value.code == FlagErrorCodes.PARSE_YAML


def test_load_config_validation_error(tmp_path: Path) -> None:
    """検証エラーは CONFIG_ERROR。"""
    bad = tmp_path / "bad.yaml"
    bad.write_text("timeout: -5\n")
    with pytest.raises(FlagError) as exc_info:
        load_config(bad)
    assert exc_info.value.code == FlagErrorCodes.CONFIG_ERROR
    assert str(exc_info.value).startswith("CONFIG_ERROR: ")


def test_env_overrides_file_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """FLAGSYNC_ 環境変数がファイルの値より優先されること。"""
    base = tmp_path / "flags.yaml"
    base.write_text("api_key: from-file\npolling_interval: 10\nretry:\n  max_delay: 2\n")
    monkeypatch.setenv("FLAGSYNC_API_KEY", "from-env")
    monkeypatch.setenv("FLAGSYNC_RETRY__MAX_RETRIES", "7")
    monkeypatch.setenv("FLAGSYNC_BASE_URLS", '["https://proxy.internal"]')
    config = load_config(base)
    assert config.api_key == "from-env"
    assert config.polling_interval == 10
    assert config.retry.max_retries == 7
    assert config.retry.max_delay == 2
    assert config.base_urls == ["https://proxy.internal", DEFAULT_BASE_URL]


def test_env_only_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """ファイルなしで環境変数だけから設定できること。"""
    monkeypatch.setenv("FLAGSYNC_APP_NAME", "worker")
    monkeypatch.setenv("FLAGSYNC_REPORTING_ENABLED", "false")
    config = load_config()
    assert config.app_name == "worker"
    assert config.reporting_enabled is False


def test_env_ignored_when_disabled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """use_env=False なら環境変数を読まないこと。"""
    base = tmp_path / "flags.yaml"
    base.write_text("api_key: from-file\n")
    monkeypatch.setenv("FLAGSYNC_API_KEY", "from-env")
    assert load_config(base, use_env=False).api_key == "from-file"


def test_invalid_env_value_is_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """数値でない環境変数は CONFIG_ERROR。"""
    monkeypatch.setenv("FLAGSYNC_TIMEOUT", "soon")
    with pytest.raises(FlagError) as exc_info:
        load_config()
    assert exc_info.value.code == FlagErrorCodes.CONFIG_ERROR


def test_env_overlay_only_has_set_values(monkeypatch: pytest.MonkeyPatch) -> None:
    """未設定の項目は上書き辞書に含まれないこと。"""
    monkeypatch.setenv("FLAGSYNC_POLLING_INTERVAL", "0")
    assert EnvOverrides().as_overlay() == {"polling_interval": 0.0}
