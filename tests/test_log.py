"""ログ設定のテスト"""

import json
import logging
from collections.abc import Iterator

import pytest
import structlog
from flagsync.log import LOGGER_NAME, configure_logging


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    lib_logger = logging.getLogger(LOGGER_NAME)
    lib_logger.handlers.clear()
    lib_logger.propagate = True
    lib_logger.setLevel(logging.NOTSET)
    structlog.reset_defaults()


def test_stdlib_records_render_as_json(capsys: pytest.CaptureFixture[str]) -> None:
    """標準 logging のレコードが extra 付きの JSON で出力されること。"""
    configure_logging("DEBUG", "json")
    logging.getLogger("flagsync.fetch").warning("Fetch failed", extra={"endpoint": "https://a"})
    line = capsys.readouterr().out.strip().splitlines()[-1]
    data = json.loads(line)
    assert data["event"] == "Fetch failed"
    assert data["endpoint"] == "https://a"
    assert data["level"] == "warning"
    assert data["logger"] == "flagsync.fetch"


def test_level_filters_records(capsys: pytest.CaptureFixture[str]) -> None:
    """ログレベル未満のレコードは出力されないこと。"""
    configure_logging("WARNING", "json")
    logging.getLogger("flagsync.events").debug("quiet")
    assert capsys.readouterr().out == ""


def test_returns_bound_logger(capsys: pytest.CaptureFixture[str]) -> None:
    """設定済みの structlog ロガーが返ること。"""
    logger = configure_logging("INFO", "text")
    logger.info("client started", slug_count=3)
    out = capsys.readouterr().out
    assert "client started" in out
    assert "slug_count" in out
