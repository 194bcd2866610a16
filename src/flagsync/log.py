"""flagsync ロガー配下の structlog ベースのログ出力設定"""

from __future__ import annotations

import logging
import sys

import structlog

LOGGER_NAME = "flagsync"


def configure_logging(level: str = "INFO", format: str = "json") -> structlog.stdlib.BoundLogger:
    """flagsync のログレコードを structlog で出力し、設定済みのロガーを返す。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")

    Returns:
        flagsync という名前の設定済み structlog.stdlib.BoundLogger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: structlog.types.Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    lib_logger = logging.getLogger(LOGGER_NAME)
    for existing in list(lib_logger.handlers):
        lib_logger.removeHandler(existing)
    lib_logger.addHandler(handler)
    lib_logger.setLevel(log_level)
    lib_logger.propagate = False

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.stdlib.get_logger(LOGGER_NAME)
