"""structlog ベースのロガー設定"""

from __future__ import annotations

import logging
import sys

import structlog

from .config import LogSection

COMPONENT = "k1s0-flagengine"


def new_logger(level: str = "INFO", format: str = "json") -> structlog.stdlib.BoundLogger:
    """flagengine 用に structlog を設定し、component を束縛したロガーを返す。

    ライブラリ内の各モジュールは ``structlog.get_logger(__name__)`` で取得したロガーを使うため、
    ここでの設定がそのまま反映される。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: structlog.types.Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.getLogger().setLevel(log_level)

    return structlog.stdlib.get_logger().bind(component=COMPONENT)


def configure_logging(section: LogSection) -> structlog.stdlib.BoundLogger:
    return new_logger(level=section.level, format=section.format)
