"""
Segmentation Logging

All segmentation loggers hang below the "segmentation" package logger, which
owns the only handler. Module loggers carry no level or handler of their own.

Records may carry engine context through ``extra`` (or a ContextAdapter):
    task        maintenance job or pass name ("date-expr-recompute", ...)
    item_type   "segment", "scoring", "rule" or "profile"
    item_id     id of the definition or rule being processed
    profile_id  profile touched by a single update
    failed      ids that failed in a bulk operation

Text output appends the context as key=value pairs; JSON output (enabled with
SEGMENTATION_LOG_JSON) emits it as top-level keys. Other extra attributes are
ignored.

Usage:
    from segmentation.core.logging import get_logger, with_context

    logger = get_logger(__name__)
    logger.info("%d profiles updated", count, extra={"item_id": segment_id})

    log = with_context(logger, task="past-event-recompute")
    log.error("Recount failed", extra={"item_id": rule_id}, exc_info=True)
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Optional, Union

from .config import get_settings

PACKAGE_LOGGER = "segmentation"

# Context attributes rendered by the formatter, in output order
CONTEXT_FIELDS = ("task", "item_type", "item_id", "profile_id", "failed")


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Engine context carried by a record, without unset fields."""
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class SegmentationFormatter(logging.Formatter):
    """Text or JSON formatter aware of the engine context fields."""

    def __init__(self, json_output: bool = False) -> None:
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        context = record_context(record)
        if self.json_output:
            return self._format_json(record, context)
        return self._format_text(record, context)

    def _format_text(self, record: logging.LogRecord, context: dict[str, Any]) -> str:
        module = record.name.rsplit(".", 1)[-1]
        msg = f"[SEGMENTATION {record.levelname}] [{module}] {record.getMessage()}"

        if context:
            msg += " " + " ".join(f"{name}={_text_value(value)}" for name, value in context.items())
        if record.exc_info:
            msg += "\n" + "".join(traceback.format_exception(*record.exc_info)).rstrip()
        return msg

    def _format_json(self, record: logging.LogRecord, context: dict[str, Any]) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **context,
        }
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(log_data, default=str)


def _text_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(str(v) for v in value)
    return str(value)


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter whose bound context is merged with per-call extra."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def with_context(logger: logging.Logger, **context: Any) -> ContextAdapter:
    """Bind engine context fields to a logger."""
    return ContextAdapter(logger, context)


# =============================================================================
# Configuration
# =============================================================================

_handler: Optional[logging.Handler] = None


def _configure_package_logger() -> None:
    global _handler
    if _handler is not None:
        return

    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(SegmentationFormatter(json_output=get_settings().log_json))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(_handler)
    package_logger.setLevel(get_settings().log_level_int)
    package_logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger below the segmentation package logger.

    Args:
        name: Module name (typically __name__)
    """
    _configure_package_logger()
    return logging.getLogger(name)


def set_log_level(level: Union[int, str]) -> None:
    """
    Override the configured level for every segmentation logger.

    Args:
        level: logging constant or level name ("DEBUG", "info", ...)
    """
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")
    _configure_package_logger()
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)


def reset_logging() -> None:
    """
    Detach the package handler and let records propagate to the root logger.

    Used by test fixtures so pytest's caplog sees every record.
    """
    global _handler

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if _handler is not None:
        package_logger.removeHandler(_handler)
        _handler = None
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
