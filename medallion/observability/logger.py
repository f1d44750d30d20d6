"""
Structured logging for medallion-etl

Every pipeline module logs through a child of the "medallion" logger, so a
single handler configured by setup_logger() (JSON by default, via
python-json-logger) carries batch ids, layers and counts as fields.
"""
import logging
import os
import sys
import time

from pythonjsonlogger import jsonlogger

DEFAULT_LOGGER_NAME = "medallion"

JSON_FORMAT = "%(timestamp)s %(level)s %(logger)s %(module)s %(function)s %(message)s"
TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(threadName)s] %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with timestamp, level, logger, source location and thread
    """

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        # Loader runs for different batches share a process
        log_record["thread_id"] = record.thread


def _resolve_level(level: str | None) -> int:
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _build_formatter(format_type: str) -> logging.Formatter:
    if format_type == "text":
        return logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    return CustomJsonFormatter(JSON_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    level: str | None = None,
    format_type: str | None = None,
) -> logging.Logger:
    """
    Configure a logger with a single stdout handler

    Args:
        name: Logger name
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL; defaults to LOG_LEVEL
        format_type: "json" or "text"; defaults to LOG_FORMAT, then "json"

    Returns:
        Configured logger instance
    """
    log_level = _resolve_level(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(_build_formatter((format_type or os.getenv("LOG_FORMAT") or "json").lower()))

    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """
    Module loggers ("medallion.batch.loader", ...) propagate to the
    "medallion" logger, which is configured on first use; other names get
    their own handler.
    """
    if name.startswith(f"{DEFAULT_LOGGER_NAME}."):
        if not logging.getLogger(DEFAULT_LOGGER_NAME).handlers:
            setup_logger(DEFAULT_LOGGER_NAME)
        return logging.getLogger(name)

    logger = logging.getLogger(name)
    return logger if logger.handlers else setup_logger(name)


class log_operation:
    """
    Log the start and outcome of an operation with its duration

    Fields passed to annotate() inside the block are added to the
    completion (or failure) line.

    Usage:
        with log_operation("Loading batch", logger=logger, batch_id="b1") as op:
            report = ...
            op.annotate(**report.counts())
    """

    def __init__(self, operation_name: str, logger: logging.Logger | None = None, **extra_fields):
        self.operation_name = operation_name
        self.logger = logger or get_logger()
        self.fields = {"operation": operation_name, **extra_fields}
        self.start_time: float | None = None
        self.end_time: float | None = None

    @property
    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return (self.end_time or time.monotonic()) - self.start_time

    def annotate(self, **fields) -> None:
        self.fields.update(fields)

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.info(f"Starting: {self.operation_name}", extra=self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.monotonic()
        outcome = {**self.fields, "duration_seconds": round(self.elapsed, 3)}

        if exc_type is None:
            self.logger.info(f"Completed: {self.operation_name}", extra={**outcome, "status": "success"})
        else:
            self.logger.error(
                f"Failed: {self.operation_name}",
                extra={
                    **outcome,
                    "status": "error",
                    "error_type": exc_type.__name__,
                    "error_message": str(exc_val),
                },
            )
        return False
