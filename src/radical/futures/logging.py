from __future__ import annotations

import json
import logging
import pathlib
import sys
import threading
from typing import Optional, Union

_COLORS = {
    "grey": "\033[90m",
    "cyan": "\033[96m",
    "blue": "\033[94m",
    "yellow": "\033[93m",
    "red": "\033[91m",
    "white": "\033[97m",
    "green": "\033[92m",
    "bright_purple": "\033[38;5;165m",
    "bold": "\033[1m",
    "reset": "\033[0m",
}

# LogRecord attributes that are not user supplied ``extra=`` fields
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "short_name", "thread_id", "asctime"}


class _ColoredFormatter(logging.Formatter):
    """Console formatter: timestamp │ level │ [component] │ message."""

    def __init__(self, use_colors: bool = True, show_details: bool = False) -> None:
        super().__init__()
        colors = _COLORS if use_colors else {k: "" for k in _COLORS}

        if show_details:
            detail_info = (
                f"{colors['green']}[TID:{colors['white']}%(thread_id)s"
                f"{colors['green']} PID:{colors['white']}%(process)d"
                f"{colors['green']}]{colors['reset']} "
            )
        else:
            detail_info = ""

        timestamp_fmt = f"{colors['grey']}%(asctime)s.%(msecs)03d{colors['reset']}"
        logger_fmt = f"{colors['bright_purple']}[%(short_name)s]{colors['reset']}"
        separator = " │ "
        date_format = "%Y-%m-%d %H:%M:%S"

        level_colors = {
            logging.DEBUG: colors["cyan"],
            logging.INFO: colors["blue"],
            logging.WARNING: colors["yellow"],
            logging.ERROR: colors["red"],
            logging.CRITICAL: colors["red"] + colors["bold"],
        }

        self.level_formatters = {
            level: logging.Formatter(
                f"{timestamp_fmt}{separator}{detail_info}{color}"
                f"%(levelname)s{colors['reset']}{separator}{logger_fmt}"
                f"{separator}%(message)s",
                datefmt=date_format,
            )
            for level, color in level_colors.items()
        }

    def format(self, record: logging.LogRecord) -> str:
        name = getattr(record, "name", None)
        if not name:
            record.short_name = "unknown"
        elif name == "__main__":
            record.short_name = "main"
        elif "backends.execution" in name:
            record.short_name = f"backend({name.split('.')[-1]})"
        else:
            record.short_name = name.split(".")[-1]

        formatter = self.level_formatters.get(
            record.levelno, self.level_formatters[logging.INFO]
        )
        return formatter.format(record)


class _StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # fields passed via extra=, e.g. extra={"future": uid}
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _thread_info_filter(record: logging.LogRecord) -> bool:
    """Add thread information to log records."""
    record.thread_id = threading.get_native_id()
    return True


def init_default_logger(
    log_level: Union[int, str] = logging.INFO,
    *,
    output_file: Optional[Union[str, pathlib.Path]] = None,
    file_log_level: Optional[Union[int, str]] = None,
    use_colors: bool = True,
    show_details: bool = False,
    clear_handlers: bool = False,
    logger_name: Optional[str] = None,
    structured_logging: bool = False,
    structured_file: Optional[Union[str, pathlib.Path]] = None,
) -> logging.Logger:
    """Setup and configure logging for applications using radical.futures.

    Args:
        log_level: Base logging level for console output.
        output_file: Path to log file. If provided, file logging is enabled.
        file_log_level: Logging level for file output. Defaults to log_level.
        use_colors: Enable colored console output.
        show_details: Include thread/process info in log messages.
        clear_handlers: Remove existing handlers from the logger first.
        logger_name: Name for the logger. If None, configures the root logger.
        structured_logging: Enable JSON structured logging to file.
        structured_file: Custom path for structured JSON log file.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(logger_name) if logger_name else logging.getLogger()

    if clear_handlers:
        logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        _ColoredFormatter(use_colors=use_colors, show_details=show_details)
    )
    console_handler.setLevel(log_level)
    if show_details:
        console_handler.addFilter(_thread_info_filter)
    logger.addHandler(console_handler)

    file_level = log_level if file_log_level is None else file_log_level

    if output_file is not None:
        file_path = pathlib.Path(output_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(
            _ColoredFormatter(use_colors=False, show_details=show_details)
        )
        file_handler.setLevel(file_level)
        if show_details:
            file_handler.addFilter(_thread_info_filter)
        logger.addHandler(file_handler)

    if structured_logging:
        if structured_file is None:
            if output_file is not None:
                structured_file = pathlib.Path(output_file).with_suffix(".json")
            else:
                structured_file = "radical.futures.logs.json"

        struct_path = pathlib.Path(structured_file)
        struct_path.parent.mkdir(parents=True, exist_ok=True)

        struct_handler = logging.FileHandler(struct_path)
        struct_handler.setFormatter(_StructuredFormatter())
        struct_handler.setLevel(file_level)
        if show_details:
            struct_handler.addFilter(_thread_info_filter)
        logger.addHandler(struct_handler)

    logger.setLevel(logging.NOTSET)

    # warnings replayed from futures then end up in the log as well
    logging.captureWarnings(True)

    logger.debug(
        "Logger configured - Console: %s, File: %s, Structured: %s",
        logging.getLevelName(log_level) if isinstance(log_level, int) else log_level,
        output_file or "disabled",
        str(structured_file) if structured_logging else "disabled",
    )

    return logger


def get_logger(
    name: str = None, level: Union[int, str] = logging.INFO
) -> logging.Logger:
    """Quick logger setup for simple use cases."""
    if not logging.getLogger().handlers:
        init_default_logger(level, logger_name=name)
    return logging.getLogger(name)
