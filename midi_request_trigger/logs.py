"""
Logging setup.

Configures process wide handlers from LogConfig and provides the per
router verbosity gate.
"""

import gzip
import json
import logging
import logging.handlers
import os
import shutil
import sys
from enum import IntEnum
from pathlib import Path

from . import SERVICE_NAME
from .config import LogConfig

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogLevel(IntEnum):
    """Router verbosity. A message is logged when its level <= the router's."""
    INFO = 0
    ERROR = 1
    RECEIVE = 2  # MQTT, HTTP and MIDI receive logging
    SEND = 3  # MQTT, HTTP and MIDI send logging
    DEBUG = 4


_PYTHON_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.RECEIVE: logging.INFO,
    LogLevel.SEND: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
}


class RouterLogger:
    """Logger adapter applying a router's log level."""

    def __init__(self, name: str, level: int):
        self.name = name
        self.level = level
        self._logger = logging.getLogger(f"{__package__}.router")

    def enabled(self, level: LogLevel) -> bool:
        return level <= self.level

    def log(self, level: LogLevel, msg: str, *args, exc_info: bool = False) -> None:
        if not self.enabled(level):
            return
        self._logger.log(_PYTHON_LEVELS[level], f"[{self.name}] {msg}", *args, exc_info=exc_info)

    def info(self, msg: str, *args) -> None:
        self.log(LogLevel.INFO, msg, *args)

    def error(self, msg: str, *args, exc_info: bool = False) -> None:
        self.log(LogLevel.ERROR, msg, *args, exc_info=exc_info)

    def receive(self, msg: str, *args) -> None:
        self.log(LogLevel.RECEIVE, msg, *args)

    def send(self, msg: str, *args) -> None:
        self.log(LogLevel.SEND, msg, *args)

    def debug(self, msg: str, *args) -> None:
        self.log(LogLevel.DEBUG, msg, *args)


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "time": self.formatTime(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
        return json.dumps(data)


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


def default_log_path() -> Path | None:
    """
    Pick a writable default log file.

    /var/log is preferred on POSIX systems, then the executable's directory.
    """
    name = f"{SERVICE_NAME}.log"
    candidates = []
    if os.name != "nt":
        candidates.append(Path("/var/log") / name)
    candidates.append(Path(sys.argv[0]).resolve().parent / name)

    for path in candidates:
        try:
            with open(path, "a"):
                pass
            return path
        except OSError:
            continue
    return None


def build_handlers(config: LogConfig) -> list[logging.Handler]:
    """Create one handler per configured output."""
    handlers: list[logging.Handler] = []
    for output in config.outputs:
        if output == "console":
            handlers.append(logging.StreamHandler(sys.stderr))
            continue

        if output == "default-file":
            path = default_log_path()
            if path is None:
                logging.getLogger(__name__).warning(
                    "Unable to find a writable log path to save log to."
                )
                continue
        else:
            path = Path(output)

        handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=config.max_size * 1024 * 1024,
            backupCount=config.max_backups,
        )
        if config.compress:
            handler.namer = lambda name: name + ".gz"
            handler.rotator = _gzip_rotator
        handlers.append(handler)
    return handlers


def apply_log_config(config: LogConfig) -> None:
    """Configure the root logger from LogConfig."""
    if config.type == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    handlers = build_handlers(config)
    root = logging.getLogger()
    root.setLevel(LEVELS.get(config.level, logging.ERROR))
    if not handlers:
        return

    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
