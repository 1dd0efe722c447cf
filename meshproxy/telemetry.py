"""Logging setup with a filter that can be changed at run time."""

from __future__ import annotations

import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

LOG_ENV_VAR = "MESHPROXY_LOG"
DEFAULT_DIRECTIVE = "info"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 1,
}
_ALIASES = {"warning": "warn"}
_TARGET = re.compile(r"[A-Za-z_][\w.:\-]*")

APPLICATION_START_TIME = time.monotonic()


class TelemetryError(Exception):
    """Base class for logging configuration errors."""


class InvalidFilterError(TelemetryError):
    """A filter directive could not be parsed."""

    def __init__(self, message: str) -> None:
        super().__init__(f"parse failure: {message}")


class UninitializedError(TelemetryError):
    """Logging has not been set up yet."""

    def __init__(self) -> None:
        super().__init__("logging is not initialized")


def _parse_level(text: str) -> str:
    name = text.strip().lower()
    name = _ALIASES.get(name, name)
    if name not in _LEVELS:
        raise InvalidFilterError(f"invalid level {text!r}")
    return name


@dataclass(frozen=True)
class LogFilter:
    """A set of directives such as ``info,meshproxy.proxy=debug``."""

    default: str | None = None
    targets: tuple[tuple[str, str], ...] = ()

    @classmethod
    def parse(cls, text: str) -> LogFilter:
        default: str | None = None
        targets: dict[str, str] = {}
        for piece in (p.strip() for p in text.split(",")):
            if not piece:
                continue
            if "=" in piece:
                target, level = (part.strip() for part in piece.split("=", 1))
                if not _TARGET.fullmatch(target):
                    raise InvalidFilterError(f"invalid target {target!r}")
                targets[target] = _parse_level(level)
            elif _ALIASES.get(piece.lower(), piece.lower()) in _LEVELS:
                default = _parse_level(piece)
            elif _TARGET.fullmatch(piece):
                targets[piece] = "trace"
            else:
                raise InvalidFilterError(f"invalid directive {piece!r}")
        return cls(default, tuple(targets.items()))

    def level_for(self, logger_name: str) -> str:
        """The level name in force for a logger, by its most specific target."""
        best: tuple[int, str] | None = None
        for target, level in self.targets:
            if logger_name == target or logger_name.startswith(target + "."):
                if best is None or len(target) > best[0]:
                    best = (len(target), level)
        if best is not None:
            return best[1]
        return self.default if self.default is not None else "off"

    def enabled(self, logger_name: str, levelno: int) -> bool:
        return levelno >= _LEVELS[self.level_for(logger_name)]

    def __str__(self) -> str:
        pieces = [f"{target}={level}" for target, level in self.targets]
        if self.default is not None:
            pieces.append(self.default)
        return ",".join(pieces)


class _LogHandle:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.filter: LogFilter | None = None


_HANDLE = _LogHandle()


class _DirectiveFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        current = _HANDLE.filter
        return current is None or current.enabled(record.name, record.levelno)


def _default_env_filter() -> LogFilter:
    try:
        return LogFilter.parse(os.environ[LOG_ENV_VAR])
    except (KeyError, InvalidFilterError):
        return LogFilter.parse(DEFAULT_DIRECTIVE)


def setup_logging() -> None:
    """Install a stdout handler filtered by the directives in the environment."""
    with _HANDLE.lock:
        if _HANDLE.filter is not None:
            logger.warning("setup log handler failed")
            return
        _HANDLE.filter = _default_env_filter()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(_DirectiveFilter())
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(TRACE)


def set_level(reset: bool, level: str) -> None:
    """Add ``level`` to the current directives, or to the defaults if ``reset``."""
    with _HANDLE.lock:
        current = _HANDLE.filter
        if current is None:
            logger.warning("failed to get log handle")
            raise UninitializedError()
        base = _default_env_filter() if reset else current
        new_filter = LogFilter.parse(f"{base},{level}")
        _HANDLE.filter = new_filter
    logger.info("new log filter is %s", new_filter)


def get_current_loglevel() -> str:
    """The directives currently in force."""
    current = _HANDLE.filter
    if current is None:
        raise UninitializedError()
    return str(current)