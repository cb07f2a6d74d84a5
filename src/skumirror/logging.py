"""
Structured logging for the image mirror.

Provides:
- Context variables for cache_key and request_id (using contextvars)
- JSONFormatter for JSON-lines log files
- ContextRichHandler for console output with context and keyword fields
- ContextLogger wrapper: ``logger.info("Stored image", key=..., size=...)``
- setup_logging() that configures both file and console handlers
- log_context() for scoped context
- get_logger() factory
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.text import Text

ROOT_LOGGER = "skumirror"
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")

_cache_key_var: ContextVar[str | None] = ContextVar("cache_key", default=None)
_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_cache_key() -> str | None:
    """Cache key of the download being worked on, if any."""
    return _cache_key_var.get()


def get_request_id() -> str | None:
    """ID of the HTTP request being served, if any."""
    return _request_id_var.get()


def context_fields() -> dict[str, str]:
    """Context values that are currently set."""
    fields: dict[str, str] = {}
    cache_key = _cache_key_var.get()
    request_id = _request_id_var.get()
    if cache_key:
        fields["cache_key"] = cache_key
    if request_id:
        fields["request_id"] = request_id
    return fields


@contextmanager
def log_context(
    cache_key: str | None = None,
    request_id: str | None = None,
) -> Generator[None, None, None]:
    """Set logging context for the duration of the block.

    Values left as None keep whatever the enclosing context set.
    Nesting is safe; each block restores exactly what it replaced.
    """
    tokens = []
    if cache_key is not None:
        tokens.append((_cache_key_var, _cache_key_var.set(cache_key)))
    if request_id is not None:
        tokens.append((_request_id_var, _request_id_var.set(request_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log files."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(context_fields())

        extra = getattr(record, "extra", None)
        if extra:
            log_obj["extra"] = extra
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class ContextRichHandler(RichHandler):
    """Rich handler showing request id and cache key next to the level."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        fields = context_fields()
        if not fields:
            return level_text

        prefix = Text()
        if "request_id" in fields:
            prefix.append(f" {fields['request_id'][:8]}", style="dim")
        if "cache_key" in fields:
            prefix.append(f" {fields['cache_key']}", style="cyan")
        return Text.assemble(level_text, prefix)

    def render_message(self, record: logging.LogRecord, message: str) -> Any:
        extra = getattr(record, "extra", None) or {}
        shown = " ".join(
            f"{k}={v}" for k, v in extra.items() if k not in ("cache_key", "request_id")
        )
        if shown:
            message = f"{message} [dim]{escape(shown)}[/dim]"
        return super().render_message(record, message)


class ContextLogger:
    """Logger wrapper that turns keyword arguments into structured fields.

    The current logging context is merged in, so every record written while
    a download or request is in progress carries its key or request id.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = dict(fields.pop("extra", None) or {})
        extra.update(context_fields())
        extra.update(fields)
        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.INFO, msg, *args, **fields)

    def warning(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.WARNING, msg, *args, **fields)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **fields: Any) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **fields)

    def exception(self, msg: str, *args: Any, **fields: Any) -> None:
        """Log at ERROR level with the active exception's traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **fields)


_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Shared stderr console used by the log handler."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the ``skumirror`` logger tree.

    Args:
        log_level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional JSON-lines file; it always receives DEBUG and up.
        console_output: Whether to log to the rich console.
    """
    global _setup_done

    level = logging.getLevelName(log_level.upper())
    root_logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)
        root_logger.setLevel(logging.DEBUG)
    else:
        root_logger.setLevel(level)

    if console_output:
        rich_handler = ContextRichHandler(
            console=get_console(),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=True,
        )
        rich_handler.setLevel(level)
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Return a ContextLogger under the ``skumirror`` namespace.

    Logging is configured with defaults on first use if nobody called
    setup_logging() yet.
    """
    if not _setup_done:
        setup_logging()

    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return ContextLogger(logging.getLogger(name))
