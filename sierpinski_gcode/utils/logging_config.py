"""Logging setup for the command-line entry point.

Everything logs through ``logging.getLogger(__name__)``; this module only
wires the root logger:
    - stderr console handler (G-code may be going to stdout)
    - optional file handler
    - human or JSON line format
    - contextual fields (config, order, ...) attached to every record
    - Python warnings and uncaught exceptions routed to logging

Public API:
    setup_logging(log_level="INFO", log_file=None, json=False, context={...})
    push_context(config="pyramid.yaml")
    pop_context(keys=["config"])
    install_excepthook()

Format examples:
    Human: 2026-03-02T09:14:05.120Z | INFO     | config=pyramid.yaml | Built 71 layers
    JSON: {"t":"2026-03-02T09:14:05.120000+00:00","lvl":"INFO","config":"pyramid.yaml","msg":"..."}

Idempotent: repeated setup_logging() calls don't duplicate handlers.
"""

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sierpinski_gcode.utils.fs import ensure_dir

_context_var = contextvars.ContextVar("logging_context", default={})

_configured = False


class ContextFormatter(logging.Formatter):
    """Formatter that appends fields set with :func:`push_context`.

    Parameters
    ----------
    fmt_mode : str
        ``"human"`` or ``"json"``.
    use_color : bool
        ANSI level colors; ignored when stderr is not a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt_mode: str = "human", use_color: bool = True):
        super().__init__()
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"Unknown log format: {fmt_mode}. Use 'human' or 'json'.")
        self.fmt_mode = fmt_mode
        self.use_color = use_color and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        context = _context_var.get({})
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)

        if self.fmt_mode == "json":
            return self._format_json(record, ts, context)
        return self._format_human(record, ts, context)

    def _format_json(self, record: logging.LogRecord, ts: datetime, context: dict) -> str:
        entry = {
            "t": ts.isoformat(),
            "lvl": record.levelname,
            "name": record.name,
            "pid": os.getpid(),
            "msg": record.getMessage(),
        }
        entry.update(context)
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)

    def _format_human(self, record: logging.LogRecord, ts: datetime, context: dict) -> str:
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        parts = [ts_str, "|", level, "|"]
        if context:
            parts.append(" ".join(f"{k}={v}" for k, v in context.items()) + " |")
        parts.append(record.getMessage())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json: bool = False,
    capture_warnings: bool = True,
    context: Optional[Dict[str, Any]] = None,
) -> List[logging.Handler]:
    """Configure the root logger (idempotent).

    Parameters
    ----------
    log_level : str
        "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL".
    log_file : str, optional
        Also log to this file.
    json : bool
        JSON lines instead of the human format, on every handler.
    capture_warnings : bool
        Route Python warnings to logging.
    context : dict, optional
        Initial contextual fields.

    Returns
    -------
    list[logging.Handler]
        Handlers installed on the root logger.
    """
    global _configured

    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    root = logging.getLogger()
    if _configured:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)

    fmt_mode = "json" if json else "human"
    handlers: List[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ContextFormatter(fmt_mode))
    handlers.append(console)

    if log_file:
        ensure_dir(os.path.dirname(os.path.abspath(log_file)))
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(ContextFormatter(fmt_mode, use_color=False))
        handlers.append(file_handler)

    for handler in handlers:
        root.addHandler(handler)

    if context:
        push_context(**context)

    if capture_warnings:
        route_warnings()

    _configured = True
    return handlers


def push_context(**kwargs) -> None:
    """Add fields to every subsequent log record.

    Examples
    --------
    >>> push_context(config="pyramid.yaml", order=3)
    >>> logger.info("Built layers")  # → "... | config=pyramid.yaml order=3 | Built layers"
    """
    _context_var.set({**_context_var.get({}), **kwargs})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Remove contextual fields; all of them when ``keys`` is None."""
    if keys is None:
        _context_var.set({})
        return
    current = dict(_context_var.get({}))
    for key in keys:
        current.pop(key, None)
    _context_var.set(current)


def install_excepthook() -> None:
    """Log uncaught exceptions (except Ctrl+C) before the process exits."""

    def log_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger(__name__).critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = log_exception


def route_warnings() -> None:
    """Route Python warnings to the ``py.warnings`` logger."""
    logging.captureWarnings(True)
    logging.getLogger("py.warnings").setLevel(logging.WARNING)


def shutdown() -> None:
    """Flush and close all handlers."""
    logging.shutdown()
