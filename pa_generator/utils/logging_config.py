"""Logging configuration for the command-line entry point.

Library modules only call ``logging.getLogger(__name__)``; handlers are
installed once by the application through :func:`setup_logging`:
    - Console handler (stderr) with optional ANSI colours
    - Optional file handler with size- or time-based rotation
    - JSON output mode for log shippers
    - Contextual fields (job, profile, ...) attached to every record
    - Python warnings routed into logging

Public API:
    setup_logging(log_level="INFO", context={"app": "pa-generate"})
    push_context(job="PA_Test.gcode")
    pop_context(keys=["job"])
    install_excepthook()

Format examples:
    Human: 2026-03-02T09:14:55.102Z | INFO     | app=pa-generate | Layout 2x2
    JSON: {"t": "2026-03-02T09:14:55.102+00:00", "lvl": "INFO", "msg": "..."}

Context uses contextvars so concurrent generator threads keep their own
fields.  Repeated setup_logging() calls replace handlers instead of
stacking them.
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_context_var: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "pa_logging_context", default={}
)

_configured = False

_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"


class ContextFormatter(logging.Formatter):
    """Formatter that appends the current context fields.

    Parameters
    ----------
    fmt_mode : ``"human"`` | ``"json"``
        Output layout.
    use_color : bool
        Colourise the level name (only honoured on a TTY).
    tz : str
        ``"UTC"`` or ``"local"`` timestamps.
    """

    def __init__(
        self,
        fmt_mode: str = "human",
        use_color: bool = True,
        tz: str = "UTC",
    ) -> None:
        super().__init__()
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"fmt_mode must be 'human' or 'json', got {fmt_mode!r}")
        self.fmt_mode = fmt_mode
        self.use_color = use_color and sys.stderr.isatty()
        self.tz = tz

    def format(self, record: logging.LogRecord) -> str:
        context = _context_var.get()
        if self.tz == "UTC":
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        else:
            ts = datetime.fromtimestamp(record.created)

        if self.fmt_mode == "json":
            return self._format_json(record, ts, context)
        return self._format_human(record, ts, context)

    def _format_json(
        self,
        record: logging.LogRecord,
        ts: datetime,
        context: dict[str, Any],
    ) -> str:
        payload: dict[str, Any] = {
            "t": ts.isoformat(),
            "lvl": record.levelname,
            "name": record.name,
            "pid": os.getpid(),
            "msg": record.getMessage(),
        }
        payload.update(context)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)

    def _format_human(
        self,
        record: logging.LogRecord,
        ts: datetime,
        context: dict[str, Any],
    ) -> str:
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{_COLORS.get(record.levelname, '')}{level}{_RESET}"

        parts = [ts_str, "|", level, "|"]
        if context:
            parts.append(" ".join(f"{k}={v}" for k, v in context.items()))
            parts.append("|")
        parts.append(record.getMessage())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    log_file: str | Path | None = None,
    *,
    json_format: bool = False,
    color: bool = True,
    to_stderr: bool = True,
    rotate: dict[str, Any] | None = None,
    tz: str = "UTC",
    capture_warnings: bool = True,
    quiet_libs: list[str] | None = None,
    context: dict[str, Any] | None = None,
) -> list[logging.Handler]:
    """Configure the root logger (idempotent).

    Parameters
    ----------
    log_level : str
        ``"DEBUG"``, ``"INFO"``, ``"WARNING"``, ``"ERROR"`` or ``"CRITICAL"``.
    log_file : str | Path | None
        Optional log file path.
    json_format : bool
        Write JSON lines instead of the human layout.
    color : bool
        Colourise console level names.
    to_stderr : bool
        Attach a console handler.
    rotate : dict | None
        ``{"mode": "size", "max_bytes": ..., "backup_count": ...}`` or
        ``{"mode": "time", "when": "D", "interval": 1, "backup_count": ...}``.
    tz : str
        ``"UTC"`` or ``"local"``.
    capture_warnings : bool
        Route :mod:`warnings` through logging.
    quiet_libs : list[str] | None
        Logger names forced to WARNING.
    context : dict | None
        Initial context fields.

    Returns
    -------
    list[logging.Handler]
        Handlers attached to the root logger.

    Raises
    ------
    ValueError
        On an unknown level name or rotation mode.
    """
    global _configured

    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level!r}")

    root = logging.getLogger()
    if _configured:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)

    handlers: list[logging.Handler] = []
    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(
            ContextFormatter("json" if json_format else "human", color, tz)
        )
        handlers.append(console)
    if log_file:
        handlers.append(_create_file_handler(log_file, rotate, json_format, tz))

    for handler in handlers:
        root.addHandler(handler)

    if context:
        push_context(**context)

    for lib in quiet_libs or []:
        logging.getLogger(lib).setLevel(logging.WARNING)

    if capture_warnings:
        logging.captureWarnings(True)

    _configured = True
    return handlers


def _create_file_handler(
    log_file: str | Path,
    rotate: dict[str, Any] | None,
    json_format: bool,
    tz: str,
) -> logging.Handler:
    """Create a file handler with optional rotation."""
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler: logging.Handler
    if rotate:
        mode = rotate.get("mode", "size")
        if mode == "size":
            handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=rotate.get("max_bytes", 10_000_000),
                backupCount=rotate.get("backup_count", 3),
            )
        elif mode == "time":
            handler = logging.handlers.TimedRotatingFileHandler(
                log_path,
                when=rotate.get("when", "D"),
                interval=rotate.get("interval", 1),
                backupCount=rotate.get("backup_count", 7),
            )
        else:
            raise ValueError(
                f"Unknown rotation mode: {mode}. Use 'size' or 'time'."
            )
    else:
        handler = logging.FileHandler(log_path)

    handler.setFormatter(
        ContextFormatter("json" if json_format else "human", use_color=False, tz=tz)
    )
    return handler


def push_context(**kwargs: Any) -> None:
    """Add fields to every subsequent record in this context."""
    _context_var.set({**_context_var.get(), **kwargs})


def pop_context(keys: list[str] | None = None) -> None:
    """Remove the given context fields, or all of them when *keys* is None."""
    if keys is None:
        _context_var.set({})
        return
    current = dict(_context_var.get())
    for key in keys:
        current.pop(key, None)
    _context_var.set(current)


def install_excepthook() -> None:
    """Log uncaught exceptions (except Ctrl+C) before the interpreter exits."""

    def log_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger(__name__).critical(
            "Uncaught exception",
            exc_info=(exc_type, exc_value, exc_traceback),
        )

    sys.excepthook = log_exception
