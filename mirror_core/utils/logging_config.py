"""Unified logging configuration for all entrypoints.

Provides consistent logging across the calibration and playback scripts:
    - Console and file handlers with rotation
    - JSON output mode for ingestion (ELK, Vector, etc.)
    - Contextual fields (app, run, tile)
    - Warning capture (Python warnings → logging)
    - Uncaught exception logging

Public API:
    setup_logging(**yaml_cfg.logging, context={"app": "calibrate"})
    get_logger(name)
    push_context(run="a1b2", tile="0-3")
    pop_context(keys=["tile"])
    with log_context(tile="0-3"): ...
    install_excepthook()
    shutdown()

Format examples:
    Human: 2025-10-28T13:45:12.345Z | INFO     | app=calibrate run=a1b2 | Message
    JSON: {"t":"2025-10-28T13:45:12.345+00:00","lvl":"INFO","run":"a1b2","msg":"..."}

Context uses contextvars, so fields pushed on the runner's worker thread do
not leak into the caller's thread.  Timestamps are always UTC.

setup_logging() only ever removes handlers it installed itself, so calling
it twice does not duplicate output and does not disturb handlers added by
a host application or test harness.
"""

import contextlib
import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


# Fields appended to every record formatted by ContextFormatter
_context_var = contextvars.ContextVar('logging_context', default={})

# Handlers owned by setup_logging(); replaced on reconfiguration
_installed: List[logging.Handler] = []

# Hook replaced by install_excepthook(); restored by shutdown()
_previous_excepthook = None

_LEVEL_COLORS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[35m',
}
_RESET = '\033[0m'


def _parse_level(log_level: str) -> int:
    level = getattr(logging, str(log_level).upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    return level


class ContextFormatter(logging.Formatter):
    """Render records together with the fields from push_context().

    ``fmt_mode="human"`` produces ``ts | LEVEL | k=v ... | message`` with
    optional ANSI level colors; ``fmt_mode="json"`` produces one JSON object
    per line with the context merged in at top level.
    """

    def __init__(self, fmt_mode: str = "human", use_color: bool = True):
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"Unknown format mode: {fmt_mode}. Use 'human' or 'json'.")
        super().__init__()
        self.fmt_mode = fmt_mode
        self.use_color = use_color and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        context = _context_var.get({})
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if self.fmt_mode == "json":
            return self._format_json(record, ts, context)
        return self._format_human(record, ts, context)

    def _format_json(self, record: logging.LogRecord, ts: datetime, context: dict) -> str:
        payload = {
            't': ts.isoformat(timespec='milliseconds'),
            'lvl': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            **context,
            'msg': record.getMessage(),
        }
        if record.exc_info:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)

    def _format_human(self, record: logging.LogRecord, ts: datetime, context: dict) -> str:
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{_LEVEL_COLORS.get(record.levelname, '')}{level}{_RESET}"

        fields = [ts.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z', level]
        if context:
            fields.append(' '.join(f"{k}={v}" for k, v in context.items()))
        fields.append(record.getMessage())
        line = ' | '.join(fields)

        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)
        return line


def _file_handler(log_file: str, rotate: Optional[Dict[str, Any]]) -> logging.Handler:
    """Plain, size-rotated or time-rotated file handler."""
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)

    if not rotate:
        return logging.FileHandler(path, encoding='utf-8')

    mode = rotate.get('mode', 'size')
    if mode == 'size':
        return logging.handlers.RotatingFileHandler(
            path,
            maxBytes=int(rotate.get('max_bytes', 10_000_000)),
            backupCount=int(rotate.get('backup_count', 5)),
            encoding='utf-8',
        )
    if mode == 'time':
        return logging.handlers.TimedRotatingFileHandler(
            path,
            when=rotate.get('when', 'D'),
            interval=int(rotate.get('interval', 1)),
            backupCount=int(rotate.get('backup_count', 7)),
            encoding='utf-8',
            utc=True,
        )
    raise ValueError(f"Unknown rotation mode: {mode}. Use 'size' or 'time'.")


def _detach_installed() -> None:
    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json: bool = False,
    color: bool = True,
    to_stderr: bool = True,
    rotate: Optional[Dict[str, Any]] = None,
    capture_warnings: bool = True,
    context: Optional[Dict[str, Any]] = None,
) -> List[logging.Handler]:
    """Configure the root logger (idempotent).

    Parameters
    ----------
    log_level : str
        "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL"
    log_file : str, optional
        Log file path; None for no file logging
    json : bool
        JSON lines in the log file instead of the human format
    color : bool
        ANSI level colors on the console (ignored when stderr is not a TTY)
    to_stderr : bool
        Attach a console handler
    rotate : dict, optional
        ``{"mode": "size", "max_bytes": ..., "backup_count": ...}`` or
        ``{"mode": "time", "when": "D", "interval": 1, "backup_count": ...}``
    capture_warnings : bool
        Route ``warnings.warn`` through logging
    context : dict, optional
        Initial contextual fields, e.g. ``{"app": "calibrate"}``

    Returns
    -------
    list[logging.Handler]
        Handlers attached to the root logger by this call.

    Raises
    ------
    ValueError
        If ``log_level`` or the rotation mode is unknown.

    Examples
    --------
    >>> setup_logging(log_level="INFO", log_file="outputs/logs/calibrate.log",
    ...               rotate={"mode": "size", "max_bytes": 10_000_000, "backup_count": 5},
    ...               context={"app": "calibrate"})
    """
    level = _parse_level(log_level)
    # Build the file handler before touching the root so a bad rotation
    # config leaves the previous setup in place.
    file_handler = _file_handler(log_file, rotate) if log_file else None

    _detach_installed()
    root = logging.getLogger()
    root.setLevel(level)

    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ContextFormatter("human", use_color=color))
        _installed.append(console)
    if file_handler is not None:
        file_handler.setFormatter(
            ContextFormatter("json" if json else "human", use_color=False)
        )
        _installed.append(file_handler)
    for handler in _installed:
        root.addHandler(handler)

    if context:
        push_context(**context)
    if capture_warnings:
        route_warnings()

    return list(_installed)


def get_logger(name: str) -> logging.Logger:
    """Get logger by name (typically ``__name__``)."""
    return logging.getLogger(name)


def set_level(level: str) -> None:
    """Update root logger level at runtime.

    Examples
    --------
    >>> set_level("DEBUG")  # Show every motor command
    """
    logging.getLogger().setLevel(_parse_level(level))


def push_context(**kwargs) -> None:
    """Add contextual fields to all subsequent log records.

    Parameters
    ----------
    **kwargs
        Key-value pairs to add (e.g., run="a1b2", tile="0-3")

    Examples
    --------
    >>> push_context(app="calibrate", run="a1b2")
    >>> logger.info("Homing")  # → "... | app=calibrate run=a1b2 | Homing"
    """
    _context_var.set({**_context_var.get({}), **kwargs})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Remove contextual fields; all of them when *keys* is None."""
    if keys is None:
        _context_var.set({})
        return
    current = dict(_context_var.get({}))
    for key in keys:
        current.pop(key, None)
    _context_var.set(current)


def get_context() -> Dict[str, Any]:
    """Return a copy of the current contextual fields."""
    return dict(_context_var.get({}))


@contextlib.contextmanager
def log_context(**kwargs) -> Iterator[None]:
    """Push fields for the duration of a ``with`` block.

    Examples
    --------
    >>> with log_context(tile="1-2"):
    ...     logger.info("Measuring")  # → "... | tile=1-2 | Measuring"
    """
    push_context(**kwargs)
    try:
        yield
    finally:
        pop_context(keys=list(kwargs))


def install_excepthook() -> None:
    """Log uncaught exceptions (with the current context) before exiting.

    Ctrl+C is handed to the previous hook unlogged.  ``shutdown()`` puts the
    previous hook back.
    """
    global _previous_excepthook
    if _previous_excepthook is None:
        _previous_excepthook = sys.excepthook
    previous = _previous_excepthook

    def log_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            previous(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger(__name__).critical(
            "Uncaught %s", exc_type.__name__,
            exc_info=(exc_type, exc_value, exc_traceback),
        )

    sys.excepthook = log_exception


def route_warnings() -> None:
    """Route Python warnings to the ``py.warnings`` logger."""
    logging.captureWarnings(True)
    logging.getLogger('py.warnings').setLevel(logging.WARNING)


def shutdown() -> None:
    """Undo setup_logging() and install_excepthook() at the end of main().

    Flushes and closes the installed handlers, stops warning capture,
    restores the previous excepthook and clears the context.
    """
    global _previous_excepthook
    for handler in _installed:
        handler.flush()
    _detach_installed()
    logging.captureWarnings(False)
    if _previous_excepthook is not None:
        sys.excepthook = _previous_excepthook
        _previous_excepthook = None
    pop_context()
