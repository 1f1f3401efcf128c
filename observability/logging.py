"""Log setup for the courier service.

Every record carries the batch it belongs to, so the lines written while a
digest is composed, rendered, dispatched and marked can be grepped together:

    10:02:11 [INFO] [3f9c0a1be2d4 task:hourly-tech] composer: Dispatching batch | ...

Outside a composition the context fields print as ``-``.

Output goes to stdout and to ``LOG_DIR/courier.log``, as text or one JSON
object per line (LOG_FORMAT). The file rotates by size when LOG_MAX_BYTES
is set, otherwise at midnight. An unwritable LOG_DIR degrades to
console-only logging with a warning on stderr.
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "courier.log"

_batch: contextvars.ContextVar[tuple[str, str]] = contextvars.ContextVar(
    "courier_batch", default=("-", "-")
)

# Libraries that log per request at INFO
_NOISY = ("aiohttp.access", "aiohttp.client", "aiohttp.server", "asyncio", "croniter")


def set_batch_context(batch_id: str, trigger: str = "-") -> None:
    """Tag subsequent records in this task with a batch id and its trigger."""
    _batch.set((batch_id, trigger))


def clear_context() -> None:
    _batch.set(("-", "-"))


class ContextFilter(logging.Filter):
    """Copies the current batch context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.batch_id, record.trigger = _batch.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Fields passed through ``extra=`` are kept; values json can't encode
    are stringified.
    """

    _STANDARD = frozenset(
        vars(logging.LogRecord("", 0, "", 0, "", None, None))
    ) | {"message", "asctime", "batch_id", "trigger", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        batch_id = getattr(record, "batch_id", "-")
        if batch_id != "-":
            data["batch_id"] = batch_id
            data["trigger"] = getattr(record, "trigger", "-")

        if record.levelno >= logging.WARNING:
            data["source"] = f"{record.filename}:{record.lineno}"
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in self._STANDARD or key in data:
                continue
            data[key] = value

        return json.dumps(data, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``TIME [LEVEL] [batch trigger] logger: message``"""

    def __init__(self, with_date: bool = False):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(batch_id)s %(trigger)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S" if with_date else "%H:%M:%S",
        )


def _formatters(log_format: str) -> tuple[logging.Formatter, logging.Formatter]:
    if log_format == "json":
        return JsonFormatter(), JsonFormatter()
    return TextFormatter(), TextFormatter(with_date=True)


def _file_handler(log_dir: Path, max_bytes: int, backup_count: int) -> logging.Handler:
    """Open the rotating log file, raising OSError if LOG_DIR is unusable."""
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / LOG_FILENAME
    if max_bytes > 0:
        return RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    return TimedRotatingFileHandler(
        path, when="midnight", backupCount=backup_count, encoding="utf-8"
    )


def setup_logging(config: Any, verbose: bool = False) -> bool:
    """Install console and file handlers on the root logger.

    Args:
        config: Config carrying log_level, log_format, log_dir,
            log_max_bytes and log_backup_count
        verbose: Force DEBUG on the console regardless of LOG_LEVEL

    Returns:
        Whether the file handler was installed
    """
    console_fmt, file_fmt = _formatters(config.log_format)
    context = ContextFilter()

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO))
    console.setFormatter(console_fmt)
    console.addFilter(context)
    root.addHandler(console)

    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)

    try:
        file_handler = _file_handler(config.log_dir, config.log_max_bytes, config.log_backup_count)
    except OSError as e:
        print(
            f"Warning: cannot log to '{config.log_dir}' ({e}); logging to console only",
            file=sys.stderr,
        )
        return False

    # File captures DEBUG regardless of LOG_LEVEL
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_fmt)
    file_handler.addFilter(context)
    root.addHandler(file_handler)
    return True
