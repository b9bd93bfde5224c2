"""Logging setup for h2probe.

Standard output carries only the response JSON, so every handler configured
here writes to standard error or to an optional log file.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3
DEFAULT_SUPPRESSED = ("urllib3", "httpx", "httpcore", "hpack", "h2")

SENSITIVE_HEADERS = {"cookie", "set-cookie", "authorization", "proxy-authorization"}
REDACTED = "[redacted]"


class JsonFormatter(logging.Formatter):
    """Emit logs as structured JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)


class SensitiveDataFilter(logging.Filter):
    """Redact credential-bearing header values logged as a mapping argument."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = {
                key: REDACTED if isinstance(key, str) and key.lower() in SENSITIVE_HEADERS else value
                for key, value in record.args.items()
            }
        return True


def _console_handler(level: int) -> logging.Handler:
    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        markup=False,
        show_path=False,
        level=level,
    )
    # RichHandler renders time and level itself.
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _file_handler(logfile: Path | str, *, json_logs: bool) -> logging.Handler:
    path = Path(logfile)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=DEFAULT_MAX_BYTES,
        backupCount=DEFAULT_BACKUP_COUNT,
        encoding="utf-8",
    )
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    return handler


def configure_logging(
    level: int = logging.WARNING,
    *,
    json_logs: bool = False,
    logfile: Optional[Path | str] = None,
    suppress: Optional[Iterable[str]] = None,
) -> None:
    """Configure root logging on stderr with an optional rotating log file."""

    handlers: list[logging.Handler] = [_console_handler(level)]
    if logfile:
        handlers.append(_file_handler(logfile, json_logs=json_logs))

    for handler in handlers:
        handler.addFilter(SensitiveDataFilter())

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in suppress or DEFAULT_SUPPRESSED:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


__all__ = [
    "configure_logging",
    "JsonFormatter",
    "SensitiveDataFilter",
]
