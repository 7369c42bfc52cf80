"""Log formatting and root-logger configuration.

Two output formats are supported:

- ``text`` — one human-readable line per record, the default for a
  program watched from a terminal.
- ``json`` — one JSON object per record (NDJSON) for log shippers.

Both formats carry the name of the asyncio task that emitted the
record, because the receiver, the session runner and every publish
task log through the same handlers concurrently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from telemqtt._settings import LoggingSettings

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(task)s): %(message)s"

_NO_TASK = "-"


class TaskNameFilter(logging.Filter):
    """Stamp each record with the current asyncio task name as ``task``.

    Records emitted outside a running task (start-up, CLI errors) get
    ``"-"``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            task = asyncio.current_task()
        except RuntimeError:
            task = None
        record.task = task.get_name() if task is not None else _NO_TASK
        return True


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects.

    Fields: ``timestamp`` (UTC, ISO 8601), ``level``, ``logger``,
    ``task``, ``message``, ``service`` and, when set, ``version``.
    ``exception`` and ``stack_info`` appear only when present on the
    record.

    Args:
        service: Program name included in every line.
        version: Program version; omitted from output when empty.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "task": getattr(record, "task", _NO_TASK),
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


def build_formatter(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> logging.Formatter:
    """Return the formatter selected by ``settings.format``."""
    if settings.format == "json":
        return JsonFormatter(service=service, version=version)
    return logging.Formatter(_TEXT_FORMAT)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Replace the root logger's handlers according to *settings*.

    A stderr stream handler is always installed.  With
    ``settings.file`` set, a :class:`~logging.handlers.RotatingFileHandler`
    is added that rotates at ``settings.max_file_size_mb`` and keeps
    ``settings.backup_count`` old files.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter = build_formatter(settings, service=service, version=version)
    task_filter = TaskNameFilter()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(task_filter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * 1024 * 1024,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(task_filter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
