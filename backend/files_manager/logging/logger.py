from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from backend.files_manager.config_handler import settings

_LOGGER_CACHE: Dict[str, logging.Logger] = {}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, then context fields."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = {key: value for key, value in (getattr(record, "fields", None) or {}).items() if value is not None}
        if fields:
            entry["fields"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=True, default=str)


def _resolve_level(level: Optional[int]) -> int:
    if level is not None:
        return level
    resolved = logging.getLevelName(settings.log_level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def get_json_logger(
    module_name: str,
    *,
    level: Optional[int] = None,
    directory: Optional[Path] = None,
) -> logging.Logger:
    """Module-scoped logger appending to ``{directory}/{module_name}.jsonl``.

    ``directory`` defaults to the configured logging directory. Loggers are
    cached per module name; the first caller decides the file.
    """
    cached = _LOGGER_CACHE.get(module_name)
    if cached is not None:
        return cached

    log_dir = Path(directory) if directory is not None else settings.logging_directory
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f"files_manager.{module_name}")
    logger.setLevel(_resolve_level(level))
    logger.propagate = False
    handler = logging.FileHandler(log_dir / f"{module_name}.jsonl", mode="a", encoding="utf-8")
    handler.setFormatter(JsonLineFormatter())
    logger.addHandler(handler)

    _LOGGER_CACHE[module_name] = logger
    return logger


class LoggingInterceptor:
    """Structured logging with keyword fields and an optional bound context.

    ``bind`` returns a child sharing the same file whose fields are merged into
    every record, so a job handler can tag all its lines with the job key once.
    """

    def __init__(
        self,
        module_name: str,
        *,
        level: Optional[int] = None,
        directory: Optional[Path] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.module_name = module_name
        self._logger = get_json_logger(module_name, level=level, directory=directory)
        self.context: Dict[str, Any] = dict(context or {})

    def bind(self, **fields: Any) -> "LoggingInterceptor":
        child = object.__new__(LoggingInterceptor)
        child.module_name = self.module_name
        child._logger = self._logger
        child.context = {**self.context, **fields}
        return child

    def _log(self, level: int, message: str, fields: Dict[str, Any], exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self.context, **fields}
        self._logger.log(level, message, exc_info=exc_info, extra={"fields": merged or None})

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def exception(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields, exc_info=True)
