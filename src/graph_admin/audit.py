from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional


class JsonAuditLogger:
    """Structured logger for operational events.

    Each event is a short snake_case name plus keyword fields, written as one
    JSON object per line.
    """

    def __init__(
        self,
        name: str = "graph_admin",
        level: int = logging.INFO,
        stream: Optional[IO[str]] = None,
    ):
        self.logger = logging.getLogger(name)
        # An explicit stream replaces whatever handler an earlier instance installed.
        if stream is not None:
            for existing in list(self.logger.handlers):
                self.logger.removeHandler(existing)
        if not self.logger.handlers:
            handler = logging.StreamHandler(stream or sys.stdout)
            handler.setFormatter(_JsonFormatter())
            self.logger.addHandler(handler)
        self.logger.setLevel(level)
        self.logger.propagate = False

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        self.logger.log(level, message, extra={"fields": kwargs})

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
        }

        fields: Optional[Dict[str, Any]] = getattr(record, "fields", None)
        if fields:
            payload.update(fields)

        return json.dumps(payload, default=str)
