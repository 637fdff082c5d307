"""JSON log lines stamped with the job currently being executed."""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Optional

_JOB_ID: ContextVar[Optional[int]] = ContextVar("job_id", default=None)

# attributes every LogRecord carries; anything else arrived through ``extra``
_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JobContextFilter(logging.Filter):
    """Attach the bound job id to records that do not name one explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "job_id", None) is None:
            record.job_id = _JOB_ID.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        extras = {k: v for k, v in vars(record).items() if k not in _RESERVED and v is not None}
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
            **extras,
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level_name: str) -> None:
    """Configure root logging to emit structured JSON lines."""

    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(JobContextFilter())
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def bind_job_context(job_id: int) -> Token:
    """Bind the executing job for downstream log records."""

    return _JOB_ID.set(job_id)


def reset_job_context(token: Optional[Token]) -> None:
    if token is not None:
        _JOB_ID.reset(token)
