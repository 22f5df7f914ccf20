"""Structured logging for the resolution engine.

Production output is one JSON object per line; with ``DEBUG=true`` a compact
human-readable line is printed instead. Resolution context lives in
ContextVars so every log line of a run carries the same correlation keys:

- ``request_id``: the ingestion request that produced the candidate
- ``owner_id``: the entity whose tasks/facts are being resolved
- ``run_id``: a batch job or inference scan

Decision logs pass their payload through ``extra=`` (``action``,
``existing_id``, ``confidence``, ``error_type`` ...); the formatters copy any
non-standard record attribute into the output.
"""

import json
import logging
import os
import sys
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
owner_id_var: ContextVar[str | None] = ContextVar("owner_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)

_CONTEXT_VARS = (request_id_var, owner_id_var, run_id_var)

# Present on every LogRecord; anything else arrived through extra=
_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
}

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "sqlalchemy.engine", "asyncpg")


def current_context() -> dict[str, str]:
    """Correlation keys that are set in the current task."""
    return {var.name: value for var in _CONTEXT_VARS if (value := var.get()) is not None}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, e.g.

    {"timestamp": "...", "level": "INFO", "service": "resolution-engine",
     "logger": "services.dedup_gateway", "message": "Task dedup: merge",
     "owner_id": "owner-111", "extra": {"action": "merge", "confidence": 1.0}}
    """

    def __init__(self, service_name: str = "resolution-engine"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            **current_context(),
        }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
            payload["exception_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None

        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra

        return json.dumps(payload, default=str, ensure_ascii=False)


class HumanReadableFormatter(logging.Formatter):
    """``12:34:56.789 WARNING  services.candidate_retriever [run=3f2a] message {extra}``"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        context = " ".join(f"{key[:-3]}={value[:8]}" for key, value in current_context().items())
        line = f"{timestamp} {record.levelname:<8} {record.name}"
        if context:
            line += f" [{context}]"
        line += f" {record.getMessage()}"

        extra = _extra_fields(record)
        if extra:
            line += f" {json.dumps(extra, default=str, ensure_ascii=False)}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service_name: str = "resolution-engine",
):
    """Install a single stdout handler on the root logger.

    ``json_format=None`` picks JSON unless the DEBUG env var is truthy.
    """
    if json_format is None:
        json_format = os.getenv("DEBUG", "false").lower() not in ("true", "1", "yes")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JSONFormatter(service_name=service_name) if json_format else HumanReadableFormatter()
    )
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Module logger; configures defaults on first use if nothing else has."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


class LogContext:
    """Bind correlation keys for the duration of a block.

    Works as a sync or async context manager and restores the previous values
    on exit, so nested contexts unwind correctly:

        async with LogContext(run_id=LogContext.new_run_id()):
            result = await job.run()
    """

    def __init__(
        self,
        request_id: str | None = None,
        owner_id: str | None = None,
        run_id: str | None = None,
    ):
        self._values = {
            request_id_var: request_id,
            owner_id_var: owner_id,
            run_id_var: run_id,
        }
        self._tokens: list[tuple[ContextVar, Token]] = []

    @staticmethod
    def new_run_id() -> str:
        return uuid.uuid4().hex[:12]

    def __enter__(self):
        for var, value in self._values.items():
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
