"""
JSON-lines logging for packaging runs.

Every record becomes one JSON object on stdout carrying:
- service / env / version (from env, overridable per formatter)
- build_id: the `<uuid4>` build directory name of the active `compile` run
- event_type (e.g. `funcpack.handler.packaged`) and severity
- any `extra={...}` fields passed by the caller

`bind_build_id` scopes the build ID with a ContextVar, so handlers packaged on
a thread pool (run under `contextvars.copy_context`) keep it too.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

_BUILD_ID: ContextVar[Optional[str]] = ContextVar("funcpack_build_id", default=None)

_SEVERITIES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Attributes every LogRecord has, plus the keys this formatter writes itself.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}
_CORE_KEYS = ("timestamp", "severity", "service", "env", "version", "build_id", "event_type", "message", "logger")


def _one_line(value: Any, limit: int) -> str:
    text = "" if value is None else str(value)
    text = " ".join(text.splitlines()).strip()
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _from_env(*names: str, default: str) -> str:
    for name in names:
        value = _one_line(os.getenv(name), 128)
        if value:
            return value
    return default


def _severity(level: Any) -> str:
    if isinstance(level, int):
        level = logging.getLevelName(level)
    name = str(level or "INFO").strip().upper()
    name = {"WARN": "WARNING", "FATAL": "CRITICAL"}.get(name, name)
    return name if name in _SEVERITIES else "INFO"


def get_build_id() -> Optional[str]:
    return _BUILD_ID.get()


@contextmanager
def bind_build_id(*, build_id: Optional[str] = None) -> Iterator[str]:
    bid = _one_line(build_id, 128) or uuid.uuid4().hex
    token = _BUILD_ID.set(bid)
    try:
        yield bid
    finally:
        _BUILD_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: Optional[str], env: Optional[str], version: Optional[str]) -> None:
        super().__init__()
        self._service = service or _from_env("SERVICE_NAME", "SERVICE", default="funcpack")
        self._env = env or _from_env("ENVIRONMENT", "ENV", default="unknown")
        self._version = version or _from_env("FUNCPACK_VERSION", "VERSION", default="unknown")

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "severity": _severity(getattr(record, "severity", None) or record.levelno),
            "service": self._service,
            "env": self._env,
            "version": self._version,
            "build_id": getattr(record, "build_id", None) or get_build_id(),
            "event_type": getattr(record, "event_type", None) or "log",
            "message": _one_line(record.getMessage(), 4000),
            "logger": record.name,
        }
        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]

        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key in _CORE_KEYS or key.startswith("_"):
                continue
            payload[key] = value
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(
    *,
    service: Optional[str] = None,
    env: Optional[str] = None,
    version: Optional[str] = None,
    level: Optional[str] = None,
) -> None:
    """
    Route the root logger to stdout as JSON lines.

    Replaces existing root handlers; calling it again reconfigures.
    `LOG_LEVEL` is used when `level` is not given.
    """
    lvl = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, version=version))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    logging.captureWarnings(True)


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: Optional[str] = None,
    **fields: Any,
) -> None:
    """Emit one semantic event; `fields` land as top-level JSON keys."""
    logger.log(
        getattr(logging, _severity(severity)),
        message or event_type,
        extra={"event_type": event_type, **fields},
    )
