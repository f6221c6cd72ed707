"""
JSON-lines logging for scheduled jobs and payment callbacks.

Every line carries service/env/version/sha plus the invocation context bound by
`bind_run_id` (run_id, trigger). Semantic events go through `log_event` with a
dotted `event_type` such as `webhook.order_created` or `sweep.reservation_released`.
Values under secret-looking keys are masked before serialisation.
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
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterator, Optional


_RUN_ID: ContextVar[Optional[str]] = ContextVar("ranchmarket_run_id", default=None)
_TRIGGER: ContextVar[Optional[str]] = ContextVar("ranchmarket_trigger", default=None)

_CORE_FIELDS = ("service", "env", "version", "sha", "run_id", "trigger", "event_type", "severity", "message", "timestamp")
_RECORD_ATTRS: frozenset[str] = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Substrings of field names whose values never reach the log sink.
_REDACT_MARKERS = ("secret", "signature", "api_key", "password", "token", "email", "phone")
_REDACTED = "[redacted]"

_SEVERITY_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}
_CLOUD_SEVERITIES = frozenset({"DEFAULT", "DEBUG", "INFO", "NOTICE", "WARNING", "ERROR", "CRITICAL", "ALERT", "EMERGENCY"})


def _clip(v: Any, max_len: int) -> str:
    s = "" if v is None else str(v)
    s = " ".join(s.split())
    return s if len(s) <= max_len else s[: max_len - 3] + "..."


def _env_first(*names: str, default: str) -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return _clip(v, 128)
    return default


def _severity(level: str | int | None) -> str:
    if isinstance(level, int):
        level = logging.getLevelName(level)
    s = str(level or "INFO").strip().upper()
    s = _SEVERITY_ALIASES.get(s, s)
    return s if s in _CLOUD_SEVERITIES else "INFO"


def _is_secret_key(key: str) -> bool:
    k = key.lower()
    return any(marker in k for marker in _REDACT_MARKERS)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): (_REDACTED if _is_secret_key(str(k)) else _scrub(v)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_scrub(v) for v in value)
    return value


def _json_default(v: Any) -> Any:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if is_dataclass(v) and not isinstance(v, type):
        return _scrub(asdict(v))
    if isinstance(v, (set, frozenset)):
        return sorted(str(x) for x in v)
    return str(v)


def get_run_id() -> Optional[str]:
    return _RUN_ID.get()


def get_trigger() -> Optional[str]:
    return _TRIGGER.get()


@contextmanager
def bind_run_id(*, run_id: str | None = None, trigger: str | None = None) -> Iterator[str]:
    """
    Bind a run id (and optionally the job name / callback kind that started the run)
    for the duration of one invocation.
    """
    rid = _clip(run_id, 128) or uuid.uuid4().hex
    run_token = _RUN_ID.set(rid)
    trigger_token = _TRIGGER.set(_clip(trigger, 128) or _TRIGGER.get())
    try:
        yield rid
    finally:
        _TRIGGER.reset(trigger_token)
        _RUN_ID.reset(run_token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str | None, env: str | None, version: str | None, sha: str | None) -> None:
        super().__init__()
        self._static = {
            "service": _clip(service, 128) or _env_first("SERVICE_NAME", "K_SERVICE", "FUNCTION_TARGET", default="ranchmarket"),
            "env": _clip(env, 64) or _env_first("ENVIRONMENT", "ENV", default="unknown"),
            "version": _clip(version, 128) or _env_first("APP_VERSION", "K_REVISION", default="unknown"),
            "sha": _clip(sha, 64) or _env_first("GIT_SHA", "COMMIT_SHA", "SHORT_SHA", default="unknown"),
        }

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": _severity(getattr(record, "severity", None) or record.levelname),
            **self._static,
            "run_id": getattr(record, "run_id", None) or get_run_id(),
            "trigger": getattr(record, "trigger", None) or get_trigger(),
            "event_type": _clip(getattr(record, "event_type", None), 128) or "log",
            "message": _clip(record.getMessage(), 4000),
            "logger": record.name,
        }

        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]

        for k, v in record.__dict__.items():
            if k in _RECORD_ATTRS or k in _CORE_FIELDS or k.startswith("_"):
                continue
            payload[k] = _REDACTED if _is_secret_key(k) else _scrub(v)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    version: str | None = None,
    sha: str | None = None,
    level: str | int | None = None,
) -> None:
    """Route the root logger to stdout as JSON lines. The last call wins."""
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, version=version, sha=sha))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    # The Firestore and Stripe SDKs are chatty at INFO.
    for noisy in ("google.api_core", "urllib3", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.captureWarnings(True)


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    lvl = logging.getLevelName(_severity(severity))
    if not isinstance(lvl, int):
        lvl = logging.INFO
    logger.log(lvl, message or event_type, exc_info=exc_info, extra={"event_type": event_type, **fields})
