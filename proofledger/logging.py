# FILE: proofledger/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("PROOFLEDGER_LOG_SCHEMA", "proofledger.log.v1")
_LOG_SERVICE = os.environ.get("PROOFLEDGER_SERVICE_NAME", "proofledger")
_LOG_VERSION = os.environ.get("PROOFLEDGER_BUILD_VERSION", "0.0.0")
_LOG_ENV = os.environ.get("PROOFLEDGER_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "PROOFLEDGER_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max chars per string field (truncate to keep lines small)
try:
    _MAX_FIELD = max(512, int(os.environ.get("PROOFLEDGER_LOG_MAX_FIELD", "8192")))
except ValueError:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("PROOFLEDGER_LOG_INCLUDE_STACK", "1") == "1"

# Extra attributes that would carry whole documents; never emitted
_FORBIDDEN_META_KEYS = {"payload", "body", "record", "ticket", "raw"}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# Envelope fields lifted from the bound context or record attributes
_PICKED_FIELDS = (
    "req_id",
    "tx_id",
    "caller",
    "op",
    "doc_type",
    "key",
    "increment_field",
    "path",
    "method",
    "status",
    "latency_ms",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "proofledger_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if k.lower() in _FORBIDDEN_META_KEYS:
            continue
        meta[k] = _truncate(v)
    return meta or None


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Envelope fields:
      - schema, service, version, env, instance
      - ts, lvl, logger, msg
      - picked fields (bound context first, then record attributes):
        req_id, tx_id, caller, op, doc_type, key, increment_field,
        path, method, status, latency_ms
      - exc_type, exc_message, stack when the record carries exc_info
      - meta: any remaining `extra=` attributes
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        for name in _PICKED_FIELDS:
            v = ctx.get(name)
            if v is None:
                v = getattr(record, name, None)
            if v is not None:
                evt[name] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Uvicorn/Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Configure root (+ optionally uvicorn) loggers for JSON output."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """Get or create a request id and bind it into the context."""
    rid = None
    if headers:
        for k in ("x-request-id", "x-amzn-trace-id"):
            if headers.get(k):
                rid = headers[k]
                break
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


# ---------- ASGI middleware ----------
class RequestLogMiddleware:
    """
    ASGI middleware emitting one JSON line per request with req_id, caller,
    method, path, status and latency. Bodies are never logged.

        app.add_middleware(RequestLogMiddleware, caller_header="X-Client-Id")
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "proofledger.http",
        caller_header: str = "X-Client-Id",
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.caller_header = caller_header.lower()

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        reset()
        rid = ensure_request_id(headers)
        bind(path=path, method=method, caller=headers.get(self.caller_header) or None)

        t0 = time.perf_counter()
        status_holder = {"code": None}

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
                raw_headers = list(message.get("headers") or [])
                raw_headers.append((b"x-request-id", rid.encode("latin1")))
                message = dict(message, headers=raw_headers)
            await send(message)

        try:
            await self.app(scope, receive, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={"status": status_holder["code"], "latency_ms": round(dt_ms, 3)},
            )
            reset()


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "proofledger", *, level: Optional[str] = None) -> logging.Logger:
    """
    Return a logger, configuring JSON output on root and uvicorn on first call.

    `level` applies only to that first call; it defaults to PROOFLEDGER_LOG_LEVEL.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=level or os.environ.get("PROOFLEDGER_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "JSONFormatter",
    "RequestLogMiddleware",
]
