from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from .. import config

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_request_path: ContextVar[Optional[str]] = ContextVar("request_path",
                                                      default=None)
_request_method: ContextVar[Optional[str]] = ContextVar("request_method",
                                                        default=None)

# attributes every LogRecord has; anything else came in through `extra=`
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime", "request_id", "path", "method",
}

RECONCILIATION_LOGGER = "espazza.reconciliation"


class RequestContextFilter(logging.Filter):
    """Inject the current request context into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        record.path = _request_path.get()
        record.method = _request_method.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "path": getattr(record, "path", None),
            "method": getattr(record, "method", None),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    """Configure root logging once, respecting config toggles."""
    root_logger = logging.getLogger()
    root_logger.setLevel(config.LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    if config.STRUCTURED_LOGS_ENABLED:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(request_id)s] "
            "%(message)s"
        ))
    handler.addFilter(RequestContextFilter())

    # replace handlers so reloads don't duplicate output
    root_logger.handlers = [handler]


def install_request_context(app: FastAPI) -> None:
    header = config.REQUEST_ID_HEADER

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        rid = request.headers.get(header) or uuid.uuid4().hex
        tokens = (
            _request_id.set(rid),
            _request_path.set(request.url.path),
            _request_method.set(request.method),
        )
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(tokens[0])
            _request_path.reset(tokens[1])
            _request_method.reset(tokens[2])
        response.headers[header] = rid
        return response
