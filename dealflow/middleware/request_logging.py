from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealflow.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("dealflow.request")


def _request_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    duration = time.perf_counter() - started
    path = resolve_http_path_label(request)
    observe_http_request(request.method, path, status_code, duration)
    fields: dict[str, Any] = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration * 1000, 2),
    }
    # Path params are only populated once routing has run.
    item_id = request.path_params.get("item_id")
    if item_id:
        fields["item_id"] = item_id
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_request_fields(request, 500, started))
            raise

        logger.info("http.request", extra=_request_fields(request, response.status_code, started))
        return response
