"""Request context middleware: request id, timing, one summary log line.

The request id travels in marketplace.core.logging.request_id_var; the
handler filter installed by setup_logging copies it onto every record,
so a checkout failure logged deep inside the payment gateway still
carries the id of the request that caused it.

Clients (and the frontend) may send X-Request-ID; it is echoed back so a
support ticket can be matched to server logs.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from marketplace.core.logging import request_id_var

logger = logging.getLogger(__name__)

_MAX_REQUEST_ID_LEN = 128


def _incoming_request_id(request: Request) -> str:
    raw = request.headers.get("x-request-id", "").strip()
    if raw and len(raw) <= _MAX_REQUEST_ID_LEN:
        return raw
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = _incoming_request_id(request)
        token = request_id_var.set(req_id)

        start = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 1)
            request_id_var.reset(token)

        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        response.headers["X-Request-ID"] = req_id
        return response
