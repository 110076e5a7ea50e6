"""
Watermark Pipeline Backend — Request Logging Middleware
=========================================================

What:  One access-log line per HTTP request, on the
       `watermark_pipeline.access` logger.
How:   Measures wall time around the handler and picks the level from the
       status code (5xx ERROR, 4xx WARNING, otherwise INFO). Structured
       fields go into `extra` for log shippers.

Never logged: request bodies, uploaded file contents, auth headers.
/health and the file route are skipped: the first is polled by load
balancers, the second by the remote service while it downloads documents.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from watermark_pipeline.middleware.request_id import request_id_var

logger = logging.getLogger("watermark_pipeline.access")

QUIET_PATH_PREFIXES = ("/health", "/api/files/")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path.startswith(QUIET_PATH_PREFIXES):
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        method = request.method

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        rid = request_id_var.get("")
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
