"""Request logging middleware for Agentos.

Every request is logged on completion with method, path, status code, and
duration. The X-Correlation-ID header is honoured (or generated) and bound
to the logging context for the lifetime of the request.

Example:
    >>> from fastapi import FastAPI
    >>> from agentos.web.middleware import RequestLoggingMiddleware
    >>>
    >>> app = FastAPI()
    >>> app.add_middleware(RequestLoggingMiddleware)
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

from agentos.logging import get_logger, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Long-lived streams are logged once on open; their completion is not timed
STREAMING_PATHS = ("/status/stream",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs HTTP requests with timing and correlation IDs."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        start_time = time.perf_counter()
        path = request.url.path

        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id

            if path.startswith(STREAMING_PATHS):
                logger.info("stream_opened", path=path, status_code=response.status_code)
            else:
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
            return response

        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(exc),
                exc_info=True,
            )
            raise

        finally:
            set_correlation_id(None)
