from __future__ import annotations

import logging
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.ops.events import (
    CORRELATION_ID_HEADER,
    new_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _elapsed_ms(start: float) -> int:
    return int((perf_counter() - start) * 1000)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags every request with a correlation id and records its outcome as an ops event."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or new_correlation_id()
        token = set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id
        payload: dict[str, object] = {"method": request.method, "path": request.url.path}
        start = perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            payload["duration_ms"] = _elapsed_ms(start)
            logger.exception(
                "Request failed %s %s",
                request.method,
                request.url.path,
                extra={"event_type": "api.request.failed", "ops_payload": payload},
            )
            raise
        finally:
            reset_correlation_id(token)

        payload["duration_ms"] = _elapsed_ms(start)
        payload["status_code"] = response.status_code
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        logger.info(
            "Request completed %s %s -> %d (%dms)",
            request.method,
            request.url.path,
            response.status_code,
            payload["duration_ms"],
            extra={
                "event_type": "api.request.completed",
                "correlation_id": correlation_id,
                "ops_payload": payload,
            },
        )
        return response
