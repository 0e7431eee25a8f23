"""
Request correlation and access logging.

Every request gets an id (the caller's X-Correlation-ID or a fresh one).
It is attached to all log lines emitted while the request is handled and
returned on the response so client and server logs can be joined.
"""
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from pantry_jobs.utils.logger import correlation_id_var, get_logger

logger = get_logger("pantry_jobs.http")

HEADER = "X-Correlation-ID"
MAX_ID_LENGTH = 64


def _incoming_id(request: Request) -> str:
    supplied = (request.headers.get(HEADER) or "").strip()
    if supplied and len(supplied) <= MAX_ID_LENGTH:
        return supplied
    return uuid.uuid4().hex


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        token = correlation_id_var.set(_incoming_id(request))
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                f"{request.method} {request.url.path} raised",
                extra={"method": request.method, "path": request.url.path, "error_type": type(exc).__name__,
                       "duration_ms": round((time.monotonic() - started) * 1000)},
            )
            raise
        else:
            # Polling hits the status route every couple of seconds; keep those at debug
            polling = request.method == "GET" and response.status_code < 400
            log = logger.debug if polling else logger.info
            log(
                f"{request.method} {request.url.path} {response.status_code}",
                extra={"method": request.method, "path": request.url.path, "status": response.status_code,
                       "duration_ms": round((time.monotonic() - started) * 1000)},
            )
            response.headers[HEADER] = correlation_id_var.get()
            return response
        finally:
            correlation_id_var.reset(token)
