"""Request logging and log-context middleware for the control API."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from entitlement_engine.logging_config import bind_context, clear_context, get_logger, short_token

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with a correlation id.

    The id is taken from an incoming X-Request-ID header when the caller
    provides one, generated otherwise, and echoed back on the response.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        bind_context(request_id=request_id)

        details = {}
        if self.include_request_details:
            details = {
                "query_params": str(request.query_params) if request.query_params else None,
                "client_host": request.client.host if request.client else "unknown",
            }
        logger.info("request_started", method=request.method, path=request.url.path, **details)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=_elapsed_ms(start),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        else:
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(start),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds receipt identity and evaluation instant to the logging context.

    /entitlements/receipts/{product_id}/{purchase_token} binds product_id and
    a shortened purchase_token; an as_of_millis query binds as_of_millis.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        parts = request.url.path.strip("/").split("/")
        if "receipts" in parts:
            index = parts.index("receipts")
            if len(parts) > index + 2:
                bind_context(
                    product_id=parts[index + 1],
                    purchase_token=short_token(parts[index + 2]),
                )

        as_of = request.query_params.get("as_of_millis")
        if as_of is not None:
            bind_context(as_of_millis=as_of)

        return await call_next(request)
