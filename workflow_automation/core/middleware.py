"""HTTP middleware: request IDs, error translation and response timing."""

import time
import uuid
from datetime import datetime
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowAutomationError, create_error_response, get_status_code_for_error
from .logging import get_logger, logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _unexpected_error_body(error: Exception, request_id: str) -> dict:
    return {
        "error": "InternalServerError",
        "message": "An unexpected error occurred",
        "details": {
            "error_type": type(error).__name__,
            "timestamp": datetime.utcnow().isoformat()
        },
        "request_id": request_id
    }


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags every request with an ID and turns errors that escape the routes into JSON.

    The request ID is taken from the ``X-Request-ID`` header when the caller
    sends one, echoed on the response and attached to every log record
    written while the request is handled.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()

        with logging_context(request_id=request_id, method=request.method, path=request.url.path):
            try:
                response = await call_next(request)
            except WorkflowAutomationError as e:
                logger.warning(
                    f"{request.method} {request.url.path} failed with {e.error_code}: {e.message}"
                )
                response = JSONResponse(status_code=get_status_code_for_error(e), content=create_error_response(e))
            except Exception as e:
                logger.error(f"Unhandled error on {request.method} {request.url.path}: {str(e)}", exc_info=True)
                response = JSONResponse(status_code=500, content=_unexpected_error_body(e, request_id))

            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {time.perf_counter() - started:.3f}s"
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Reports response times in a header and warns about slow requests."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
