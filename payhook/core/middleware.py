"""
FastAPI middleware and exception handlers.

Every request gets a correlation id (taken from X-Correlation-ID when the
caller sends one) that is echoed back on the response, including error
responses, so a provider delivery can be matched to the event's log lines.
"""
import time
from typing import Awaitable, Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from payhook.core.exceptions import AppException, ErrorCode, InvalidSignatureError
from payhook.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# probes של ה-orchestrator - לא נרשמים בלוג בכל קריאה
_QUIET_PATHS = frozenset({"/health", "/health/ready"})


def _client_host(request: Request) -> str | None:
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and logs each request with its duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        route = f"{request.method} {request.url.path}"
        quiet = request.url.path in _QUIET_PATHS

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request crashed: {route}",
                extra_data={
                    "route": route,
                    "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        response.headers[CORRELATION_HEADER] = correlation_id
        if not quiet or response.status_code >= 400:
            level = "info" if response.status_code < 400 else "warning"
            getattr(logger, level)(
                f"{route} -> {response.status_code}",
                extra_data={
                    "route": route,
                    "status_code": response.status_code,
                    "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
                    "client_host": _client_host(request),
                },
            )
        return response


def _error_response(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Maps domain errors to their HTTP status and `{"error": {...}}` body"""
    context = {
        "error_code": exc.error_code.value,
        "details": exc.details,
        "path": request.url.path,
    }
    if isinstance(exc, InvalidSignatureError):
        # ניסיון מסירה לא מאומת - אירוע אבטחה
        logger.warning(
            f"Rejected webhook delivery: {exc.message}",
            extra_data={**context, "client_host": _client_host(request)},
        )
    else:
        logger.warning(f"{exc.error_code.value}: {exc.message}", extra_data=context)

    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.url.path}",
        extra_data={"path": request.url.path, "error": str(exc)},
        exc_info=exc,
    )
    return _error_response(
        500,
        {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
    )


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(RequestContextMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
