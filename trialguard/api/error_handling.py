from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from trialguard.api.schemas import Envelope, ErrorBody
from trialguard.logging import get_logger
from trialguard.service.errors import ServiceError
from trialguard.service.middleware import MiddlewareResult
from trialguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


class AuthRejected(Exception):
    """Raised by the auth dependency so the middleware's own response goes out untouched."""

    def __init__(self, result: MiddlewareResult):
        super().__init__(result.body.get("error", "Authentication failed"))
        self.result = result


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: str | None = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
    )


def _where(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


def register_exception_handlers(app: FastAPI) -> None:
    """Map middleware rejections, gate errors and storage errors onto responses.

    Middleware rejections keep the authorizer's ``{"error": msg}`` body and
    headers; everything else uses the error envelope.
    """

    @app.exception_handler(AuthRejected)
    async def handle_auth_rejected(request: Request, exc: AuthRejected):
        result = exc.result
        logger.info("auth_rejected", status_code=result.status_code, **_where(request))
        return JSONResponse(
            status_code=result.status_code, content=result.body, headers=result.headers
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        level = "error" if exc.status_code >= 500 else "warning"
        getattr(logger, level)(
            "service_error",
            status_code=exc.status_code,
            error_kind=exc.kind.value,
            message=exc.message,
            **_where(request),
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, **_where(request))
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict):
            details = exc.detail
            message = str(details.get("detail", "http error"))
        else:
            details = None
            message = str(exc.detail)
        if exc.status_code >= 500:
            logger.error("http_error", status_code=exc.status_code, **_where(request))
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            error_type=type(exc).__name__,
            **_where(request),
        )
        return _error_response(500, "internal server error")
