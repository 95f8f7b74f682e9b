from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from ridepass.api.schemas import Envelope, ErrorBody
from ridepass.logging import get_logger
from ridepass.service.errors import ServiceError
from ridepass.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "invalid_input",
    401: "token_invalid",
    404: "not_found",
    405: "invalid_input",
    409: "conflict",
    422: "invalid_input",
    429: "rate_limited",
    503: "store_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain, storage and validation errors in the response envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        retry_after = exc.detail.get("retry_after") if exc.detail else None
        if exc.status_code == 429 and retry_after:
            headers = {"Retry-After": str(retry_after)}
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(
            503, "service temporarily unavailable", code="store_unavailable"
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(errors),
        )
        return _error_response(400, "invalid request", errors, code="invalid_input")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
