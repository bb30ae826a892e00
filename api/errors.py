"""Global exception handlers for FastAPI.

AppError is translated once here. Operational errors keep their message;
non-operational ones and anything unexpected become a generic 500, with
the detail only in the server log.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from auth.exceptions import AppError, ErrorKind, RateLimitedError

logger = logging.getLogger(__name__)

_GENERIC_MESSAGE = "An internal error occurred"
_LOCATION_PREFIXES = {"body", "query", "path", "header", "cookie"}


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _field_errors(exc: RequestValidationError) -> list[dict]:
    """Flatten pydantic errors into [{field, message}]."""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in _LOCATION_PREFIXES]
        message = error.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": ".".join(loc) or None, "message": message})
    return errors


def _is_bad_path_id(exc: RequestValidationError) -> bool:
    return any(
        error.get("type") == "uuid_parsing" and error.get("loc", ())[:1] == ("path",)
        for error in exc.errors()
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if not exc.is_operational:
            logger.error(f"Non-operational error: {exc.message}", exc_info=exc)
            return JSONResponse(
                status_code=ErrorKind.INTERNAL.status_code,
                content=error_response(
                    ErrorCodes.INTERNAL_ERROR,
                    _GENERIC_MESSAGE,
                    request_id=_request_id(request),
                ).model_dump(mode="json"),
            )

        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}

        return JSONResponse(
            status_code=exc.status_code,
            headers=headers,
            content=error_response(
                exc.code,
                exc.message,
                exc.details,
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        if _is_bad_path_id(exc):
            error = AppError.invalid_id()
            return JSONResponse(
                status_code=error.status_code,
                content=error_response(
                    error.code, error.message, request_id=_request_id(request)
                ).model_dump(mode="json"),
            )

        return JSONResponse(
            status_code=ErrorKind.VALIDATION_ERROR.status_code,
            content=error_response(
                ErrorCodes.VALIDATION_ERROR,
                "Validation failed",
                _field_errors(exc),
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content=error_response(
                ErrorCodes.INTERNAL_ERROR,
                _GENERIC_MESSAGE,
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )
