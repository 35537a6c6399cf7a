import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.utils.response import error_response

logger = logging.getLogger(__name__)


class AppException(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppException):
    """Bad or missing input the user can correct (date, file, metadata)."""

    status_code = 400


class DecodeError(ValidationError):
    """The image bytes could not be decoded."""


class RenderError(ValidationError):
    """The target canvas for a normalized image could not be allocated."""


class AnalysisError(AppException):
    status_code = 422

    def __init__(self, message: str = "Image processing failed, please retry", status_code: int | None = None):
        super().__init__(message, status_code)


class AnalysisTimeout(AnalysisError):
    pass


class ForbiddenError(AppException):
    status_code = 403


class NotFoundError(AppException):
    status_code = 404


class ConflictReplacementError(AppException):
    """Replacing the measurement for a day failed; the previous one is kept."""

    status_code = 500


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(exc.message),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_response("Internal server error"),
        )
