# carecenter/exceptions.py
import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .config import get_settings

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Error that maps directly onto an HTTP response body of {message, error}."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, error_code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code


class ValidationError(APIError):
    status_code = status.HTTP_400_BAD_REQUEST


class ForbiddenError(APIError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(APIError):
    status_code = status.HTTP_404_NOT_FOUND


class SourceFetchError(APIError):
    """A required upstream query failed; fatal to the whole request."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def _body(message: str, error: Optional[str], stack: Optional[str] = None) -> dict:
    body = {"message": message}
    if error is not None:
        body["error"] = error
    if stack is not None:
        body["stack"] = stack
    return body


def _stack(exc: Exception) -> Optional[str]:
    if get_settings().is_production:
        return None
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


async def api_error_handler(request: Request, exc: APIError):
    stack = None
    if exc.status_code >= 500:
        logger.error(f"{exc.message} ({exc.error_code}) on {request.url.path}", exc_info=exc)
        stack = _stack(exc)
    return JSONResponse(status_code=exc.status_code, content=_body(exc.message, exc.error_code, stack))


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_body("Server error", str(exc), _stack(exc)),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
