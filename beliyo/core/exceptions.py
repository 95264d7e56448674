"""
Error taxonomy for the chat core and the FastAPI handlers that render it.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse

from beliyo.core.logging import get_logger

logger = get_logger(__name__)


class ChatError(Exception):
    """Base chat exception carrying an HTTP status and a semantic code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "CHAT_ERROR"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ConnectivityError(ChatError):
    """Transport dropped; retried with bounded backoff."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "CONNECTIVITY_ERROR"


class AuthorizationError(ChatError):
    """Permission denied on a row; never retried."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFoundError(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class InvalidRequestError(ChatError):
    """Missing field or context id; the operation is not attempted."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INVALID_REQUEST"


async def chat_exception_handler(request: Request, exc: ChatError) -> JSONResponse:
    logger.warning(
        "chat_error",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        code=exc.code,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )
