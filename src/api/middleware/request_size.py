"""Request body size limiting middleware."""

import logging
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from src.core.config import get_settings
from src.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)


async def request_size_limit_middleware(
    request: Request,
    call_next: Callable[[Request], Response],
) -> Response:
    """Reject requests whose declared body exceeds the configured maximum.

    Chat messages and checkout payloads are small; anything larger than
    ``max_request_body_size`` is refused with 413 before routing.

    Args:
        request: The incoming request.
        call_next: Next middleware or route handler.

    Returns:
        Response: Either the successful response or a 413 error envelope.
    """
    max_size = get_settings().max_request_body_size

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_size:
        logger.warning(
            "Request body too large on %s: %s bytes (max: %d)",
            request.url.path,
            content_length,
            max_size,
        )
        error = ErrorResponse.from_exception(
            error_type="request_too_large",
            message=f"Request body exceeds maximum size of {max_size} bytes",
        )
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=error.model_dump(mode="json", exclude_none=True),
        )

    return await call_next(request)
