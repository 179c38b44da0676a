"""Request latency logging middleware."""

import logging
import time
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
VERY_SLOW_REQUEST_THRESHOLD_MS = 3000

# Probes hit these constantly; only slow ones are logged
QUIET_PATHS = frozenset({"/health", "/health/ready"})


def log_request(method: str, path: str, status_code: int, latency_ms: float, failed: bool = False) -> None:
    """Log one finished request at a level chosen from its outcome and latency."""
    log_msg = f"{method} {path} - {status_code} - {latency_ms:.2f}ms"

    if path in QUIET_PATHS:
        if latency_ms > SLOW_REQUEST_THRESHOLD_MS:
            logger.warning("SLOW PROBE: %s", log_msg)
    elif failed or status_code >= 500:
        logger.error(log_msg)
    elif latency_ms > VERY_SLOW_REQUEST_THRESHOLD_MS:
        logger.error("VERY SLOW REQUEST: %s", log_msg)
    elif latency_ms > SLOW_REQUEST_THRESHOLD_MS:
        logger.warning("SLOW REQUEST: %s", log_msg)
    elif status_code >= 400:
        logger.warning(log_msg)
    else:
        logger.info(log_msg)


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Middleware to log request latency.

    Logs timing information for every request, with elevated log levels
    for slow or failed requests.

    Args:
        request: The incoming request.
        call_next: The next middleware/handler in the chain.

    Returns:
        Response: The response from the handler.
    """
    start_time = time.perf_counter()
    response = None
    failed = False

    try:
        response = await call_next(request)
        return response
    except Exception:
        failed = True
        raise
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response else 500
        log_request(request.method, request.url.path, status_code, latency_ms, failed)
