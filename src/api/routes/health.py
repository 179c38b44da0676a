"""Health check endpoints for monitoring and deployment verification."""

import time
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Response, status

from src.api.deps import CurrentUser
from src.core.supabase import check_database_connection
from src.realtime.gateway import check_realtime_gateway
from src.realtime.presence import get_presence_registry
from src.schemas.auth import AuthenticatedResponse
from src.schemas.common import CheckResult, HealthResponse, HealthStatus, ReadinessResponse

router = APIRouter(tags=["health"])


async def _timed_check(name: str, check: Callable[[], Awaitable[dict[str, Any]]]) -> CheckResult:
    start_time = time.perf_counter()
    result = await check()
    latency_ms = (time.perf_counter() - start_time) * 1000

    return CheckResult(
        name=name,
        healthy=result["healthy"],
        latency_ms=round(latency_ms, 2),
        error=result.get("error"),
        details=result.get("details"),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Reports that the process is serving requests. Touches no dependencies.",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status=HealthStatus.HEALTHY)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Store reachable and realtime gateway running"},
        503: {"description": "A dependency is unavailable"},
    },
    summary="Readiness check",
    description="Checks the order/chat store and the realtime gateway. Used for readiness probes.",
)
async def readiness_check(response: Response) -> ReadinessResponse:
    """Run every dependency check and answer 503 if any fails.

    The realtime check also reports live connection, online user and
    in-flight event counts.
    """
    checks = [
        await _timed_check("database", check_database_connection),
        await _timed_check("realtime", check_realtime_gateway),
    ]

    all_healthy = all(check.healthy for check in checks)
    if not all_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status=HealthStatus.HEALTHY if all_healthy else HealthStatus.UNHEALTHY,
        checks=checks,
    )


@router.get(
    "/health/auth",
    response_model=AuthenticatedResponse,
    summary="Authenticated health check",
    description="Echoes the caller's token identity and realtime presence.",
    responses={
        200: {"description": "Successfully authenticated"},
        401: {"description": "Authentication required or invalid token"},
    },
)
async def authenticated_check(user: CurrentUser) -> AuthenticatedResponse:
    """Return the token identity and whether the user holds a realtime connection."""
    return AuthenticatedResponse(
        authenticated=True,
        user_id=user.user_id,
        email=user.email,
        role=user.role.value if user.role else None,
        online=get_presence_registry().is_online(user.user_id),
    )
