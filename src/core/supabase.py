"""Supabase client singleton and store access helpers."""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError
from starlette.concurrency import run_in_threadpool
from supabase import Client, create_client

from src.api.middleware.error_handler import ConflictError, StoreError, ValidationError
from src.core.config import get_settings

logger = logging.getLogger(__name__)

# PostgreSQL error codes surfaced by PostgREST
UNIQUE_VIOLATION = "23505"
INVALID_TEXT_REPRESENTATION = "22P02"


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton for database operations.

    Uses secret key (sb_secret_) for backend operations, which bypasses RLS
    at the PostgREST level. This should only be used for server-side
    database operations where proper authorization has already been verified.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


async def execute(query: Any, operation: str) -> Any:
    """Execute a PostgREST query builder off the event loop.

    The Supabase client is synchronous, so the call runs in the threadpool
    and every store access becomes a suspension point for the caller.

    Args:
        query: A fully built query (table/select/filter chain or rpc call).
        operation: Short description used in log messages.

    Returns:
        The PostgREST response (``.data`` and, for counted selects, ``.count``).

    Raises:
        ConflictError: On a unique constraint violation.
        ValidationError: When the store rejects an identifier's format.
        StoreError: On any other store or transport failure.
    """
    try:
        return await run_in_threadpool(query.execute)

    except PostgrestAPIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise ConflictError("A record with the same unique key already exists") from e
        if e.code == INVALID_TEXT_REPRESENTATION:
            raise ValidationError("Malformed identifier") from e
        logger.error("Store error during %s: %s (code=%s)", operation, e.message, e.code)
        raise StoreError() from e

    except httpx.HTTPError as e:
        logger.error("Store transport error during %s: %s", operation, str(e))
        raise StoreError() from e


class StaleWriteError(Exception):
    """A versioned update matched no row because the row has moved on."""


async def update_if_version(
    client: Client,
    table: str,
    row: dict[str, Any],
    changes: dict[str, Any],
    operation: str,
) -> dict[str, Any]:
    """Write ``changes`` only if the row is still at the version that was read.

    The row's ``version`` column is bumped with every successful write.

    Returns:
        dict: The updated row.

    Raises:
        StaleWriteError: If another writer updated the row in the meantime.
    """
    version = row.get("version", 0)
    payload = {
        **changes,
        "version": version + 1,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }

    response = await execute(
        client.table(table).update(payload).eq("id", str(row["id"])).eq("version", version),
        operation,
    )
    if not response.data:
        raise StaleWriteError(row["id"])
    return response.data[0]


async def check_database_connection() -> dict[str, Any]:
    """Check if database connection is healthy.

    Performs a simple query to verify database connectivity.

    Returns:
        dict: Connection status with 'healthy' boolean and optional 'error' message.
    """
    try:
        client = get_supabase_client()
        await execute(client.table("orders").select("id").limit(1), "health check")
        return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
