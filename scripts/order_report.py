#!/usr/bin/env python
"""Script to print order statistics for a date range.

Usage:
    python scripts/order_report.py [START_DATE] [END_DATE]

Dates are ISO 8601 (e.g. 2026-01-01). Either bound may be omitted.
"""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.api.middleware.error_handler import APIError
from src.services.order_service import OrderService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _parse_date(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


async def main(start: str | None = None, end: str | None = None) -> None:
    """Compute and log order statistics."""
    try:
        start_date, end_date = _parse_date(start), _parse_date(end)
    except ValueError as e:
        logger.error("Invalid date: %s", e)
        sys.exit(2)

    logger.info("Computing order statistics (%s to %s)...", start or "beginning", end or "now")

    try:
        stats = await OrderService().get_order_stats(start_date=start_date, end_date=end_date)
    except APIError as e:
        logger.error("Report failed: %s", e.message)
        sys.exit(1)

    logger.info("Total orders: %d", stats["total_orders"])
    logger.info("  Order Placed: %d", stats["order_placed"])
    logger.info("  Preparing for Shipment: %d", stats["preparing_for_shipment"])
    logger.info("  Out for Delivery: %d", stats["out_for_delivery"])
    logger.info("  Delivered: %d", stats["delivered"])
    logger.info("  Cancelled: %d", stats["cancelled"])
    logger.info("Revenue: %.2f", stats["total_revenue"])
    logger.info("Average order value: %.2f", stats["average_order_value"])


if __name__ == "__main__":
    args = sys.argv[1:]
    asyncio.run(main(*args[:2]))
