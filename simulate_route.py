"""Drive a booking room as an ambulance would, without a phone.

Usage: python simulate_route.py <bookingId> [--url URL] [--interval SECONDS] [--steps N]
"""
import argparse
import asyncio
import contextlib
from typing import List

from constants import LOG_FILE, LOG_LEVEL, RELAY_URL, SIMULATION_INTERVAL_SECONDS
from logging_config import get_logger, setup_logging
from session import TrackingSession, WebSocketTransport

logger = get_logger(__name__)

# Indiranagar to MG Road
DEFAULT_ROUTE = [
    {"lat": 12.9716, "lng": 77.5946},
    {"lat": 12.9720, "lng": 77.5950},
    {"lat": 12.9730, "lng": 77.5960},
    {"lat": 12.9740, "lng": 77.5970},
    {"lat": 12.9750, "lng": 77.5980},
    {"lat": 12.9760, "lng": 77.5990},
]

# 0.0005 degrees is roughly 55 metres
DRIFT_STEP = 0.0005


def drift_route(steps: int, start: dict = DEFAULT_ROUTE[0], step: float = DRIFT_STEP) -> List[dict]:
    """A straight north-east line of ``steps`` points after ``start``."""
    return [
        {"lat": round(start["lat"] + step * i, 7), "lng": round(start["lng"] + step * i, 7)}
        for i in range(1, steps + 1)
    ]


async def simulate(booking_id: str, url: str, interval: float, route: List[dict]) -> int:
    session = TrackingSession(booking_id, WebSocketTransport(url), role="driver")
    await session.connect()
    listener = asyncio.create_task(session.listen())
    try:
        sent = await session.stream_route(route, interval)
    finally:
        await session.close()
        listener.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await listener
    return sent


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream a simulated ambulance route into a booking room.")
    parser.add_argument("booking_id", help="booking id returned when the booking was created")
    parser.add_argument("--url", default=RELAY_URL, help="relay WebSocket URL")
    parser.add_argument("--interval", type=float, default=SIMULATION_INTERVAL_SECONDS, help="seconds between points")
    parser.add_argument("--steps", type=int, default=None, help="drift north-east for N points instead of the fixed route")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
    args = parse_args(argv)
    route = drift_route(args.steps) if args.steps else DEFAULT_ROUTE
    logger.info(f"Starting simulation for booking {args.booking_id}: {len(route)} points every {args.interval}s")
    sent = asyncio.run(simulate(args.booking_id, args.url, args.interval, route))
    logger.info(f"Route completed, {sent} locations sent")


if __name__ == "__main__":
    main()
