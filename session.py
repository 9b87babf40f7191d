"""Client side of a booking room: join, stream our own position, track theirs.

A session is driven by three coroutines that may run side by side:
``listen`` consumes relay pushes, ``stream_route``/``stream_positions`` emit
our own fixes, and ``acknowledge`` is the dispatcher's one-shot action. The
only state the receive and emit paths share is the last known remote position.
"""
import asyncio
import json
from enum import Enum
from typing import AsyncIterable, Callable, Iterable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from constants import (
    ACK_MESSAGE,
    RECONNECT_DELAY_SECONDS,
    RECONNECT_MAX_DELAY_SECONDS,
    RELAY_URL,
    SIMULATION_INTERVAL_SECONDS,
)
from logging_config import get_logger
from schemas.messages import Coordinates, coerce_location

logger = get_logger(__name__)

AWAITING_DISPATCH = "Awaiting dispatch"
RECONNECTING = "Reconnecting..."


class TransportClosed(Exception):
    """The connection to the relay is gone or could not be opened."""


class WebSocketTransport:
    def __init__(self, url: str = RELAY_URL):
        self.url = url
        self._connection = None

    async def connect(self) -> None:
        try:
            self._connection = await websockets.connect(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._connection = None
            raise TransportClosed(f"Could not connect to {self.url}: {e}") from e
        logger.info(f"Connected to relay at {self.url}")

    async def send(self, message: dict) -> None:
        if self._connection is None:
            raise TransportClosed("Not connected")
        try:
            await self._connection.send(json.dumps(message))
        except ConnectionClosed as e:
            raise TransportClosed(str(e)) from e

    async def receive(self) -> dict:
        if self._connection is None:
            raise TransportClosed("Not connected")
        try:
            raw = await self._connection.recv()
        except ConnectionClosed as e:
            raise TransportClosed(str(e)) from e
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug(f"Ignoring undecodable frame from relay: {raw!r}")
            return {}
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        if self._connection is not None:
            connection, self._connection = self._connection, None
            await connection.close()


class SessionState(str, Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    STREAMING = "streaming"
    IDLE = "idle"
    DISCONNECTED = "disconnected"


LocationLike = Union[Coordinates, dict]


class TrackingSession:
    def __init__(
        self,
        booking_id: str,
        transport,
        role: str = "viewer",
        sleep: Callable = asyncio.sleep,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY_SECONDS,
        on_location: Optional[Callable[[Coordinates], None]] = None,
        on_ack: Optional[Callable[[str], None]] = None,
    ):
        if not booking_id or not booking_id.strip():
            raise ValueError("booking_id must not be blank")
        self.booking_id = booking_id
        self.transport = transport
        self.role = role
        self.reconnect_delay = reconnect_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.on_location = on_location
        self.on_ack = on_ack
        self._sleep = sleep

        self.state = SessionState.CONNECTING
        self.remote_location: Optional[Coordinates] = None
        self.acknowledged = False
        self.ack_message: Optional[str] = None
        self.reconnecting = False
        self.sent_count = 0
        self._streaming = False
        self._has_streamed = False
        self._closed = False

    @property
    def status_text(self) -> str:
        if self.reconnecting:
            return RECONNECTING
        if self.acknowledged:
            return self.ack_message
        return AWAITING_DISPATCH

    def _settled_state(self) -> SessionState:
        if self._streaming:
            return SessionState.STREAMING
        if self._has_streamed:
            return SessionState.IDLE
        return SessionState.JOINED

    async def connect(self) -> None:
        """Open the transport and join the booking room."""
        if self._closed:
            raise RuntimeError("Session is closed")
        self.state = SessionState.CONNECTING
        await self.transport.connect()
        if self._closed:
            # close() ran while we were connecting; DISCONNECTED is final
            await self.transport.close()
            return
        await self.transport.send({"kind": "join_booking", "bookingId": self.booking_id})
        if self._closed:
            return
        self.state = self._settled_state()
        logger.info(f"Joined booking room {self.booking_id} as {self.role}")

    async def reconnect(self) -> None:
        """Retry ``connect`` with exponential backoff until it works or the session closes."""
        self.reconnecting = True
        delay = self.reconnect_delay
        try:
            while not self._closed:
                try:
                    await self.connect()
                    return
                except TransportClosed as e:
                    logger.warning(f"Reconnect to booking room {self.booking_id} failed, retrying in {delay}s: {e}")
                await self._sleep(delay)
                delay = min(delay * 2, self.reconnect_max_delay)
        finally:
            self.reconnecting = False

    async def send_location(self, location: LocationLike) -> None:
        if isinstance(location, Coordinates):
            location = location.model_dump()
        payload = coerce_location(location)
        if payload is None:
            raise ValueError(f"Not a location: {location!r}")
        await self.transport.send({"kind": "send_location", "bookingId": self.booking_id, "location": payload})
        self.sent_count += 1

    async def _emit(self, location: LocationLike) -> bool:
        try:
            await self.send_location(location)
            return True
        except TransportClosed as e:
            # Best effort: the fix is stale by the time we are back
            logger.warning(f"Location for booking {self.booking_id} not sent: {e}")
        return False

    def _start_streaming(self) -> None:
        self._streaming = True
        self._has_streamed = True
        if self.state != SessionState.CONNECTING:
            self.state = SessionState.STREAMING

    def _stop_streaming(self) -> None:
        self._streaming = False
        if self.state == SessionState.STREAMING:
            self.state = SessionState.IDLE

    async def stream_route(self, waypoints: Iterable[LocationLike], interval: float = SIMULATION_INTERVAL_SECONDS) -> int:
        """Emit each waypoint after waiting ``interval`` seconds, then go idle.

        Returns the number of waypoints emitted.
        """
        self._start_streaming()
        emitted = 0
        try:
            for waypoint in waypoints:
                await self._sleep(interval)
                if self._closed:
                    break
                if await self._emit(waypoint):
                    emitted += 1
                    logger.debug(f"Waypoint {emitted} sent for booking {self.booking_id}")
        finally:
            self._stop_streaming()
        logger.info(f"Route for booking {self.booking_id} completed after {emitted} waypoints")
        return emitted

    async def stream_positions(self, source: AsyncIterable[LocationLike]) -> int:
        """Emit every fix produced by a positioning source until it is exhausted."""
        self._start_streaming()
        emitted = 0
        try:
            async for fix in source:
                if self._closed:
                    break
                if await self._emit(fix):
                    emitted += 1
        finally:
            self._stop_streaming()
        return emitted

    async def acknowledge(self, message: Optional[str] = None) -> bool:
        """Dispatcher action. Only the first call sends anything."""
        if self.acknowledged:
            return False
        payload = {"kind": "send_ack", "bookingId": self.booking_id}
        if message:
            payload["message"] = message
        await self.transport.send(payload)
        self.acknowledged = True
        self.ack_message = message or ACK_MESSAGE
        return True

    def handle_message(self, data: dict) -> None:
        if not isinstance(data, dict):
            return
        if data.get("bookingId", self.booking_id) != self.booking_id:
            return

        kind = data.get("kind")
        if kind == "receive_location":
            coordinates = Coordinates.from_payload(data.get("location"))
            if coordinates is None:
                logger.debug(f"Ignoring malformed location for booking {self.booking_id}")
                return
            self.remote_location = coordinates
            if self.on_location is not None:
                self.on_location(coordinates)
        elif kind == "receive_ack":
            self.acknowledged = True
            self.ack_message = data.get("message") or ACK_MESSAGE
            if self.on_ack is not None:
                self.on_ack(self.ack_message)
        else:
            logger.debug(f"Ignoring unknown message kind {kind!r}")

    async def listen(self) -> None:
        """Apply relay pushes until the session is closed, reconnecting on loss."""
        while not self._closed:
            try:
                data = await self.transport.receive()
            except TransportClosed as e:
                if self._closed:
                    break
                logger.warning(f"Lost relay connection for booking {self.booking_id}: {e}")
                await self.reconnect()
                continue
            self.handle_message(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.transport.send({"kind": "leave_booking", "bookingId": self.booking_id})
        except TransportClosed:
            pass
        await self.transport.close()
        self._streaming = False
        self.state = SessionState.DISCONNECTED
        logger.info(f"Tracking session for booking {self.booking_id} closed")
