"""Booking-room relay.

A room is nothing more than an entry in the membership map keyed by booking id.
It appears on the first join and disappears when its last member leaves or
disconnects. Membership changes are plain synchronous code on the event loop,
so they are never interleaved with each other or with a fan-out snapshot.
"""
import asyncio
import json
from typing import Dict, List, Optional, Set

from backend import LocalBroker
from constants import ACK_MESSAGE, SEND_TIMEOUT_SECONDS
from logging_config import get_logger
from schemas.messages import (
    JoinBooking,
    LeaveBooking,
    SendAck,
    SendLocation,
    coerce_location,
    parse_client_message,
    receive_ack,
    receive_location,
)

logger = get_logger(__name__)


class Peer:
    """One connection to the relay, wrapping anything with an async ``send_text``."""

    def __init__(self, connection_id: str, websocket):
        self.connection_id = connection_id
        self.websocket = websocket

    async def send(self, message: dict) -> None:
        await self.websocket.send_text(json.dumps(message))

    async def close(self) -> None:
        await self.websocket.close()

    def __repr__(self) -> str:
        return f"Peer({self.connection_id!r})"


class RoomRelay:
    def __init__(self, broker=None, send_timeout: float = SEND_TIMEOUT_SECONDS, ack_message: str = ACK_MESSAGE):
        if broker is None:
            broker = LocalBroker()
        self.broker = broker
        self.broker.bind(self)
        self.send_timeout = send_timeout
        self.ack_message = ack_message
        # Format: {booking_id: {connection_id: peer}}
        self._rooms: Dict[str, Dict[str, Peer]] = {}
        # Format: {connection_id: {booking_id, ...}}
        self._memberships: Dict[str, Set[str]] = {}

    def join(self, peer: Peer, booking_id: str) -> bool:
        """Add ``peer`` to the room. Returns False when it was already a member."""
        if not isinstance(booking_id, str) or not booking_id.strip():
            logger.debug(f"Ignoring join with blank booking id from {peer.connection_id}")
            return False

        room = self._rooms.get(booking_id)
        if room is None:
            room = self._rooms[booking_id] = {}
            self.broker.room_opened(booking_id)
            logger.debug(f"Opened room {booking_id}")

        if peer.connection_id in room:
            logger.debug(f"Connection {peer.connection_id} already in room {booking_id}")
            return False

        room[peer.connection_id] = peer
        self._memberships.setdefault(peer.connection_id, set()).add(booking_id)
        self.broker.add_member(booking_id, peer.connection_id)
        logger.info(f"Connection {peer.connection_id} joined booking room {booking_id} (members: {len(room)})")
        return True

    def leave(self, peer: Peer, booking_id: str) -> bool:
        room = self._rooms.get(booking_id)
        if room is None or room.pop(peer.connection_id, None) is None:
            return False

        rooms = self._memberships.get(peer.connection_id)
        if rooms is not None:
            rooms.discard(booking_id)
            if not rooms:
                del self._memberships[peer.connection_id]

        self.broker.remove_member(booking_id, peer.connection_id)
        logger.info(f"Connection {peer.connection_id} left booking room {booking_id}")

        if not room:
            del self._rooms[booking_id]
            self.broker.room_closed(booking_id)
            logger.debug(f"Room {booking_id} is empty, closed")
        return True

    def disconnect(self, peer: Peer) -> List[str]:
        """Drop every membership of ``peer``. Returns the rooms it was removed from."""
        booking_ids = sorted(self._memberships.get(peer.connection_id, ()))
        for booking_id in booking_ids:
            self.leave(peer, booking_id)
        if booking_ids:
            logger.info(f"Connection {peer.connection_id} disconnected from {len(booking_ids)} room(s)")
        return booking_ids

    def members(self, booking_id: str) -> List[Peer]:
        return list(self._rooms.get(booking_id, {}).values())

    def rooms_for(self, peer: Peer) -> Set[str]:
        return set(self._memberships.get(peer.connection_id, ()))

    def member_count(self, booking_id: str) -> int:
        return self.broker.member_count(booking_id)

    async def relay_location(self, sender: Optional[Peer], booking_id: str, location) -> int:
        """Forward a location to everyone in the room except ``sender``.

        Malformed locations are dropped. ``sender`` may be None for updates that
        do not come from a room member (HTTP ingest); the whole room gets them.
        Returns what the broker reports: local recipients in memory mode,
        subscribed processes in Redis mode.
        """
        clean = coerce_location(location)
        if clean is None:
            logger.debug(f"Dropping malformed location for room {booking_id}: {location!r}")
            return 0
        exclude = sender.connection_id if sender is not None else None
        return await self.broker.publish(booking_id, receive_location(booking_id, clean), exclude=exclude)

    async def relay_acknowledge(self, booking_id: str, message: Optional[str] = None) -> int:
        """Send the dispatcher acknowledgement to the whole room, sender included."""
        payload = receive_ack(booking_id, message or self.ack_message)
        logger.info(f"Acknowledgement issued for room {booking_id}")
        return await self.broker.publish(booking_id, payload, exclude=None)

    async def fan_out(self, booking_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """Deliver ``message`` to the local members of a room. Returns the number delivered."""
        recipients = [peer for peer in self.members(booking_id) if peer.connection_id != exclude]
        if not recipients:
            logger.debug(f"No recipients in room {booking_id} for {message.get('kind')}")
            return 0

        results = await asyncio.gather(*(self._deliver(peer, booking_id, message) for peer in recipients))
        delivered = sum(1 for ok in results if ok)
        logger.debug(f"Delivered {message.get('kind')} to {delivered}/{len(recipients)} members of room {booking_id}")
        return delivered

    async def _deliver(self, peer: Peer, booking_id: str, message: dict) -> bool:
        # Skip peers that left while earlier deliveries were in flight
        if booking_id not in self._memberships.get(peer.connection_id, ()):
            return False
        try:
            await asyncio.wait_for(peer.send(message), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Timed out sending to connection {peer.connection_id} in room {booking_id}")
        except Exception as e:
            logger.warning(f"Error sending to connection {peer.connection_id} in room {booking_id}: {e}")
        # Close so the client sees the loss and re-joins
        self.disconnect(peer)
        await self._close(peer)
        return False

    async def _close(self, peer: Peer) -> None:
        try:
            await asyncio.wait_for(peer.close(), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out closing connection {peer.connection_id}")
        except Exception as e:
            logger.debug(f"Error closing connection {peer.connection_id}: {e}")

    async def handle(self, peer: Peer, raw) -> None:
        """Apply one inbound frame from ``peer``. Malformed frames are dropped."""
        message = parse_client_message(raw)
        if message is None:
            logger.debug(f"Dropping malformed frame from connection {peer.connection_id}")
            return

        if isinstance(message, JoinBooking):
            self.join(peer, message.booking_id)
        elif isinstance(message, LeaveBooking):
            self.leave(peer, message.booking_id)
        elif isinstance(message, SendLocation):
            await self.relay_location(peer, message.booking_id, message.location)
        elif isinstance(message, SendAck):
            await self.relay_acknowledge(message.booking_id, message.message)
        else:
            raise TypeError(f"Unhandled message type {type(message).__name__}")
