from fastapi import APIRouter, HTTPException, Request

from constants import ACK_STATUS
from logging_config import get_logger
from schemas.rooms import AckRequest, AckResponse, LocationRequest, LocationResponse, RoomDetailsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def _check_booking_id(booking_id: str) -> None:
    if not booking_id.strip():
        raise HTTPException(status_code=400, detail="Booking id must not be blank")


def _ws_url(request: Request, booking_id: str) -> str:
    # Replace http/https with ws/wss
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws?bookingId={booking_id}"


@rooms_router.get("/{booking_id}", response_model=RoomDetailsResponse)
async def get_room_details(booking_id: str, request: Request):
    """Current member count of a booking room and the URL to join it."""
    _check_booking_id(booking_id)
    relay = request.app.state.relay
    member_count = relay.member_count(booking_id)
    logger.info(f"Room details retrieved for {booking_id}: {member_count} members")
    return RoomDetailsResponse(
        booking_id=booking_id,
        member_count=member_count,
        ws_url=_ws_url(request, booking_id),
    )


@rooms_router.post("/{booking_id}/ack", response_model=AckResponse)
async def acknowledge_booking(booking_id: str, ack_request: AckRequest, request: Request):
    """Dispatcher acknowledgement issued from the booking back office."""
    _check_booking_id(booking_id)
    relay = request.app.state.relay
    message = ack_request.message or relay.ack_message
    delivered = await relay.relay_acknowledge(booking_id, message)
    logger.info(f"HTTP acknowledgement for room {booking_id} delivered to {delivered}")
    return AckResponse(booking_id=booking_id, status=ACK_STATUS, message=message, delivered=delivered)


@rooms_router.post("/{booking_id}/location", response_model=LocationResponse)
async def push_location(booking_id: str, location: LocationRequest, request: Request):
    """Location pushed by a driver app over HTTP. Goes to every member of the room."""
    _check_booking_id(booking_id)
    relay = request.app.state.relay
    delivered = await relay.relay_location(None, booking_id, location.as_location())
    logger.debug(f"HTTP location for room {booking_id} delivered to {delivered}")
    return LocationResponse(booking_id=booking_id, delivered=delivered)
