"""Wire messages exchanged over the relay WebSocket.

Every frame is a JSON object with a ``kind`` discriminator. Peers send
``join_booking``, ``send_location``, ``send_ack`` and ``leave_booking``; the
relay only ever sends ``receive_location`` and ``receive_ack``.
"""
import json
import math
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from constants import ACK_STATUS

# Accepted spellings of a coordinate pair, in lookup order
LOCATION_KEYS = (("latitude", "longitude"), ("lat", "lng"))


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def coerce_location(value: Any) -> Optional[dict]:
    """Return the coordinate pair of ``value`` under the sender's own key names.

    ``None`` means the payload is not a usable location. Extra keys are dropped,
    the coordinate values themselves are passed through untouched.
    """
    if not isinstance(value, dict):
        return None
    for lat_key, lng_key in LOCATION_KEYS:
        if lat_key in value and lng_key in value:
            lat, lng = value[lat_key], value[lng_key]
            if _is_finite_number(lat) and _is_finite_number(lng):
                return {lat_key: lat, lng_key: lng}
            return None
    return None


class Coordinates(BaseModel):
    latitude: float
    longitude: float

    @classmethod
    def from_payload(cls, value: Any) -> Optional["Coordinates"]:
        location = coerce_location(value)
        if location is None:
            return None
        lat, lng = location.values()
        return cls(latitude=float(lat), longitude=float(lng))


class _BookingMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId", min_length=1)

    @field_validator("booking_id")
    @classmethod
    def booking_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("bookingId must not be blank")
        return value


class JoinBooking(_BookingMessage):
    kind: Literal["join_booking"] = "join_booking"


class LeaveBooking(_BookingMessage):
    kind: Literal["leave_booking"] = "leave_booking"


class SendLocation(_BookingMessage):
    kind: Literal["send_location"] = "send_location"
    location: dict

    @field_validator("location", mode="before")
    @classmethod
    def location_is_coordinate_pair(cls, value: Any) -> dict:
        location = coerce_location(value)
        if location is None:
            raise ValueError("location needs finite latitude/longitude or lat/lng")
        return location


class SendAck(_BookingMessage):
    kind: Literal["send_ack"] = "send_ack"
    message: Optional[str] = None


ClientMessage = Annotated[
    Union[JoinBooking, LeaveBooking, SendLocation, SendAck],
    Field(discriminator="kind"),
]

_client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: Union[str, bytes, dict]) -> Optional[Union[JoinBooking, LeaveBooking, SendLocation, SendAck]]:
    """Decode one inbound frame. Returns ``None`` for anything the relay should drop."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
    if not isinstance(raw, dict):
        return None
    try:
        return _client_message_adapter.validate_python(raw)
    except ValidationError:
        return None


def receive_location(booking_id: str, location: dict) -> dict:
    return {"kind": "receive_location", "bookingId": booking_id, "location": location}


def receive_ack(booking_id: str, message: str) -> dict:
    return {"kind": "receive_ack", "bookingId": booking_id, "status": ACK_STATUS, "message": message}
