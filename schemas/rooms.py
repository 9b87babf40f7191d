from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from schemas.messages import coerce_location


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RoomDetailsResponse(_CamelModel):
    booking_id: str = Field(alias="bookingId")
    member_count: int = Field(alias="memberCount")
    ws_url: str = Field(alias="wsUrl")


class AckRequest(BaseModel):
    message: Optional[str] = None


DELIVERED_DESCRIPTION = (
    "Connections the event was handed to. With RELAY_BROKER=redis this is the "
    "number of relay processes subscribed to the booking channel instead."
)


class AckResponse(_CamelModel):
    booking_id: str = Field(alias="bookingId")
    status: str
    message: str
    delivered: int = Field(description=DELIVERED_DESCRIPTION)


class LocationRequest(BaseModel):
    """Either ``{latitude, longitude}`` or ``{lat, lng}``, both finite numbers."""
    model_config = ConfigDict(extra="allow")

    @model_validator(mode="before")
    @classmethod
    def coordinate_pair(cls, data: Any) -> Any:
        if coerce_location(data) is None:
            raise ValueError("location needs finite latitude/longitude or lat/lng")
        return data

    def as_location(self) -> dict:
        return coerce_location(self.model_dump())


class LocationResponse(_CamelModel):
    booking_id: str = Field(alias="bookingId")
    delivered: int = Field(description=DELIVERED_DESCRIPTION)
