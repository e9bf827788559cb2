from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PASSENGER_TYPES = {"ADT", "CHD", "INF"}


class CamelModel(BaseModel):
    # Unknown keys from the extraction service are kept and round-tripped verbatim.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        coerce_numbers_to_str=True,
    )

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Airport(CamelModel):
    code: str | None = None
    city: str | None = None
    airport: str | None = None
    terminal: str | None = None


class Passenger(CamelModel):
    name: str | None = None
    type: str = "ADT"
    ticket_number: str | None = None
    pdf_path: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        t = str(value or "").strip().upper()
        return t if t in PASSENGER_TYPES else "ADT"


class StayDate(CamelModel):
    date: str | None = None
    time: str | None = None


class FlightRecord(CamelModel):
    id: str | None = None
    date: str | None = None
    flight_number: str | None = None
    airline: str | None = None
    departure: Airport | None = None
    arrival: Airport | None = None
    departure_time: str | None = None
    arrival_time: str | None = None
    arrival_next_day: bool | None = None
    duration: str | None = None
    booking_reference: str | None = None
    ticket_number: str | None = None
    seat: str | None = None
    cabin_class: str | None = Field(default=None, alias="class")
    passengers: list[Passenger] | None = None
    # Legacy records carry a single passenger instead of a list.
    passenger: Passenger | None = None
    pdf_path: str | None = None


class HotelRecord(CamelModel):
    id: str | None = None
    name: str | None = None
    address: dict[str, Any] | None = None
    check_in: StayDate | None = None
    check_out: StayDate | None = None
    nights: int | None = None
    confirmation_number: str | None = None
    guest_name: str | None = None
    phone: str | None = None
    room_type: Any = None
    pdf_path: str | None = None


class TripSnapshot(CamelModel):
    """The JSON document persisted for a trip, flights and hotels in insertion order."""

    id: str | None = None
    title: str = "New Trip"
    flights: list[FlightRecord] = Field(default_factory=list)
    hotels: list[HotelRecord] = Field(default_factory=list)
    start_date: str | None = None
    end_date: str | None = None
    route: str | None = None
    version: int = 1


class TripSummaryOut(BaseModel):
    id: uuid.UUID
    title: str
    start_date: str | None
    end_date: str | None
    route: str | None
    flight_count: int
    hotel_count: int
    version: int
    created_at: datetime
    updated_at: datetime


class TripCreate(BaseModel):
    title: str = Field(default="New Trip", min_length=1, max_length=200)


class TripRename(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class PassengerRemove(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_reference: str = Field(min_length=1)
    passenger_name: str = Field(min_length=1)


class BookingEdit(BaseModel):
    """Partial update for one flight or hotel, keyed the same way the records are stored."""

    model_config = ConfigDict(extra="forbid")

    updates: dict[str, Any]
