from __future__ import annotations

import mimetypes
from datetime import date
from typing import Any, Literal

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from travel_flow.core.logging import get_logger, log_event, log_exception, set_trip_context
from travel_flow.core.storage import ObjectStorage, StorageError, get_storage
from travel_flow.modules.ingestion.merge import build_passengers, slot_id_from_path
from travel_flow.modules.trips.derived import recalculate
from travel_flow.modules.trips.schemas import (
    FlightRecord,
    HotelRecord,
    TripSnapshot,
    TripSummaryOut,
)
from travel_flow.modules.trips.store import TripConflictError, TripNotFoundError, TripStore

logger = get_logger(__name__)

BookingKind = Literal["flight", "hotel"]

_FLIGHT_SIMPLE_FIELDS = (
    "date",
    "flightNumber",
    "departureTime",
    "arrivalTime",
    "bookingReference",
    "ticketNumber",
    "seat",
    "class",
)
_FLIGHT_NESTED_FIELDS = ("departure", "arrival")
_HOTEL_SIMPLE_FIELDS = ("name", "guestName", "phone", "confirmationNumber", "roomType")
_HOTEL_NESTED_FIELDS = ("checkIn", "checkOut", "address")


def _load(store: TripStore, trip_id: object) -> TripSnapshot:
    try:
        trip = store.get_trip(trip_id)
    except TripNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found") from e
    set_trip_context(trip.id)
    return trip


def _save(store: TripStore, trip: TripSnapshot) -> TripSnapshot:
    try:
        return store.save_trip(recalculate(trip))
    except TripConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Trip was modified concurrently; reload and retry",
        ) from e
    except TripNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found") from e


def _delete_objects(storage: ObjectStorage, paths: list[str | None]) -> int:
    deleted = 0
    for path in dict.fromkeys(p for p in paths if p):
        try:
            storage.delete(key=path)
            deleted += 1
        except StorageError:
            log_exception(logger, "attachment.delete.failure", storage_key=path)
    return deleted


def _flight_paths(flight: FlightRecord) -> list[str | None]:
    paths = [flight.pdf_path] + [p.pdf_path for p in flight.passengers or []]
    if flight.passenger:
        paths.append(flight.passenger.pdf_path)
    return paths


def trip_attachment_paths(trip: TripSnapshot) -> list[str]:
    paths: list[str | None] = []
    for flight in trip.flights:
        paths.extend(_flight_paths(flight))
    paths.extend(h.pdf_path for h in trip.hotels)
    return list(dict.fromkeys(p for p in paths if p))


def create_trip(session: Session, *, title: str) -> TripSnapshot:
    return TripStore(session).create_trip(TripSnapshot(title=title.strip() or "New Trip"))


def list_trips(session: Session) -> list[TripSummaryOut]:
    out: list[TripSummaryOut] = []
    for row in TripStore(session).list_trips():
        data = row.data or {}
        out.append(
            TripSummaryOut(
                id=row.id,
                title=row.title,
                start_date=row.start_date,
                end_date=row.end_date,
                route=data.get("route"),
                flight_count=len(data.get("flights") or []),
                hotel_count=len(data.get("hotels") or []),
                version=row.version,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
        )
    return out


def get_trip(session: Session, *, trip_id: object) -> TripSnapshot:
    return _load(TripStore(session), trip_id)


def rename_trip(session: Session, *, trip_id: object, title: str) -> TripSnapshot:
    store = TripStore(session)
    trip = _load(store, trip_id)
    trip.title = title.strip()
    return _save(store, trip)


def delete_trip(
    session: Session, *, trip_id: object, storage: ObjectStorage | None = None
) -> int:
    """Delete the trip and every attachment its records reference. Returns attachments deleted."""
    store = TripStore(session)
    try:
        trip = store.delete_trip(trip_id)
    except TripNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found") from e
    return _delete_objects(storage or get_storage(), trip_attachment_paths(trip))


def delete_booking(
    session: Session,
    *,
    trip_id: object,
    kind: BookingKind,
    item_id: str,
    storage: ObjectStorage | None = None,
) -> TripSnapshot:
    store = TripStore(session)
    trip = _load(store, trip_id)

    if kind == "flight":
        target = next((f for f in trip.flights if f.id == item_id), None)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Flight not found")
        trip.flights = [f for f in trip.flights if f is not target]
        paths = _flight_paths(target)
    else:
        hotel = next((h for h in trip.hotels if h.id == item_id), None)
        if hotel is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Hotel not found")
        trip.hotels = [h for h in trip.hotels if h is not hotel]
        paths = [hotel.pdf_path]

    saved = _save(store, trip)
    deleted = _delete_objects(storage or get_storage(), paths)
    log_event(logger, "booking.deleted", kind=kind, item_id=item_id, attachments_deleted=deleted)
    return saved


def edit_booking(
    session: Session,
    *,
    trip_id: object,
    kind: BookingKind,
    item_id: str,
    updates: dict[str, Any],
) -> TripSnapshot:
    """
    Apply a partial update to one flight or hotel.

    Only whitelisted fields change. Nested objects are merged key by key and
    passenger updates apply by position. Hotel nights follow the stay dates.
    """
    store = TripStore(session)
    trip = _load(store, trip_id)
    records = trip.flights if kind == "flight" else trip.hotels
    position = next((i for i, r in enumerate(records) if r.id == item_id), None)
    if position is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"{kind.capitalize()} not found"
        )

    item = records[position].dump()
    if kind == "flight":
        _merge_fields(item, updates, _FLIGHT_SIMPLE_FIELDS, _FLIGHT_NESTED_FIELDS)
        _merge_passengers(item, updates.get("passengers"))
        model: type[FlightRecord] | type[HotelRecord] = FlightRecord
    else:
        _merge_fields(item, updates, _HOTEL_SIMPLE_FIELDS, _HOTEL_NESTED_FIELDS)
        price_update = updates.get("price")
        if isinstance(price_update, dict) and isinstance(price_update.get("total"), dict):
            price = item.get("price") if isinstance(item.get("price"), dict) else {}
            total = price.get("total") if isinstance(price.get("total"), dict) else {}
            item["price"] = {**price, "total": {**total, **price_update["total"]}}
        if "checkIn" in updates or "checkOut" in updates:
            nights = _nights(item)
            if nights is not None:
                item["nights"] = nights
        model = HotelRecord

    try:
        records[position] = model.model_validate(item)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid booking update"
        ) from e

    saved = _save(store, trip)
    log_event(logger, "booking.edited", kind=kind, item_id=item_id, fields=sorted(updates))
    return saved


def _merge_fields(
    item: dict[str, Any],
    updates: dict[str, Any],
    simple: tuple[str, ...],
    nested: tuple[str, ...],
) -> None:
    for key in simple:
        if key in updates:
            item[key] = updates[key]
    for key in nested:
        value = updates.get(key)
        if isinstance(value, dict):
            current = item.get(key) if isinstance(item.get(key), dict) else {}
            item[key] = {**current, **value}


def _merge_passengers(item: dict[str, Any], updates: Any) -> None:
    if not isinstance(updates, list):
        return
    # Attachment references are owned by ingestion, not by edits.
    clean = [
        {k: v for k, v in u.items() if k != "pdfPath"} if isinstance(u, dict) else {}
        for u in updates
    ]
    passengers = item.get("passengers")
    if isinstance(passengers, list):
        for i, change in enumerate(clean[: len(passengers)]):
            passengers[i] = {**passengers[i], **change}
    if isinstance(item.get("passenger"), dict) and clean:
        item["passenger"] = {**item["passenger"], **clean[0]}


def _nights(hotel: dict[str, Any]) -> int | None:
    try:
        check_in = date.fromisoformat(str((hotel.get("checkIn") or {}).get("date") or "")[:10])
        check_out = date.fromisoformat(str((hotel.get("checkOut") or {}).get("date") or "")[:10])
    except ValueError:
        return None
    return max(1, (check_out - check_in).days)


def delete_passenger(
    session: Session,
    *,
    trip_id: object,
    booking_reference: str,
    passenger_name: str,
    storage: ObjectStorage | None = None,
) -> tuple[TripSnapshot, int]:
    """
    Remove a passenger from every flight booked under ``booking_reference``.

    Flights left without passengers are removed with their attachments.
    Returns the saved trip and the number of flights the passenger was removed from.
    """
    store = TripStore(session)
    trip = _load(store, trip_id)
    ref = booking_reference.strip().lower()
    name = " ".join(passenger_name.split()).casefold()

    removed = 0
    paths: list[str | None] = []
    emptied: set[str | None] = set()
    # Legacy flights carry a single passenger.
    trip.flights = [
        f.model_copy(update={"passengers": build_passengers(f), "passenger": None})
        if f.passenger and not f.passengers
        else f
        for f in trip.flights
    ]
    for flight in trip.flights:
        if (flight.booking_reference or "").strip().lower() != ref or not flight.passengers:
            continue
        match = next(
            (p for p in flight.passengers if " ".join((p.name or "").split()).casefold() == name),
            None,
        )
        if match is None:
            continue
        paths.append(match.pdf_path)
        flight.passengers = [p for p in flight.passengers if p is not match]
        removed += 1
        if not flight.passengers:
            emptied.add(flight.id)
            paths.append(flight.pdf_path)

    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Passenger not found in any flight with this booking reference",
        )

    trip.flights = [f for f in trip.flights if not (f.id in emptied and not f.passengers)]
    saved = _save(store, trip)
    _delete_objects(storage or get_storage(), paths)
    log_event(
        logger,
        "passenger.deleted",
        removed_from_flights=removed,
        flights_removed=len(emptied),
    )
    return saved, removed


def get_attachment(
    session: Session,
    *,
    trip_id: object,
    item_id: str,
    storage: ObjectStorage | None = None,
) -> tuple[bytes, str]:
    trip = get_trip(session, trip_id=trip_id)
    path = next((p for p in trip_attachment_paths(trip) if slot_id_from_path(p) == item_id), None)
    if not path:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")
    try:
        body = (storage or get_storage()).get(key=path)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found") from e
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return body, media_type
