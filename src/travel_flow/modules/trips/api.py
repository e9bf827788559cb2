from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from travel_flow.api.deps import object_storage
from travel_flow.core.db import db_session
from travel_flow.core.storage import ObjectStorage
from travel_flow.modules.trips.schemas import (
    BookingEdit,
    PassengerRemove,
    TripCreate,
    TripRename,
    TripSummaryOut,
)
from travel_flow.modules.trips.service import (
    BookingKind,
    create_trip,
    delete_booking,
    delete_passenger,
    delete_trip,
    edit_booking,
    get_attachment,
    get_trip,
    list_trips,
    rename_trip,
)

router = APIRouter(tags=["trips"])


@router.post("/trips", status_code=status.HTTP_201_CREATED)
def create_empty_trip(payload: TripCreate, session: Session = Depends(db_session)) -> dict[str, Any]:
    return create_trip(session, title=payload.title).dump()


@router.get("/trips", response_model=list[TripSummaryOut])
def list_all_trips(session: Session = Depends(db_session)) -> list[TripSummaryOut]:
    return list_trips(session)


@router.get("/trips/{trip_id}")
def read_trip(trip_id: uuid.UUID, session: Session = Depends(db_session)) -> dict[str, Any]:
    return get_trip(session, trip_id=trip_id).dump()


@router.patch("/trips/{trip_id}")
def rename(
    trip_id: uuid.UUID, payload: TripRename, session: Session = Depends(db_session)
) -> dict[str, Any]:
    return rename_trip(session, trip_id=trip_id, title=payload.title).dump()


@router.delete("/trips/{trip_id}")
def remove_trip(
    trip_id: uuid.UUID,
    session: Session = Depends(db_session),
    storage: ObjectStorage = Depends(object_storage),
) -> dict[str, Any]:
    deleted = delete_trip(session, trip_id=trip_id, storage=storage)
    return {"success": True, "attachmentsDeleted": deleted}


@router.patch("/trips/{trip_id}/bookings/{kind}/{item_id}")
def update_booking(
    trip_id: uuid.UUID,
    kind: BookingKind,
    item_id: str,
    payload: BookingEdit,
    session: Session = Depends(db_session),
) -> dict[str, Any]:
    trip = edit_booking(
        session, trip_id=trip_id, kind=kind, item_id=item_id, updates=payload.updates
    )
    return {"success": True, "tripData": trip.dump()}


@router.delete("/trips/{trip_id}/bookings/{kind}/{item_id}")
def remove_booking(
    trip_id: uuid.UUID,
    kind: BookingKind,
    item_id: str,
    session: Session = Depends(db_session),
    storage: ObjectStorage = Depends(object_storage),
) -> dict[str, Any]:
    trip = delete_booking(session, trip_id=trip_id, kind=kind, item_id=item_id, storage=storage)
    return {"success": True, "tripData": trip.dump()}


@router.post("/trips/{trip_id}/passengers/remove")
def remove_passenger(
    trip_id: uuid.UUID,
    payload: PassengerRemove,
    session: Session = Depends(db_session),
    storage: ObjectStorage = Depends(object_storage),
) -> dict[str, Any]:
    trip, removed = delete_passenger(
        session,
        trip_id=trip_id,
        booking_reference=payload.booking_reference,
        passenger_name=payload.passenger_name,
        storage=storage,
    )
    return {"success": True, "removedFromFlights": removed, "tripData": trip.dump()}


@router.get("/trips/{trip_id}/attachments/{item_id}")
def download_attachment(
    trip_id: uuid.UUID,
    item_id: str,
    session: Session = Depends(db_session),
    storage: ObjectStorage = Depends(object_storage),
) -> Response:
    body, media_type = get_attachment(session, trip_id=trip_id, item_id=item_id, storage=storage)
    return Response(content=body, media_type=media_type)
