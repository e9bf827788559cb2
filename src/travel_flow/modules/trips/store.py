from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from travel_flow.core.logging import get_logger, log_event
from travel_flow.modules.trips.models import Trip
from travel_flow.modules.trips.schemas import TripSnapshot

logger = get_logger(__name__)

# Keys held in table columns rather than in the JSON document.
_COLUMN_KEYS = {"id", "title", "version"}


class TripNotFoundError(LookupError):
    def __init__(self, trip_id: object):
        super().__init__(f"Trip not found: {trip_id}")
        self.trip_id = str(trip_id)


class TripConflictError(RuntimeError):
    """Another writer saved the trip after it was read."""

    def __init__(self, trip_id: object, expected_version: int):
        super().__init__(f"Trip {trip_id} changed since version {expected_version}")
        self.trip_id = str(trip_id)
        self.expected_version = expected_version


def _parse_trip_id(trip_id: object) -> uuid.UUID:
    if isinstance(trip_id, uuid.UUID):
        return trip_id
    try:
        return uuid.UUID(str(trip_id))
    except ValueError as e:
        raise TripNotFoundError(trip_id) from e


def _document(snapshot: TripSnapshot) -> dict:
    return {k: v for k, v in snapshot.dump().items() if k not in _COLUMN_KEYS}


def to_snapshot(trip: Trip) -> TripSnapshot:
    return TripSnapshot.model_validate(
        {**(trip.data or {}), "id": str(trip.id), "title": trip.title, "version": trip.version}
    )


class TripStore:
    """Trip persistence. Writes are conditional on the version that was read."""

    def __init__(self, session: Session):
        self._session = session

    def _row(self, trip_id: object) -> Trip:
        # Conditional updates bypass the identity map, so always reload the row.
        trip = self._session.scalar(
            select(Trip)
            .where(Trip.id == _parse_trip_id(trip_id))
            .execution_options(populate_existing=True)
        )
        if not trip:
            raise TripNotFoundError(trip_id)
        return trip

    def get_trip(self, trip_id: object) -> TripSnapshot:
        return to_snapshot(self._row(trip_id))

    def list_trips(self) -> list[Trip]:
        return list(
            self._session.scalars(
                select(Trip).order_by(Trip.start_date.desc(), Trip.created_at.desc())
            )
        )

    def create_trip(self, snapshot: TripSnapshot) -> TripSnapshot:
        trip = Trip(
            title=snapshot.title,
            start_date=snapshot.start_date,
            end_date=snapshot.end_date,
            data=_document(snapshot),
            version=1,
        )
        # Ingestion picks the id up front so attachment keys exist before the row does.
        if snapshot.id:
            trip.id = _parse_trip_id(snapshot.id)
        self._session.add(trip)
        self._session.commit()
        self._session.refresh(trip)
        log_event(logger, "trip.created", trip_id=str(trip.id))
        return to_snapshot(trip)

    def save_trip(self, snapshot: TripSnapshot) -> TripSnapshot:
        trip_id = _parse_trip_id(snapshot.id)
        result = self._session.execute(
            update(Trip)
            .where(Trip.id == trip_id, Trip.version == snapshot.version)
            .values(
                title=snapshot.title,
                start_date=snapshot.start_date,
                end_date=snapshot.end_date,
                data=_document(snapshot),
                version=Trip.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._session.rollback()
            # Distinguish a concurrent write from a deleted trip.
            self._row(trip_id)
            log_event(
                logger,
                "trip.save.conflict",
                trip_id=str(trip_id),
                expected_version=snapshot.version,
            )
            raise TripConflictError(trip_id, snapshot.version)
        self._session.commit()
        log_event(logger, "trip.saved", trip_id=str(trip_id), version=snapshot.version + 1)
        return snapshot.model_copy(update={"version": snapshot.version + 1})

    def delete_trip(self, trip_id: object) -> TripSnapshot:
        trip = self._row(trip_id)
        snapshot = to_snapshot(trip)
        self._session.delete(trip)
        self._session.commit()
        log_event(logger, "trip.deleted", trip_id=str(trip.id))
        return snapshot
