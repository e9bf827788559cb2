from __future__ import annotations

import pytest
from fastapi import HTTPException


def _seed(session, storage, *, paths=True):
    from travel_flow.modules.trips.derived import recalculate
    from travel_flow.modules.trips.schemas import TripSnapshot
    from travel_flow.modules.trips.store import TripStore

    def pdf(name):
        if not paths:
            return None
        key = f"trips/seed/{name}.pdf"
        storage.put(key=key, body=f"%PDF-{name}".encode(), content_type="application/pdf")
        return key

    def flight(n, number, ref, day, dep, arr, passengers):
        return {
            "id": f"flight-{n}",
            "flightNumber": number,
            "bookingReference": ref,
            "date": day,
            "departure": {"code": dep, "city": dep.title()},
            "arrival": {"code": arr, "city": arr.title()},
            "passengers": passengers,
        }

    snapshot = TripSnapshot.model_validate(
        {
            "title": "Tokyo Trip",
            "flights": [
                flight(
                    1,
                    "AZ1782",
                    "YPPN5D",
                    "2026-06-15",
                    "FCO",
                    "NRT",
                    [
                        {"name": "Alice Rossi", "pdfPath": pdf("flight-1")},
                        {"name": "Bob Rossi", "pdfPath": pdf("flight-1-p2")},
                    ],
                ),
                flight(
                    2,
                    "AZ785",
                    "YPPN5D",
                    "2026-06-25",
                    "NRT",
                    "FCO",
                    [{"name": "alice  rossi", "pdfPath": pdf("flight-2")}],
                ),
                flight(
                    3,
                    "NH10",
                    "ZZ9XYZ",
                    "2026-06-20",
                    "NRT",
                    "CTS",
                    [{"name": "Alice Rossi", "pdfPath": pdf("flight-3")}],
                ),
            ],
            "hotels": [
                {
                    "id": "hotel-1",
                    "name": "Park Hyatt",
                    "checkIn": {"date": "2026-06-15", "time": "15:00"},
                    "checkOut": {"date": "2026-06-20"},
                    "nights": 5,
                    "price": {"total": {"amount": 1000, "currency": "EUR"}},
                    "pdfPath": pdf("hotel-1"),
                }
            ],
        }
    )
    return TripStore(session).create_trip(recalculate(snapshot))


def test_create_rename_list_and_get():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.trips.service import create_trip, get_trip, list_trips, rename_trip

    with SessionLocal() as session:
        empty = create_trip(session, title="  ")
        seeded = _seed(session, get_storage(), paths=False)
        renamed = rename_trip(session, trip_id=empty.id, title="Summer")
        summaries = list_trips(session)
        loaded = get_trip(session, trip_id=seeded.id)

    assert empty.title == "New Trip"
    assert empty.flights == [] and empty.start_date is None
    assert (renamed.title, renamed.version) == ("Summer", 2)

    by_id = {str(s.id): s for s in summaries}
    assert by_id[seeded.id].flight_count == 3
    assert by_id[seeded.id].hotel_count == 1
    assert by_id[seeded.id].route == "FCO → NRT → CTS → NRT → FCO"
    assert by_id[empty.id].title == "Summer"

    assert loaded.start_date == "2026-06-15"
    assert loaded.end_date == "2026-06-25"
    assert loaded.hotels[0].dump()["price"] == {"total": {"amount": 1000, "currency": "EUR"}}


def test_get_unknown_trip_is_404():
    from travel_flow.core.db import SessionLocal
    from travel_flow.modules.trips.service import get_trip

    with SessionLocal() as session:
        for trip_id in ("00000000-0000-0000-0000-000000000000", "not-a-uuid"):
            with pytest.raises(HTTPException) as exc:
                get_trip(session, trip_id=trip_id)
            assert exc.value.status_code == 404


def test_delete_passenger_removes_emptied_flights_and_their_attachments():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.trips.service import delete_passenger

    storage = get_storage()
    with SessionLocal() as session:
        trip = _seed(session, storage)
        updated, removed = delete_passenger(
            session,
            trip_id=trip.id,
            booking_reference="yppn5d",
            passenger_name="Alice Rossi",
            storage=storage,
        )

    assert removed == 2
    assert [f.id for f in updated.flights] == ["flight-1", "flight-3"]
    assert [p.name for p in updated.flights[0].passengers] == ["Bob Rossi"]
    # Other bookings keep the same traveller.
    assert [p.name for p in updated.flights[1].passengers] == ["Alice Rossi"]
    assert updated.end_date == "2026-06-20"
    assert updated.route == "FCO → NRT → CTS"
    assert updated.version == 2

    for gone in ("flight-1", "flight-2"):
        with pytest.raises(StorageError):
            storage.get(key=f"trips/seed/{gone}.pdf")
    assert storage.get(key="trips/seed/flight-1-p2.pdf") == b"%PDF-flight-1-p2"
    assert storage.get(key="trips/seed/flight-3.pdf") == b"%PDF-flight-3"


def test_delete_unknown_passenger_is_404():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.trips.service import delete_passenger

    with SessionLocal() as session:
        trip = _seed(session, get_storage(), paths=False)
        with pytest.raises(HTTPException) as exc:
            delete_passenger(
                session, trip_id=trip.id, booking_reference="ZZ9XYZ", passenger_name="Bob Rossi"
            )
    assert exc.value.status_code == 404


def test_delete_booking_removes_record_and_attachments():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.trips.service import delete_booking

    storage = get_storage()
    with SessionLocal() as session:
        trip = _seed(session, storage)
        updated = delete_booking(
            session, trip_id=trip.id, kind="flight", item_id="flight-1", storage=storage
        )
        updated = delete_booking(
            session, trip_id=trip.id, kind="hotel", item_id="hotel-1", storage=storage
        )
        with pytest.raises(HTTPException) as exc:
            delete_booking(session, trip_id=trip.id, kind="hotel", item_id="hotel-1")

    assert exc.value.status_code == 404
    assert [f.id for f in updated.flights] == ["flight-2", "flight-3"]
    assert updated.hotels == []
    assert updated.start_date == "2026-06-20"
    assert updated.version == 3
    for gone in ("flight-1", "flight-1-p2", "hotel-1"):
        with pytest.raises(StorageError):
            storage.get(key=f"trips/seed/{gone}.pdf")


def test_edit_hotel_merges_nested_fields_and_recomputes_nights():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.trips.service import edit_booking

    with SessionLocal() as session:
        trip = _seed(session, get_storage(), paths=False)
        updated = edit_booking(
            session,
            trip_id=trip.id,
            kind="hotel",
            item_id="hotel-1",
            updates={
                "checkOut": {"date": "2026-06-28"},
                "price": {"total": {"amount": 1400}},
                "id": "hotel-99",
                "pdfPath": "elsewhere.pdf",
            },
        )

    hotel = updated.hotels[0].dump()
    assert hotel["id"] == "hotel-1"
    assert "pdfPath" not in hotel
    assert hotel["checkIn"] == {"date": "2026-06-15", "time": "15:00"}
    assert hotel["checkOut"] == {"date": "2026-06-28"}
    assert hotel["nights"] == 13
    assert hotel["price"] == {"total": {"amount": 1400, "currency": "EUR"}}
    assert updated.end_date == "2026-06-28"


def test_edit_flight_updates_airports_and_passengers_by_position():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.trips.service import edit_booking

    with SessionLocal() as session:
        trip = _seed(session, get_storage())
        updated = edit_booking(
            session,
            trip_id=trip.id,
            kind="flight",
            item_id="flight-1",
            updates={
                "departure": {"terminal": "3"},
                "class": "Business",
                "passengers": [{"ticketNumber": "0551234567890", "pdfPath": "x.pdf"}],
            },
        )
        with pytest.raises(HTTPException) as exc:
            edit_booking(
                session,
                trip_id=trip.id,
                kind="flight",
                item_id="flight-1",
                updates={"departure": {"code": {"not": "a string"}}},
            )

    assert exc.value.status_code == 422
    flight = updated.flights[0]
    assert flight.departure.code == "FCO"
    assert flight.departure.terminal == "3"
    assert flight.cabin_class == "Business"
    first, second = flight.passengers
    assert first.ticket_number == "0551234567890"
    assert first.pdf_path == "trips/seed/flight-1.pdf"
    assert second.ticket_number is None


def test_delete_trip_removes_all_attachments():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.trips.service import delete_trip, get_trip

    storage = get_storage()
    with SessionLocal() as session:
        trip = _seed(session, storage)
        deleted = delete_trip(session, trip_id=trip.id, storage=storage)
        with pytest.raises(HTTPException):
            get_trip(session, trip_id=trip.id)

    assert deleted == 5


def test_get_attachment_by_item_id():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.trips.service import get_attachment

    with SessionLocal() as session:
        trip = _seed(session, get_storage())
        body, media_type = get_attachment(session, trip_id=trip.id, item_id="flight-1-p2")
        with pytest.raises(HTTPException) as exc:
            get_attachment(session, trip_id=trip.id, item_id="flight-9")

    assert body == b"%PDF-flight-1-p2"
    assert media_type == "application/pdf"
    assert exc.value.status_code == 404


def test_delete_passenger_from_a_legacy_single_passenger_flight():
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.trips.schemas import TripSnapshot
    from travel_flow.modules.trips.service import delete_passenger
    from travel_flow.modules.trips.store import TripStore

    storage = get_storage()
    key = "trips/legacy/flight-1.pdf"
    storage.put(key=key, body=b"%PDF-legacy", content_type="application/pdf")
    snapshot = TripSnapshot.model_validate(
        {
            "title": "Tokyo Trip",
            "flights": [
                {
                    "id": "flight-1",
                    "flightNumber": "AZ1782",
                    "bookingReference": "YPPN5D",
                    "date": "2026-06-15",
                    "departure": {"code": "FCO"},
                    "arrival": {"code": "NRT"},
                    "passenger": {"name": "Alice Rossi", "pdfPath": key},
                }
            ],
        }
    )
    with SessionLocal() as session:
        trip = TripStore(session).create_trip(snapshot)
        updated, removed = delete_passenger(
            session,
            trip_id=trip.id,
            booking_reference="YPPN5D",
            passenger_name="alice rossi",
            storage=storage,
        )

    assert removed == 1
    assert updated.flights == []
    with pytest.raises(StorageError):
        storage.get(key=key)
