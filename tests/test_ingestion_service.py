from __future__ import annotations

import pytest


def _az1782(passenger: str) -> dict:
    return {
        "flights": [
            {
                "flightNumber": "AZ1782",
                "date": "2026-06-15",
                "airline": "ITA Airways",
                "bookingReference": "YPPN5D",
                "departure": {"code": "FCO", "city": "Rome"},
                "arrival": {"code": "NRT", "city": "Tokyo"},
                "departureTime": "13:25",
                "passenger": {"name": passenger, "type": "ADT"},
            }
        ]
    }


def _pdf(filename: str):
    from travel_flow.modules.extraction.schemas import Document

    return Document(filename=filename, body=b"%PDF-1.4 " + filename.encode())


def _ingest(session, documents, client, trip_id=None):
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.ingestion.service import ingest_documents
    from travel_flow.modules.trips.store import TripStore

    return ingest_documents(
        trip_id=trip_id,
        documents=documents,
        client=client,
        store=TripStore(session),
        storage=get_storage(),
    )


def test_two_receipts_for_one_flight_create_a_trip_with_both_passengers(stub_extractor):
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage

    client = stub_extractor({"alice.pdf": _az1782("Alice Rossi"), "bob.pdf": _az1782("Bob Rossi")})
    with SessionLocal() as session:
        outcome = _ingest(session, [_pdf("alice.pdf"), _pdf("bob.pdf")], client)

    assert outcome.success
    assert outcome.status_code == 200
    assert outcome.added == {"flights": 1, "hotels": 0, "passengers": 2}
    trip = outcome.trip
    assert trip.title == "Tokyo Trip"
    assert trip.version == 1
    assert (trip.start_date, trip.end_date, trip.route) == ("2026-06-15", "2026-06-15", "FCO → NRT")

    (flight,) = trip.flights
    assert flight.id == "flight-1"
    assert [p.name for p in flight.passengers] == ["Alice Rossi", "Bob Rossi"]
    first, second = (p.pdf_path for p in flight.passengers)
    assert first == f"trips/{trip.id}/flight-1.pdf"
    assert second == f"trips/{trip.id}/flight-1-p2.pdf"
    assert get_storage().get(key=second) == b"%PDF-1.4 bob.pdf"


def test_reuploading_the_same_receipt_reports_a_duplicate(stub_extractor):
    from travel_flow.core.db import SessionLocal
    from travel_flow.modules.trips.store import TripStore

    client = stub_extractor({"alice.pdf": _az1782("Alice Rossi")})
    with SessionLocal() as session:
        created = _ingest(session, [_pdf("alice.pdf")], client)
        again = _ingest(session, [_pdf("alice.pdf")], client, trip_id=created.trip.id)
        stored = TripStore(session).get_trip(created.trip.id)

    assert not again.success
    assert again.error_type == "duplicate"
    assert again.status_code == 409
    assert again.to_response()["duplicateInfo"] == {"skippedFlights": 1, "skippedHotels": 0}
    assert stored.version == 1


def test_adding_a_passenger_to_an_existing_trip(stub_extractor):
    from travel_flow.core.db import SessionLocal

    client = stub_extractor({"alice.pdf": _az1782("Alice Rossi"), "bob.pdf": _az1782("Bob Rossi")})
    with SessionLocal() as session:
        created = _ingest(session, [_pdf("alice.pdf")], client)
        updated = _ingest(session, [_pdf("bob.pdf")], client, trip_id=created.trip.id)

    assert updated.success
    assert updated.added == {"flights": 0, "hotels": 0, "passengers": 1}
    assert updated.trip.version == 2
    assert updated.trip.title == "Tokyo Trip"
    passengers = updated.trip.flights[0].passengers
    assert [p.name for p in passengers] == ["Alice Rossi", "Bob Rossi"]
    assert passengers[1].pdf_path.endswith("/flight-1-p2.pdf")


def test_hotel_only_trip_is_titled_after_the_hotel_city(stub_extractor):
    from travel_flow.core.db import SessionLocal

    client = stub_extractor(
        {
            "hotel-confirmation.pdf": {
                "hotels": [
                    {
                        "name": "Hotel Artemide",
                        "address": {"city": "Rome"},
                        "checkIn": {"date": "2026-05-10"},
                        "checkOut": {"date": "2026-05-13"},
                        "confirmationNumber": "HA-77",
                    }
                ]
            }
        }
    )
    with SessionLocal() as session:
        outcome = _ingest(session, [_pdf("hotel-confirmation.pdf")], client)

    assert outcome.trip.title == "Rome Trip"
    assert outcome.trip.hotels[0].id == "hotel-1"
    assert outcome.trip.hotels[0].pdf_path.endswith("/hotel-1.pdf")
    assert (outcome.trip.start_date, outcome.trip.end_date) == ("2026-05-10", "2026-05-13")
    assert outcome.trip.route is None


def test_nothing_extracted_is_no_data(stub_extractor):
    from travel_flow.core.db import SessionLocal
    from travel_flow.modules.extraction.client import ExtractionParseError
    from travel_flow.modules.trips.store import TripStore

    client = stub_extractor(
        {"empty.pdf": {"flights": []}}, errors={"broken.pdf": ExtractionParseError("bad")}
    )
    with SessionLocal() as session:
        outcome = _ingest(session, [_pdf("empty.pdf"), _pdf("broken.pdf")], client)
        assert TripStore(session).list_trips() == []

    assert outcome.error_type == "no_data"
    assert outcome.status_code == 422


def test_rate_limit_fails_the_whole_ingestion(stub_extractor):
    from travel_flow.core.db import SessionLocal
    from travel_flow.modules.extraction.client import RateLimitError

    from travel_flow.modules.trips.store import TripStore

    class LimitedBatches(stub_extractor):
        def extract_batch(self, documents):
            self.calls.append(("batch", [d.filename for d in documents]))
            raise RateLimitError("busy", retry_after=20)

    client = LimitedBatches({"a.pdf": _az1782("Alice Rossi"), "b.pdf": _az1782("Bob Rossi")})
    with SessionLocal() as session:
        outcome = _ingest(session, [_pdf("a.pdf"), _pdf("b.pdf")], client)
        assert TripStore(session).list_trips() == []

    # A rate-limited batch is not retried one document at a time.
    assert client.calls == [("batch", ["a.pdf", "b.pdf"])]
    assert not outcome.success
    assert outcome.error_type == "rate_limit"
    assert outcome.status_code == 429
    assert outcome.to_response()["retryAfterSeconds"] == 20


def test_unknown_trip_raises_not_found(stub_extractor):
    from travel_flow.core.db import SessionLocal
    from travel_flow.modules.trips.store import TripNotFoundError

    with SessionLocal() as session, pytest.raises(TripNotFoundError):
        _ingest(
            session,
            [_pdf("a.pdf")],
            stub_extractor(),
            trip_id="00000000-0000-0000-0000-000000000000",
        )


def test_store_failure_removes_written_attachments(stub_extractor, monkeypatch):
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.trips.store import TripStore

    def boom(self, snapshot):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(TripStore, "create_trip", boom)
    client = stub_extractor({"alice.pdf": _az1782("Alice Rossi")})

    written: list[str] = []
    storage = get_storage()
    original_put = storage.put

    def tracking_put(*, key, body, content_type=None):
        written.append(key)
        return original_put(key=key, body=body, content_type=content_type)

    monkeypatch.setattr(storage, "put", tracking_put)

    with SessionLocal() as session, pytest.raises(RuntimeError):
        _ingest(session, [_pdf("alice.pdf")], client)

    assert len(written) == 1
    with pytest.raises(StorageError):
        storage.get(key=written[0])


def test_top_level_passenger_fills_a_passengerless_flight(stub_extractor):
    from travel_flow.core.db import SessionLocal

    receipt = _az1782("")
    del receipt["flights"][0]["passenger"]
    receipt["passenger"] = {"name": "Agata Brignone"}
    client = stub_extractor({"ricevute.pdf": receipt})
    with SessionLocal() as session:
        outcome = _ingest(session, [_pdf("ricevute.pdf")], client)

    assert outcome.success
    trip = outcome.trip
    (flight,) = trip.flights
    assert [p.name for p in flight.passengers] == ["Agata Brignone"]
    assert (trip.start_date, trip.end_date, trip.route) == ("2026-06-15", "2026-06-15", "FCO → NRT")


def test_staged_document_is_discarded_when_its_move_fails(stub_extractor, monkeypatch):
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.extraction.schemas import Document
    from travel_flow.modules.trips.service import create_trip

    storage = get_storage()
    staged_key = "staging/x/a.pdf"
    storage.put(key=staged_key, body=b"%PDF-a", content_type="application/pdf")

    def failing_move(*, from_key, to_key):
        raise StorageError("move failed")

    monkeypatch.setattr(storage, "move", failing_move)
    client = stub_extractor(
        {
            "a.pdf": {
                "hotels": [
                    {
                        "name": "Hotel Artemide",
                        "address": {"city": "Rome"},
                        "checkIn": {"date": "2026-05-10"},
                        "checkOut": {"date": "2026-05-13"},
                    }
                ]
            }
        }
    )
    with SessionLocal() as session:
        trip = create_trip(session, title="Rome")
        outcome = _ingest(
            session,
            [Document(filename="a.pdf", body=b"%PDF-a", staged_key=staged_key)],
            client,
            trip_id=trip.id,
        )

    assert outcome.success
    assert outcome.trip.hotels[0].pdf_path is None
    with pytest.raises(StorageError):
        storage.get(key=staged_key)
