from __future__ import annotations

import pytest


def _slot(item_id, source_index, record_id=None, position=None, kind="flight"):
    from travel_flow.modules.ingestion.merge import SlotAssignment

    return SlotAssignment(item_id, source_index, kind, record_id or item_id, position)


def test_one_failed_write_does_not_affect_the_others(monkeypatch):
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.extraction.schemas import Document
    from travel_flow.modules.ingestion.attachments import link_attachments

    storage = get_storage()
    original_put = storage.put

    def flaky_put(*, key, body, content_type=None):
        if "hotel-1" in key:
            raise StorageError("disk full")
        return original_put(key=key, body=body, content_type=content_type)

    monkeypatch.setattr(storage, "put", flaky_put)
    documents = [
        Document(filename="a.pdf", body=b"%PDF-a"),
        Document(filename="b.html", body=b"<p>hotel</p>", content_type="text/html"),
    ]
    slots = [
        _slot("flight-1", 0, position=0),
        _slot("hotel-1", 1, kind="hotel"),
        _slot("flight-1-p2", 0, "flight-1", 1),
    ]

    result = link_attachments(trip_id="t1", slots=slots, documents=documents, storage=storage)

    assert result.failed == ["hotel-1"]
    assert result.paths == {
        "flight-1": "trips/t1/flight-1.pdf",
        "flight-1-p2": "trips/t1/flight-1-p2.pdf",
    }
    assert storage.get(key="trips/t1/flight-1-p2.pdf") == b"%PDF-a"


def test_staged_document_is_moved_into_a_single_slot():
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.extraction.schemas import Document
    from travel_flow.modules.ingestion.attachments import link_attachments, unlink_attachments

    storage = get_storage()
    storage.put(key="staging/t1/x-a.pdf", body=b"%PDF-a")
    documents = [Document(filename="a.pdf", body=b"%PDF-a", staged_key="staging/t1/x-a.pdf")]

    result = link_attachments(
        trip_id="t1", slots=[_slot("hotel-1", 0, kind="hotel")], documents=documents, storage=storage
    )

    assert result.moved_from == {"hotel-1": "staging/t1/x-a.pdf"}
    assert storage.get(key="trips/t1/hotel-1.pdf") == b"%PDF-a"
    with pytest.raises(StorageError):
        storage.get(key="staging/t1/x-a.pdf")

    # Undo puts the document back where it came from.
    unlink_attachments(storage, result)
    assert storage.get(key="staging/t1/x-a.pdf") == b"%PDF-a"
    with pytest.raises(StorageError):
        storage.get(key="trips/t1/hotel-1.pdf")


def test_staged_document_feeding_several_slots_is_copied_then_discarded():
    from travel_flow.core.storage import StorageError, get_storage
    from travel_flow.modules.extraction.schemas import Document
    from travel_flow.modules.ingestion.attachments import link_attachments

    storage = get_storage()
    storage.put(key="staging/t1/x-a.pdf", body=b"%PDF-a")
    documents = [Document(filename="a.pdf", body=b"%PDF-a", staged_key="staging/t1/x-a.pdf")]

    result = link_attachments(
        trip_id="t1",
        slots=[_slot("flight-1", 0, position=0), _slot("hotel-1", 0, kind="hotel")],
        documents=documents,
        storage=storage,
    )

    assert result.moved_from == {}
    assert sorted(result.paths) == ["flight-1", "hotel-1"]
    with pytest.raises(StorageError):
        storage.get(key="staging/t1/x-a.pdf")


def test_assign_paths_sets_passenger_and_flight_level_paths():
    from travel_flow.modules.ingestion.attachments import assign_paths
    from travel_flow.modules.trips.schemas import TripSnapshot

    trip = TripSnapshot.model_validate(
        {
            "id": "t1",
            "flights": [
                {"id": "flight-1", "passengers": [{"name": "A"}, {"name": "B"}]},
                {"id": "flight-2"},
            ],
            "hotels": [{"id": "hotel-1"}],
        }
    )
    slots = [
        _slot("flight-1-p2", 0, "flight-1", 1),
        _slot("flight-2", 1),
        _slot("hotel-1", 2, kind="hotel"),
        _slot("flight-1", 0, "flight-1", 0),
    ]
    paths = {
        "flight-1-p2": "trips/t1/flight-1-p2.pdf",
        "flight-2": "trips/t1/flight-2.pdf",
        "hotel-1": "trips/t1/hotel-1.html",
    }

    trip = assign_paths(trip, slots, paths)

    assert [p.pdf_path for p in trip.flights[0].passengers] == [None, "trips/t1/flight-1-p2.pdf"]
    assert trip.flights[1].pdf_path == "trips/t1/flight-2.pdf"
    assert trip.hotels[0].pdf_path == "trips/t1/hotel-1.html"
