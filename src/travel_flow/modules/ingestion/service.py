from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from travel_flow.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    set_trip_context,
)
from travel_flow.core.storage import ObjectStorage
from travel_flow.modules.extraction.dispatcher import Extractor, dispatch_documents
from travel_flow.modules.extraction.normalizer import PassengerNameStrategy, normalize_results
from travel_flow.modules.extraction.schemas import Document
from travel_flow.modules.ingestion.attachments import (
    assign_paths,
    discard_staged,
    link_attachments,
    unlink_attachments,
)
from travel_flow.modules.ingestion.merge import apply_merge_plan, build_merge_plan
from travel_flow.modules.trips.schemas import FlightRecord, HotelRecord, TripSnapshot
from travel_flow.modules.trips.store import TripStore

logger = get_logger(__name__)

ErrorType = Literal["duplicate", "rate_limit", "no_data"]

_STATUS_CODES = {"duplicate": 409, "rate_limit": 429, "no_data": 422}


@dataclass(frozen=True)
class IngestionOutcome:
    success: bool
    trip: TripSnapshot | None = None
    added: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)
    error_type: ErrorType | None = None
    error: str | None = None
    retry_after_seconds: int | None = None
    duplicate_info: dict[str, Any] | None = None

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return _STATUS_CODES.get(self.error_type or "", 400)

    def to_response(self) -> dict[str, Any]:
        if self.success and self.trip is not None:
            return {
                "success": True,
                "tripData": self.trip.dump(),
                "added": self.added,
                "skipped": self.skipped,
            }
        body: dict[str, Any] = {"success": False, "errorType": self.error_type, "error": self.error}
        if self.error_type == "rate_limit":
            body["retryAfterSeconds"] = self.retry_after_seconds
        if self.error_type == "duplicate":
            body["duplicateInfo"] = self.duplicate_info
        return body


def derive_title(flights: list[FlightRecord], hotels: list[HotelRecord]) -> str:
    """'{city} Trip' for the first place the itinerary leaves home for, else 'New Trip'."""
    ordered = sorted(flights, key=lambda f: f.date or "9999-99-99")
    if ordered:
        home = ordered[0].departure.code if ordered[0].departure else None
        for flight in ordered:
            arrival = flight.arrival
            if arrival and arrival.code != home and (arrival.city or arrival.code):
                return f"{arrival.city or arrival.code} Trip"
    for hotel in hotels:
        city = (hotel.address or {}).get("city")
        if city:
            return f"{city} Trip"
    return "New Trip"


def ingest_documents(
    *,
    trip_id: str | None,
    documents: list[Document],
    client: Extractor,
    store: TripStore,
    storage: ObjectStorage,
    name_strategy: PassengerNameStrategy | None = None,
) -> IngestionOutcome:
    """
    Extract, deduplicate and attach ``documents`` to a trip in one read-merge-write.

    ``trip_id=None`` creates a new trip. Expected failures come back as an
    unsuccessful outcome; a failed store write undoes the attachment writes
    and propagates.
    """
    start = time.monotonic()
    existing = store.get_trip(trip_id) if trip_id else None
    if existing is not None:
        set_trip_context(existing.id)
    log_event(
        logger,
        "ingestion.start",
        document_count=len(documents),
        new_trip=existing is None,
    )

    entries = dispatch_documents(documents, client=client)
    limited = [e for e in entries if e.is_rate_limit]
    if limited:
        retry_after = max((e.retry_after or 0 for e in limited), default=0) or None
        log_event(logger, "ingestion.rate_limited", retry_after=retry_after)
        return IngestionOutcome(
            success=False,
            error_type="rate_limit",
            error="The extraction service is busy. Please retry shortly.",
            retry_after_seconds=retry_after,
        )

    normalized = [d for d in normalize_results(entries, name_strategy=name_strategy) if not d.is_empty]
    if not normalized:
        log_event(logger, "ingestion.no_data", document_count=len(documents))
        return IngestionOutcome(
            success=False,
            error_type="no_data",
            error="Could not extract any travel data from the uploaded documents",
        )

    base = existing or TripSnapshot(id=str(uuid.uuid4()))
    plan = build_merge_plan(normalized, base.flights, base.hotels)
    skipped = {"flights": plan.skipped_flights, "hotels": plan.skipped_hotels}
    if plan.is_empty:
        log_event(logger, "ingestion.duplicate", **skipped)
        return IngestionOutcome(
            success=False,
            error_type="duplicate",
            error="This booking was already added to the trip",
            skipped=skipped,
            duplicate_info={
                "skippedFlights": plan.skipped_flights,
                "skippedHotels": plan.skipped_hotels,
            },
        )

    merged = apply_merge_plan(base, plan)
    trip = merged.trip
    if existing is None:
        trip.title = derive_title(trip.flights, trip.hotels)
        set_trip_context(trip.id)

    linked = link_attachments(
        trip_id=str(trip.id),
        slots=merged.slots,
        documents=documents,
        storage=storage,
    )
    trip = assign_paths(trip, merged.slots, linked.paths)

    try:
        saved = store.create_trip(trip) if existing is None else store.save_trip(trip)
    except Exception:
        log_exception(logger, "ingestion.store.failure", slot_count=len(linked.paths))
        unlink_attachments(storage, linked)
        raise

    # Staged objects that were not moved into a slot are no longer needed.
    moved = set(linked.moved_from.values())
    for document in documents:
        if document.staged_key and document.staged_key not in moved:
            discard_staged(storage, document.staged_key)

    added = {
        "flights": len(plan.new_flights),
        "hotels": len(plan.new_hotels),
        "passengers": plan.passenger_count,
    }
    log_event(
        logger,
        "ingestion.finish",
        duration_ms=monotonic_ms(start),
        attachment_failures=len(linked.failed),
        **{f"added_{k}": v for k, v in added.items()},
        **{f"skipped_{k}": v for k, v in skipped.items()},
    )
    return IngestionOutcome(success=True, trip=saved, added=added, skipped=skipped)
