from __future__ import annotations

import concurrent.futures
import contextvars
import time
from collections import defaultdict
from dataclasses import dataclass, field

from travel_flow.core.config import settings
from travel_flow.core.logging import get_logger, log_event, log_exception, monotonic_ms
from travel_flow.core.storage import ObjectStorage, StorageError
from travel_flow.modules.extraction.schemas import Document
from travel_flow.modules.ingestion.merge import SlotAssignment
from travel_flow.modules.trips.schemas import TripSnapshot

logger = get_logger(__name__)


def slot_key(trip_id: str, item_id: str, extension: str = ".pdf") -> str:
    return f"trips/{trip_id}/{item_id}{extension}"


@dataclass
class LinkResult:
    paths: dict[str, str] = field(default_factory=dict)
    # item_id -> staging key, for slots filled by moving a staged document.
    moved_from: dict[str, str] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)


def link_attachments(
    *,
    trip_id: str,
    slots: list[SlotAssignment],
    documents: list[Document],
    storage: ObjectStorage,
    max_workers: int | None = None,
) -> LinkResult:
    """
    Write each slot's source document into object storage, concurrently.

    A failed write is logged and leaves that slot out of ``paths``. A staged
    document feeding exactly one slot is moved there; one feeding several is
    copied into each and its staging object removed afterwards.
    """
    result = LinkResult()
    if not slots:
        return result

    by_source: dict[int, list[SlotAssignment]] = defaultdict(list)
    for slot in slots:
        by_source[slot.source_index].append(slot)

    start = time.monotonic()
    workers = max(1, int(max_workers or settings.attachment_link_workers))
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_slot: dict[concurrent.futures.Future, tuple[SlotAssignment, str | None]] = {}
        for source_index, source_slots in by_source.items():
            document = documents[source_index]
            move = bool(document.staged_key) and len(source_slots) == 1
            for slot in source_slots:
                key = slot_key(trip_id, slot.item_id, document.extension)
                # Each worker gets its own copy so log lines keep the request context.
                ctx = contextvars.copy_context()
                future = executor.submit(ctx.run, _write_slot, storage, document, key, move)
                future_to_slot[future] = (slot, document.staged_key if move else None)

        for future in concurrent.futures.as_completed(future_to_slot):
            slot, moved_from = future_to_slot[future]
            try:
                result.paths[slot.item_id] = future.result()
            except Exception:  # noqa: BLE001
                log_exception(
                    logger,
                    "attachment.link.failure",
                    trip_id=trip_id,
                    item_id=slot.item_id,
                    document_index=slot.source_index,
                )
                result.failed.append(slot.item_id)
                continue
            if moved_from:
                result.moved_from[slot.item_id] = moved_from

    for source_index, source_slots in by_source.items():
        document = documents[source_index]
        if document.staged_key and len(source_slots) > 1:
            discard_staged(storage, document.staged_key)

    log_event(
        logger,
        "attachment.link.finish",
        trip_id=trip_id,
        slot_count=len(slots),
        linked=len(result.paths),
        failed=len(result.failed),
        duration_ms=monotonic_ms(start),
    )
    return result


def _write_slot(storage: ObjectStorage, document: Document, key: str, move: bool) -> str:
    if move and document.staged_key:
        return storage.move(from_key=document.staged_key, to_key=key).key
    return storage.put(key=key, body=document.body, content_type=document.media_type).key


def discard_staged(storage: ObjectStorage, key: str) -> None:
    try:
        storage.delete(key=key)
    except StorageError:
        log_exception(logger, "attachment.staging.delete_failure", storage_key=key)


def unlink_attachments(storage: ObjectStorage, result: LinkResult) -> None:
    """Undo ``link_attachments``: moved documents go back to staging, copies are deleted."""
    for item_id, path in result.paths.items():
        try:
            if item_id in result.moved_from:
                storage.move(from_key=path, to_key=result.moved_from[item_id])
            else:
                storage.delete(key=path)
        except StorageError:
            log_exception(logger, "attachment.unlink.failure", item_id=item_id, storage_key=path)


def assign_paths(
    trip: TripSnapshot, slots: list[SlotAssignment], paths: dict[str, str]
) -> TripSnapshot:
    """Set ``pdfPath`` on every record whose slot was written."""
    flights = {f.id: f for f in trip.flights}
    hotels = {h.id: h for h in trip.hotels}
    for slot in slots:
        path = paths.get(slot.item_id)
        if not path:
            continue
        if slot.kind == "hotel":
            hotel = hotels.get(slot.record_id)
            if hotel is not None:
                hotel.pdf_path = path
            continue
        flight = flights.get(slot.record_id)
        if flight is None:
            continue
        if slot.passenger_position is None:
            flight.pdf_path = path
        elif slot.passenger_position < len(flight.passengers or []):
            flight.passengers[slot.passenger_position].pdf_path = path
    return trip
