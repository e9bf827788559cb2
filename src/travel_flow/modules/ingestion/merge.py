from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from travel_flow.core.logging import get_logger, log_event
from travel_flow.modules.extraction.normalizer import NormalizedDocument
from travel_flow.modules.trips.derived import recalculate
from travel_flow.modules.trips.schemas import FlightRecord, HotelRecord, Passenger, TripSnapshot

logger = get_logger(__name__)

FlightKey = tuple[str, str, str]
HotelKey = tuple[str, ...]

_ITEM_NUMBER_RE = re.compile(r"^(flight|hotel)-(\d+)$")
_SLOT_RE = re.compile(r"([^/]+?)(?:\.[A-Za-z0-9]+)?$")


@dataclass
class AcceptedFlight:
    """A flight new to the trip. ``passenger_sources[i]`` is the document that supplied passenger i."""

    flight: FlightRecord
    source_index: int
    passenger_sources: list[int] = field(default_factory=list)


@dataclass
class AcceptedHotel:
    hotel: HotelRecord
    source_index: int


@dataclass(frozen=True)
class PassengerAddition:
    flight_id: str
    passenger: Passenger
    source_index: int


@dataclass
class MergePlan:
    new_flights: list[AcceptedFlight] = field(default_factory=list)
    new_hotels: list[AcceptedHotel] = field(default_factory=list)
    added_passengers: list[PassengerAddition] = field(default_factory=list)
    skipped_flights: int = 0
    skipped_hotels: int = 0

    @property
    def augmented_flight_ids(self) -> list[str]:
        return list(dict.fromkeys(a.flight_id for a in self.added_passengers))

    @property
    def passenger_count(self) -> int:
        return len(self.added_passengers) + sum(len(f.flight.passengers or []) for f in self.new_flights)

    @property
    def is_empty(self) -> bool:
        return not (self.new_flights or self.new_hotels or self.added_passengers)


@dataclass(frozen=True)
class SlotAssignment:
    """One attachment slot to fill from a source document."""

    item_id: str
    source_index: int
    kind: str
    record_id: str
    # Position in the flight's passengers list; None for flight- or hotel-level slots.
    passenger_position: int | None = None


@dataclass(frozen=True)
class MergeResult:
    trip: TripSnapshot
    slots: list[SlotAssignment]


def _norm(value: object) -> str:
    return str(value or "").strip().lower()


def flight_key(flight: FlightRecord) -> FlightKey | None:
    number = _norm(flight.flight_number)
    day = _norm(flight.date)
    if not number and not day:
        return None
    return (_norm(flight.booking_reference), number, day)


def hotel_key(hotel: HotelRecord) -> HotelKey | None:
    confirmation = _norm(hotel.confirmation_number)
    if confirmation:
        return ("confirmation", confirmation)
    name = _norm(hotel.name)
    check_in = _norm(hotel.check_in.date if hotel.check_in else None)
    check_out = _norm(hotel.check_out.date if hotel.check_out else None)
    if name and check_in and check_out:
        return ("stay", name, check_in, check_out)
    return None


def _ticket(value: str | None) -> str:
    return re.sub(r"\s+", "", value or "").lower()


def _name(value: str | None) -> str:
    return " ".join((value or "").split()).casefold()


def same_passenger(a: Passenger, b: Passenger) -> bool:
    ta, tb = _ticket(a.ticket_number), _ticket(b.ticket_number)
    if ta and tb:
        return ta == tb
    na, nb = _name(a.name), _name(b.name)
    return bool(na) and na == nb


def build_passengers(flight: FlightRecord) -> list[Passenger]:
    """
    Passenger list for a flight, as copies.

    A legacy singular ``passenger`` becomes a one-entry list. Entries without
    a ticket number take the flight-level one.
    """
    if flight.passengers:
        source = flight.passengers
    elif flight.passenger and (flight.passenger.name or flight.passenger.ticket_number):
        source = [flight.passenger]
    else:
        return []
    return [
        p.model_copy(update={"ticket_number": p.ticket_number or flight.ticket_number})
        for p in source
    ]


def build_merge_plan(
    documents: Iterable[NormalizedDocument],
    existing_flights: Iterable[FlightRecord] = (),
    existing_hotels: Iterable[HotelRecord] = (),
) -> MergePlan:
    """
    Classify every extracted record against the trip and earlier records of the batch.

    Existing records are read, never modified. A flight whose identity matches
    contributes only passengers not already present; hotels never merge.
    """
    plan = MergePlan()

    existing_by_key: dict[FlightKey, str] = {}
    known_passengers: dict[str, list[Passenger]] = {}
    for flight in existing_flights:
        if not flight.id:
            continue
        known_passengers[flight.id] = build_passengers(flight)
        key = flight_key(flight)
        if key is not None:
            existing_by_key.setdefault(key, flight.id)
    batch_by_key: dict[FlightKey, AcceptedFlight] = {}

    hotel_keys: set[HotelKey] = set()
    for hotel in existing_hotels:
        key = hotel_key(hotel)
        if key is not None:
            hotel_keys.add(key)

    for doc in sorted(documents, key=lambda d: d.index):
        for flight in doc.flights:
            candidates = build_passengers(flight)
            key = flight_key(flight)

            if key is not None and key in existing_by_key:
                flight_id = existing_by_key[key]
                added = _add_new_passengers(known_passengers[flight_id], candidates)
                for passenger in added:
                    plan.added_passengers.append(
                        PassengerAddition(flight_id, passenger, doc.index)
                    )
                if not added:
                    plan.skipped_flights += 1
                    _log_skip(flight, doc.index, "existing")
                continue

            if key is not None and key in batch_by_key:
                accepted = batch_by_key[key]
                added = _add_new_passengers(accepted.flight.passengers, candidates)
                accepted.passenger_sources.extend([doc.index] * len(added))
                if not added:
                    plan.skipped_flights += 1
                    _log_skip(flight, doc.index, "batch")
                continue

            accepted = AcceptedFlight(
                flight=flight.model_copy(
                    update={"id": None, "passenger": None, "pdf_path": None, "passengers": candidates}
                ),
                source_index=doc.index,
                passenger_sources=[doc.index] * len(candidates),
            )
            plan.new_flights.append(accepted)
            if key is not None:
                batch_by_key[key] = accepted

        for hotel in doc.hotels:
            key = hotel_key(hotel)
            if key is not None and key in hotel_keys:
                plan.skipped_hotels += 1
                log_event(
                    logger,
                    "merge.hotel.duplicate",
                    document_index=doc.index,
                    hotel_name=hotel.name,
                )
                continue
            if key is not None:
                hotel_keys.add(key)
            plan.new_hotels.append(
                AcceptedHotel(
                    hotel=hotel.model_copy(update={"id": None, "pdf_path": None}),
                    source_index=doc.index,
                )
            )

    log_event(
        logger,
        "merge.plan.built",
        new_flights=len(plan.new_flights),
        new_hotels=len(plan.new_hotels),
        added_passengers=len(plan.added_passengers),
        skipped_flights=plan.skipped_flights,
        skipped_hotels=plan.skipped_hotels,
    )
    return plan


def _add_new_passengers(present: list[Passenger], candidates: list[Passenger]) -> list[Passenger]:
    added: list[Passenger] = []
    for candidate in candidates:
        if any(same_passenger(p, candidate) for p in present):
            continue
        present.append(candidate)
        added.append(candidate)
    return added


def _log_skip(flight: FlightRecord, index: int, against: str) -> None:
    log_event(
        logger,
        "merge.flight.duplicate",
        document_index=index,
        flight_number=flight.flight_number,
        flight_date=flight.date,
        matched=against,
    )


def _next_number(ids: Iterable[str | None], kind: str) -> int:
    highest = 0
    for item_id in ids:
        m = _ITEM_NUMBER_RE.match(item_id or "")
        if m and m.group(1) == kind:
            highest = max(highest, int(m.group(2)))
    return highest + 1


def slot_id_from_path(path: str | None) -> str | None:
    """``trips/<trip>/flight-3-p2.pdf`` -> ``flight-3-p2``."""
    if not path:
        return None
    m = _SLOT_RE.search(path)
    return m.group(1) if m else None


def _used_slots(trip: TripSnapshot) -> set[str]:
    used: set[str] = set()
    for flight in trip.flights:
        paths = [flight.pdf_path] + [p.pdf_path for p in flight.passengers or []]
        if flight.passenger:
            paths.append(flight.passenger.pdf_path)
        used.update(s for s in map(slot_id_from_path, paths) if s)
    for hotel in trip.hotels:
        s = slot_id_from_path(hotel.pdf_path)
        if s:
            used.add(s)
    return used


def _passenger_slot(flight_id: str, position: int, used: set[str]) -> str:
    k = position + 1
    while f"{flight_id}-p{k}" in used:
        k += 1
    slot = f"{flight_id}-p{k}"
    used.add(slot)
    return slot


def apply_merge_plan(trip: TripSnapshot, plan: MergePlan) -> MergeResult:
    """
    Build the merged trip without touching ``trip``, plus the attachment slots to fill.

    New ids continue from the highest existing number, so deletions never cause
    an id to be reused while its attachment may still exist.
    """
    used = _used_slots(trip)
    flights = [
        f.model_copy(update={"passengers": build_passengers(f), "passenger": None})
        for f in trip.flights
    ]
    by_id = {f.id: f for f in flights if f.id}
    slots: list[SlotAssignment] = []

    for addition in plan.added_passengers:
        flight = by_id.get(addition.flight_id)
        if flight is None:
            continue
        flight.passengers.append(addition.passenger.model_copy())
        position = len(flight.passengers) - 1
        slots.append(
            SlotAssignment(
                item_id=_passenger_slot(flight.id, position, used),
                source_index=addition.source_index,
                kind="flight",
                record_id=flight.id,
                passenger_position=position,
            )
        )

    number = _next_number((f.id for f in trip.flights), "flight")
    for accepted in plan.new_flights:
        flight_id = f"flight-{number}"
        number += 1
        passengers = [p.model_copy() for p in accepted.flight.passengers or []]
        flights.append(accepted.flight.model_copy(update={"id": flight_id, "passengers": passengers}))
        if not passengers:
            slots.append(SlotAssignment(flight_id, accepted.source_index, "flight", flight_id))
            used.add(flight_id)
            continue
        for position, source_index in enumerate(accepted.passenger_sources):
            item_id = flight_id if position == 0 else _passenger_slot(flight_id, position, used)
            used.add(item_id)
            slots.append(
                SlotAssignment(item_id, source_index, "flight", flight_id, passenger_position=position)
            )

    hotels = list(trip.hotels)
    number = _next_number((h.id for h in trip.hotels), "hotel")
    for accepted in plan.new_hotels:
        hotel_id = f"hotel-{number}"
        number += 1
        hotels.append(accepted.hotel.model_copy(update={"id": hotel_id}))
        slots.append(SlotAssignment(hotel_id, accepted.source_index, "hotel", hotel_id))
        used.add(hotel_id)

    merged = recalculate(trip.model_copy(update={"flights": flights, "hotels": hotels}))
    return MergeResult(trip=merged, slots=slots)
