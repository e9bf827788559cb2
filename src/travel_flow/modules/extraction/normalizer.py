from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from travel_flow.core.logging import get_logger, log_event
from travel_flow.modules.extraction.dispatcher import DispatchEntry
from travel_flow.modules.trips.schemas import FlightRecord, HotelRecord, Passenger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_UPPER = "A-ZÀ-ÖØ-Þ"
_NAME = rf"[{_UPPER}][{_UPPER}'\-]+(?:\s+[{_UPPER}][{_UPPER}'\-]+)*"

# Marker words are case-insensitive; the name itself must be written in capitals,
# which is how airline receipts print it and keeps ordinary words out.
_NAME_PATTERNS = (
    re.compile(rf"(?i:\bper)\s+({_NAME})\s+(?i:del)\b"),
    re.compile(rf"(?i:\b(?:for|pour|viaggio))\s+({_NAME})(?![{_UPPER}'\-])"),
)


class PassengerNameStrategy(Protocol):
    def try_extract_name(self, filename: str | None) -> str | None: ...


class FilenamePassengerNames:
    """Pulls a traveller name out of names like 'ricevute di viaggio per AGATA BRIGNONE del 15JUN.pdf'."""

    def try_extract_name(self, filename: str | None) -> str | None:
        if not filename:
            return None
        stem = os.path.splitext(os.path.basename(filename))[0]
        stem = re.sub(r"[_]+", " ", stem)
        for pattern in _NAME_PATTERNS:
            m = pattern.search(stem)
            if m:
                return _title_case(m.group(1))
        return None


def _title_case(name: str) -> str:
    return " ".join(w[:1].upper() + w[1:].lower() for w in name.split())


@dataclass(frozen=True)
class NormalizedDocument:
    index: int
    filename: str
    flights: list[FlightRecord] = field(default_factory=list)
    hotels: list[HotelRecord] = field(default_factory=list)
    passenger: Passenger | None = None
    booking: dict[str, Any] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.flights and not self.hotels


def normalize_results(
    entries: list[DispatchEntry],
    *,
    name_strategy: PassengerNameStrategy | None = None,
) -> list[NormalizedDocument]:
    """
    Turn dispatcher output into one ``NormalizedDocument`` per successful entry.

    Flights that come back without any passenger inherit the document's
    top-level passenger, or failing that a name parsed from the filename.
    """
    strategy = name_strategy or FilenamePassengerNames()
    out: list[NormalizedDocument] = []
    for entry in sorted(entries, key=lambda e: e.document_index):
        if entry.result is None:
            continue
        out.append(_normalize_one(entry, strategy))
    return out


def _normalize_one(entry: DispatchEntry, strategy: PassengerNameStrategy) -> NormalizedDocument:
    raw = entry.result or {}
    index = entry.document_index

    passenger = None
    if isinstance(raw.get("passenger"), dict):
        passenger = _coerce(Passenger, raw["passenger"], kind="passenger", index=index)
        if passenger and not (passenger.name or "").strip():
            passenger = None

    flights = [
        f
        for item in _items(raw, "flights", index=index)
        if (f := _coerce(FlightRecord, item, kind="flight", index=index))
    ]
    hotels = [
        h
        for item in _items(raw, "hotels", index=index)
        if (h := _coerce(HotelRecord, item, kind="hotel", index=index))
    ]

    fallback = passenger
    if fallback is None and any(not _has_passenger(f) for f in flights):
        name = strategy.try_extract_name(entry.filename)
        if name:
            fallback = Passenger(name=name, type="ADT")
            log_event(
                logger,
                "normalize.passenger.from_filename",
                document_index=index,
                filename=entry.filename,
            )
    if fallback is not None:
        flights = [
            f if _has_passenger(f) else f.model_copy(update={"passenger": fallback.model_copy()})
            for f in flights
        ]

    booking = raw.get("booking") if isinstance(raw.get("booking"), dict) else None
    return NormalizedDocument(
        index=index,
        filename=entry.filename,
        flights=flights,
        hotels=hotels,
        passenger=passenger,
        booking=booking,
    )


def _has_passenger(flight: FlightRecord) -> bool:
    if flight.passengers:
        return True
    return bool(flight.passenger and (flight.passenger.name or "").strip())


def _items(raw: dict[str, Any], key: str, *, index: int) -> list[dict[str, Any]]:
    value = raw.get(key)
    if value is None:
        return []
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        log_event(logger, "normalize.items.invalid", document_index=index, key=key)
        return []
    items = [v for v in value if isinstance(v, dict)]
    if len(items) != len(value):
        log_event(
            logger,
            "normalize.items.dropped",
            document_index=index,
            key=key,
            dropped=len(value) - len(items),
        )
    return items


def _coerce(model: type[M], raw: dict[str, Any], *, kind: str, index: int) -> M | None:
    # Invalid fields are dropped one validation round at a time; the record survives.
    data = dict(raw)
    for _ in range(len(data) + 1):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            bad = {err["loc"][0] for err in e.errors() if err.get("loc")} & set(data)
            if not bad:
                log_event(logger, "normalize.record.invalid", document_index=index, kind=kind)
                return None
            log_event(
                logger,
                "normalize.fields.dropped",
                document_index=index,
                kind=kind,
                fields=sorted(str(k) for k in bad),
            )
            for key in bad:
                data.pop(key, None)
    return None
