from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from travel_flow.modules.trips.schemas import FlightRecord, HotelRecord, TripSnapshot

ROUTE_SEPARATOR = " → "


@dataclass(frozen=True)
class DerivedState:
    start_date: str | None
    end_date: str | None
    route: str | None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _flight_sort_key(flight: FlightRecord) -> tuple[date, str]:
    # Undated flights sort last; ties keep insertion order (sorted() is stable).
    return (_parse_date(flight.date) or date.max, flight.departure_time or "")


def build_route(flights: Iterable[FlightRecord]) -> str | None:
    codes: list[str] = []
    for flight in sorted(flights, key=_flight_sort_key):
        for airport in (flight.departure, flight.arrival):
            code = (airport.code or "").strip().upper() if airport else ""
            if not code:
                continue
            if codes and codes[-1] == code:
                continue
            codes.append(code)
    return ROUTE_SEPARATOR.join(codes) if codes else None


def derive_trip_state(
    flights: Iterable[FlightRecord], hotels: Iterable[HotelRecord]
) -> DerivedState:
    """
    Recompute the trip date range and route from the full record set.

    Unparseable dates are ignored. No dates leaves start/end unset, no routable
    flights leaves the route unset.
    """
    flights = list(flights)
    dates: list[date] = []
    for flight in flights:
        d = _parse_date(flight.date)
        if d:
            dates.append(d)
    for hotel in hotels:
        for stay in (hotel.check_in, hotel.check_out):
            d = _parse_date(stay.date) if stay else None
            if d:
                dates.append(d)

    dates.sort()
    return DerivedState(
        start_date=dates[0].isoformat() if dates else None,
        end_date=dates[-1].isoformat() if dates else None,
        route=build_route(flights),
    )


def recalculate(trip: TripSnapshot) -> TripSnapshot:
    """Return a copy of ``trip`` whose derived fields match its flights and hotels."""
    state = derive_trip_state(trip.flights, trip.hotels)
    return trip.model_copy(
        update={
            "start_date": state.start_date,
            "end_date": state.end_date,
            "route": state.route,
        }
    )
