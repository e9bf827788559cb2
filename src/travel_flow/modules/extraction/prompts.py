from __future__ import annotations

from typing import Literal

DocumentType = Literal["flight", "hotel", "unknown"]

# Substring matches against the lower-cased filename; flight words win over hotel words.
_FLIGHT_KEYWORDS = (
    "flight",
    "volo",
    "boarding",
    "itinerary",
    "ticket",
    "eticket",
    "ricevut",
    "viaggio",
    "biglietto",
    "airways",
    "airline",
)
_HOTEL_KEYWORDS = (
    "hotel",
    "booking",
    "reservation",
    "accommodation",
    "soggiorno",
    "albergo",
    "conferma",
    "prenotazione",
)

SYSTEM_PROMPT = (
    "You are a travel document parser. Extract structured data from travel documents "
    "and return ONLY valid JSON. Do not include explanations or markdown formatting."
)

_FLIGHT_SCHEMA = """{
  "flights": [
    {
      "date": "YYYY-MM-DD",
      "flightNumber": "XX123",
      "airline": "Airline name",
      "operatedBy": "Airline name or null",
      "departure": {"code": "XXX", "city": "City", "airport": "Airport name", "terminal": "1 or null"},
      "arrival": {"code": "XXX", "city": "City", "airport": "Airport name", "terminal": "1 or null"},
      "departureTime": "HH:MM",
      "arrivalTime": "HH:MM",
      "arrivalNextDay": false,
      "duration": "HH:MM",
      "class": "Economy/Business/etc",
      "bookingReference": "XXXXXX",
      "ticketNumber": "XXX XXXXXXXXXX or null",
      "seat": "12A or null",
      "baggage": "0PC or 1PC etc",
      "status": "OK"
    }
  ],
  "passenger": {"name": "PASSENGER FULL NAME", "type": "ADT or CHD or INF", "ticketNumber": "XXX XXXXXXXXXX or null"},
  "booking": {
    "reference": "XXXXXX",
    "ticketNumber": "XXX XXXXXXXXXX",
    "issueDate": "YYYY-MM-DD or null",
    "totalAmount": {"value": 123.45, "currency": "EUR"}
  }
}"""

_HOTEL_SCHEMA = """{
  "hotels": [
    {
      "name": "Hotel name",
      "address": {
        "street": "Street address",
        "district": "Ward/neighborhood or null",
        "city": "MAIN CITY NAME",
        "postalCode": "Postal code",
        "country": "Country",
        "fullAddress": "Complete address"
      },
      "coordinates": {"lat": 0.0, "lng": 0.0},
      "phone": "Phone number or null",
      "checkIn": {"date": "YYYY-MM-DD", "time": "HH:MM"},
      "checkOut": {"date": "YYYY-MM-DD", "time": "HH:MM"},
      "nights": 0,
      "rooms": 1,
      "roomTypes": [{"it": "Tipo camera", "en": "Room type"}],
      "guests": {"adults": 0, "children": [{"age": 0}], "total": 0},
      "guestName": "Guest name",
      "confirmationNumber": "Confirmation number",
      "pinCode": "PIN code or null",
      "price": {
        "room": {"value": 0, "currency": "EUR"},
        "tax": {"value": 0, "currency": "EUR"},
        "total": {"value": 0, "currency": "EUR"}
      },
      "breakfast": {"included": false, "type": null},
      "payment": {"method": "Pay at property or Prepaid", "prepayment": false},
      "cancellation": {
        "freeCancellationUntil": "YYYY-MM-DDTHH:MM:SS or null",
        "penaltyAfter": {"value": 0, "currency": "EUR"}
      },
      "amenities": [],
      "source": "Booking.com"
    }
  ]
}"""

_FLIGHT_PROMPT = (
    "Extract flight information from this document. Return a JSON object with this exact "
    "structure.\n\n"
    "Requirements:\n"
    "1. The top-level \"passenger\" field is mandatory: the passenger's full name and type "
    "(ADT/CHD/INF).\n"
    "2. Look for the name under NOME/NAME, PASSEGGERO, PASSENGER, a MR/MRS/MS title, or "
    "wherever the traveller is named.\n"
    "3. If the flight duration is not stated, compute it from departure and arrival times.\n\n"
    + _FLIGHT_SCHEMA
)

_HOTEL_PROMPT = (
    "Extract all hotel booking information from this document.\n\n"
    "Rules:\n"
    "- For \"city\" use the main city (Tokyo, not Taito-ku); put wards and neighborhoods in "
    "\"district\".\n"
    "- Count adults and children separately, with children's ages when given.\n"
    "- Extract room price, tax and total separately.\n"
    "- Several rooms under one confirmation stay ONE entry with a rooms count.\n\n"
    "Return this exact JSON structure:\n\n"
    + _HOTEL_SCHEMA
)

_UNKNOWN_PROMPT = (
    "This is a travel document. Extract any flight or hotel information you can find. "
    "Return a JSON object with a \"flights\" array and/or a \"hotels\" array.\n\n"
    "For flights include: date, flightNumber, airline, departure (code, city, airport), "
    "arrival (code, city, airport), departureTime, arrivalTime, bookingReference, status, "
    "passenger (name, type).\n\n"
    "For hotels include: name, address (street, city, country, fullAddress), checkIn (date, "
    "time), checkOut (date, time), nights, confirmationNumber, guestName."
)


def detect_document_type(filename: str | None) -> DocumentType:
    if not filename:
        return "unknown"
    lower = filename.lower()
    if any(k in lower for k in _FLIGHT_KEYWORDS):
        return "flight"
    if any(k in lower for k in _HOTEL_KEYWORDS):
        return "hotel"
    return "unknown"


def prompt_for_type(doc_type: DocumentType) -> str:
    if doc_type == "flight":
        return _FLIGHT_PROMPT
    if doc_type == "hotel":
        return _HOTEL_PROMPT
    return _UNKNOWN_PROMPT


def batched_prompt(descriptions: list[str]) -> str:
    """
    Prompt for a multi-document call.

    ``descriptions`` holds one line per attached document, in attachment order.
    """
    return (
        f"You have been given {len(descriptions)} travel documents. Extract data from EACH "
        "document SEPARATELY.\n\n"
        "Document details:\n"
        + "\n".join(descriptions)
        + "\n\nFor FLIGHT documents, extract per document:\n"
        + _FLIGHT_SCHEMA
        + "\n\nFor HOTEL documents, extract per document:\n"
        + _HOTEL_SCHEMA
        + "\n\nFor UNKNOWN documents, extract any flights or hotels you can find.\n\n"
        "Instructions:\n"
        "- Process each document independently. Do NOT merge data between documents.\n"
        "- Return a JSON object with a \"documents\" array, one entry per document.\n"
        "- Each entry MUST include an \"index\" field (0-based) matching the document's "
        "position.\n"
        "- The \"passenger\" field is mandatory for flight documents.\n\n"
        "Return this exact structure:\n"
        '{"documents": [{"index": 0, "flights": [], "hotels": [], "passenger": {}, '
        '"booking": {}}, {"index": 1}]}'
    )
