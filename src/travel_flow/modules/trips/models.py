from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from travel_flow.core.models import Base, Timestamped, UUIDPrimaryKey, Versioned


class Trip(UUIDPrimaryKey, Timestamped, Versioned, Base):
    __tablename__ = "trips_trip"

    title: Mapped[str] = mapped_column(String(200), default="New Trip")
    start_date: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    end_date: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Flights, hotels and derived fields, stored as the camelCase trip document.
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
