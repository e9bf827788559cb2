"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

from travel_flow.modules.trips.models import Trip  # noqa: F401
