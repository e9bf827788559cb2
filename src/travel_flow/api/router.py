from __future__ import annotations

from fastapi import APIRouter

from travel_flow.modules.ingestion.api import router as ingestion_router
from travel_flow.modules.trips.api import router as trips_router

router = APIRouter()

router.include_router(ingestion_router, prefix="/api")
router.include_router(trips_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
