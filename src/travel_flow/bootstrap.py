from __future__ import annotations

import travel_flow.models  # noqa: F401
from travel_flow.core.config import settings
from travel_flow.core.db import engine
from travel_flow.core.logging import get_logger, log_event
from travel_flow.core.models import Base

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment in {"dev", "test"} and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)
    log_event(
        logger,
        "app.bootstrap",
        environment=settings.environment,
        storage_backend=settings.storage_backend,
        extraction_configured=bool(settings.openai_api_key),
    )
