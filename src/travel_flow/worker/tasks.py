from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import travel_flow.models  # noqa: F401
# isort: on

import time
from typing import Any

from celery.exceptions import Retry

from travel_flow.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
    set_trip_context,
)
from travel_flow.worker.celery_app import celery_app

logger = get_logger(__name__)

MAX_RATE_LIMIT_RETRIES = 3


def ingest_staged_documents(
    trip_id: str, staged: list[dict[str, Any]], *, can_retry: bool = False
) -> tuple[dict, int | None]:
    """
    Run the ingestion pipeline over documents already staged in object storage.

    Returns the caller-facing result body and, when a rate-limited run may be
    retried, the retry hint. Staged objects are discarded once the outcome is final.
    """
    from travel_flow.core.db import SessionLocal
    from travel_flow.core.storage import get_storage
    from travel_flow.modules.extraction.client import get_extraction_client
    from travel_flow.modules.extraction.schemas import Document
    from travel_flow.modules.ingestion.attachments import discard_staged
    from travel_flow.modules.ingestion.service import ingest_documents
    from travel_flow.modules.trips.store import TripStore

    storage = get_storage()
    documents = [
        Document(
            filename=item["filename"],
            body=storage.get(key=item["key"]),
            content_type=item.get("content_type"),
            staged_key=item["key"],
        )
        for item in staged
    ]
    try:
        with SessionLocal() as session:
            outcome = ingest_documents(
                trip_id=trip_id,
                documents=documents,
                client=get_extraction_client(),
                store=TripStore(session),
                storage=storage,
            )
    except Exception:
        for document in documents:
            discard_staged(storage, document.staged_key)
        raise

    body = outcome.to_response()
    body.pop("tripData", None)
    if outcome.error_type == "rate_limit" and can_retry:
        return body, outcome.retry_after_seconds or 60
    if not outcome.success:
        for document in documents:
            discard_staged(storage, document.staged_key)
    return body, None


@celery_app.task(name="ingest_staged_documents", bind=True, max_retries=MAX_RATE_LIMIT_RETRIES)
def ingest_staged_documents_task(self, trip_id: str, staged: list[dict[str, Any]]) -> dict:
    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    set_trip_context(trip_id)
    start = time.monotonic()
    log_event(
        logger,
        "celery.task.start",
        task_name="ingest_staged_documents",
        celery_task_id=task_id,
        document_count=len(staged),
    )
    try:
        body, retry_after = ingest_staged_documents(
            trip_id, staged, can_retry=self.request.retries < MAX_RATE_LIMIT_RETRIES
        )
        if retry_after is not None:
            log_event(
                logger,
                "celery.task.retry",
                task_name="ingest_staged_documents",
                celery_task_id=task_id,
                countdown=retry_after,
                attempt=self.request.retries + 1,
            )
            raise self.retry(countdown=retry_after)
        log_event(
            logger,
            "celery.task.finish",
            task_name="ingest_staged_documents",
            celery_task_id=task_id,
            success=body.get("success"),
            error_type=body.get("errorType"),
            duration_ms=monotonic_ms(start),
        )
        return body
    except Retry:
        raise
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="ingest_staged_documents",
            celery_task_id=task_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        set_trip_context(None)
        reset_task_context(token)
