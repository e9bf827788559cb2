from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from travel_flow.api.deps import extraction_client, object_storage
from travel_flow.core.config import settings
from travel_flow.core.db import db_session
from travel_flow.core.logging import get_logger, log_event
from travel_flow.core.storage import ObjectStorage
from travel_flow.modules.extraction.client import ExtractionClient
from travel_flow.modules.extraction.schemas import Document
from travel_flow.modules.ingestion.service import ingest_documents
from travel_flow.modules.trips.store import TripConflictError, TripNotFoundError, TripStore
from travel_flow.worker.tasks import ingest_staged_documents_task

router = APIRouter(tags=["ingestion"])
logger = get_logger(__name__)


def _sanitize_filename(name: str) -> str:
    # Strip any path components and normalize whitespace.
    name = name.replace("\\", "/").split("/")[-1].strip()
    return " ".join(name.split())


def _read_uploads(uploads: list[UploadFile]) -> list[Document]:
    if not uploads:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No files provided")
    if len(uploads) > settings.max_upload_files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {settings.max_upload_files} files per upload",
        )
    documents: list[Document] = []
    for upload in uploads:
        body = upload.file.read()
        filename = _sanitize_filename(upload.filename or "") or "upload.pdf"
        log_event(
            logger,
            "upload.received",
            filename=filename,
            content_type=upload.content_type,
            byte_size=len(body),
        )
        if not body:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"Empty file: {filename}"
            )
        documents.append(Document(filename=filename, body=body, content_type=upload.content_type))
    return documents


def _run(
    *,
    trip_id: uuid.UUID | None,
    documents: list[Document],
    session: Session,
    client: ExtractionClient,
    storage: ObjectStorage,
) -> JSONResponse:
    try:
        outcome = ingest_documents(
            trip_id=str(trip_id) if trip_id else None,
            documents=documents,
            client=client,
            store=TripStore(session),
            storage=storage,
        )
    except TripNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found") from e
    except TripConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Trip was modified concurrently; reload and retry",
        ) from e
    headers = {}
    if outcome.retry_after_seconds:
        headers["Retry-After"] = str(outcome.retry_after_seconds)
    return JSONResponse(
        status_code=outcome.status_code, content=outcome.to_response(), headers=headers
    )


@router.post("/trips/import")
def import_trip(
    uploads: list[UploadFile] = File(...),
    session: Session = Depends(db_session),
    client: ExtractionClient = Depends(extraction_client),
    storage: ObjectStorage = Depends(object_storage),
) -> JSONResponse:
    documents = _read_uploads(uploads)
    return _run(trip_id=None, documents=documents, session=session, client=client, storage=storage)


@router.post("/trips/{trip_id}/bookings")
def add_bookings(
    trip_id: uuid.UUID,
    uploads: list[UploadFile] = File(...),
    session: Session = Depends(db_session),
    client: ExtractionClient = Depends(extraction_client),
    storage: ObjectStorage = Depends(object_storage),
) -> JSONResponse:
    documents = _read_uploads(uploads)
    return _run(
        trip_id=trip_id, documents=documents, session=session, client=client, storage=storage
    )


@router.post("/trips/{trip_id}/bookings/forwarded", status_code=status.HTTP_202_ACCEPTED)
def add_forwarded_bookings(
    trip_id: uuid.UUID,
    uploads: list[UploadFile] = File(...),
    session: Session = Depends(db_session),
    storage: ObjectStorage = Depends(object_storage),
) -> dict:
    """Stage forwarded documents and ingest them in the background."""
    try:
        TripStore(session).get_trip(trip_id)
    except TripNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found") from e

    staged: list[dict[str, str | None]] = []
    for document in _read_uploads(uploads):
        key = f"staging/{trip_id}/{uuid.uuid4()}-{document.filename}"
        storage.put(key=key, body=document.body, content_type=document.media_type)
        staged.append(
            {"key": key, "filename": document.filename, "content_type": document.content_type}
        )

    async_result = ingest_staged_documents_task.delay(str(trip_id), staged)
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="ingest_staged_documents",
        celery_task_id=async_result.id,
        document_count=len(staged),
    )
    return {"success": True, "queued": len(staged), "taskId": async_result.id}
