from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Protocol

from travel_flow.core.config import settings
from travel_flow.core.logging import get_logger, log_event, monotonic_ms
from travel_flow.modules.extraction.client import (
    ExtractionError,
    RateLimitError,
    is_rate_limit,
)
from travel_flow.modules.extraction.schemas import Document

logger = get_logger(__name__)


class Extractor(Protocol):
    def extract_single(self, document: Document) -> dict[str, Any]: ...

    def extract_batch(self, documents: list[Document]) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class DispatchEntry:
    document_index: int
    filename: str
    result: dict[str, Any] | None
    error: Exception | None = None

    @property
    def is_rate_limit(self) -> bool:
        return is_rate_limit(self.error)

    @property
    def retry_after(self) -> int | None:
        return self.error.retry_after if isinstance(self.error, RateLimitError) else None


class _RateLimited(Exception):
    def __init__(self, error: RateLimitError):
        super().__init__(str(error))
        self.error = error


def dispatch_documents(
    documents: list[Document],
    *,
    client: Extractor,
    batch_size: int | None = None,
) -> list[DispatchEntry]:
    """
    Run extraction for every document, one call at a time.

    A single document gets a single-document call. Larger inputs are split into
    consecutive groups of ``batch_size``; each group is one batched call, and a
    failed, truncated or unparseable batch is re-issued one document at a time.
    A rate limit stops dispatch: documents not yet extracted are returned with
    that error. The result has exactly one entry per input document, sorted by
    ``document_index``.
    """
    size = max(1, int(batch_size or settings.extraction_batch_size))
    entries: dict[int, DispatchEntry] = {}
    start = time.monotonic()

    try:
        if len(documents) == 1:
            entries[0] = _extract_one(client, 0, documents[0])
        else:
            for offset in range(0, len(documents), size):
                group = documents[offset : offset + size]
                for entry in _extract_group(client, offset, group):
                    entries[entry.document_index] = entry
    except _RateLimited as stop:
        for index, document in enumerate(documents):
            if index not in entries:
                entries[index] = DispatchEntry(index, document.filename, None, stop.error)

    log_event(
        logger,
        "extraction.dispatch.finish",
        document_count=len(documents),
        succeeded=sum(1 for e in entries.values() if e.result is not None),
        rate_limited=any(e.is_rate_limit for e in entries.values()),
        duration_ms=monotonic_ms(start),
    )
    return [entries[i] for i in sorted(entries)]


def _extract_one(client: Extractor, index: int, document: Document) -> DispatchEntry:
    try:
        result = client.extract_single(document)
    except RateLimitError as e:
        raise _RateLimited(e) from e
    except ExtractionError as e:
        log_event(
            logger,
            "extraction.document.failure",
            document_index=index,
            filename=document.filename,
            error_type=type(e).__name__,
            error=str(e),
        )
        return DispatchEntry(index, document.filename, None, e)
    return DispatchEntry(index, document.filename, result)


def _extract_group(client: Extractor, offset: int, group: list[Document]) -> list[DispatchEntry]:
    if len(group) == 1:
        return [_extract_one(client, offset, group[0])]

    try:
        results = client.extract_batch(group)
    except RateLimitError as e:
        raise _RateLimited(e) from e
    except ExtractionError as e:
        log_event(
            logger,
            "extraction.batch.fallback",
            first_index=offset,
            group_size=len(group),
            error_type=type(e).__name__,
            error=str(e),
        )
        return [_extract_one(client, offset + i, doc) for i, doc in enumerate(group)]

    out: dict[int, DispatchEntry] = {}
    for position, result in enumerate(results):
        local = _local_index(result, position)
        if local is None or not 0 <= local < len(group) or local in out:
            log_event(
                logger,
                "extraction.batch.entry_ignored",
                first_index=offset,
                reported_index=result.get("index"),
            )
            continue
        payload = {k: v for k, v in result.items() if k != "index"}
        out[local] = DispatchEntry(offset + local, group[local].filename, payload)

    missing = [i for i in range(len(group)) if i not in out]
    if missing:
        log_event(
            logger,
            "extraction.batch.incomplete",
            first_index=offset,
            missing=[offset + i for i in missing],
        )
        for i in missing:
            out[i] = _extract_one(client, offset + i, group[i])
    return [out[i] for i in sorted(out)]


def _local_index(result: dict[str, Any], position: int) -> int | None:
    raw = result.get("index")
    if raw is None:
        return position
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
