from __future__ import annotations

from travel_flow.core.storage import ObjectStorage, get_storage
from travel_flow.modules.extraction.client import ExtractionClient, get_extraction_client


def extraction_client() -> ExtractionClient:
    return get_extraction_client()


def object_storage() -> ObjectStorage:
    return get_storage()
