from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any travel_flow imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.travel_flow_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import travel_flow.models  # noqa: F401
    from travel_flow.core.db import engine
    from travel_flow.core.models import Base

    # Reset cached singletons and the storage directory
    import travel_flow.core.storage as storage_mod
    import travel_flow.modules.extraction.client as client_mod

    storage_mod._storage = None
    client_mod._default_client = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


class StubExtractor:
    """Extraction client double keyed by filename; records every call it receives."""

    def __init__(self, results=None, *, batch_error=None, errors=None):
        self.results = results or {}
        self.batch_error = batch_error
        self.errors = errors or {}
        self.calls: list[tuple[str, list[str]]] = []

    def extract_single(self, document):
        self.calls.append(("single", [document.filename]))
        if document.filename in self.errors:
            raise self.errors[document.filename]
        return self.results.get(document.filename, {})

    def extract_batch(self, documents):
        self.calls.append(("batch", [d.filename for d in documents]))
        if self.batch_error is not None:
            raise self.batch_error
        return [
            {"index": i, **self.results.get(d.filename, {})} for i, d in enumerate(documents)
        ]


@pytest.fixture()
def stub_extractor():
    return StubExtractor
