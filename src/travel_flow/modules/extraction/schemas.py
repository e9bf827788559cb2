from __future__ import annotations

import os
from dataclasses import dataclass

_TEXT_EXTENSIONS = {".txt": "text/plain", ".htm": "text/html", ".html": "text/html"}


@dataclass(frozen=True)
class Document:
    """One uploaded or forwarded document, alive for a single ingestion."""

    filename: str
    body: bytes
    content_type: str | None = None
    # Set when the bytes already live in object storage (forwarded documents).
    staged_key: str | None = None

    @property
    def is_pdf(self) -> bool:
        if self.body[:5] == b"%PDF-":
            return True
        if (self.content_type or "").lower().startswith("application/pdf"):
            return True
        return self.filename.lower().endswith(".pdf")

    @property
    def is_html(self) -> bool:
        ct = (self.content_type or "").lower()
        return ct.startswith("text/html") or self.filename.lower().endswith((".htm", ".html"))

    @property
    def media_type(self) -> str:
        if self.is_pdf:
            return "application/pdf"
        if self.content_type:
            return self.content_type.split(";")[0].strip().lower()
        ext = os.path.splitext(self.filename)[1].lower()
        return _TEXT_EXTENSIONS.get(ext, "text/plain")

    @property
    def extension(self) -> str:
        if self.is_pdf:
            return ".pdf"
        return ".html" if self.media_type == "text/html" else ".txt"
