from __future__ import annotations

import base64
import json
import math
import re
import time
from html import unescape
from typing import Any

import httpx

from travel_flow.core.config import settings
from travel_flow.core.logging import get_logger, log_event, monotonic_ms
from travel_flow.modules.extraction.prompts import (
    SYSTEM_PROMPT,
    batched_prompt,
    detect_document_type,
    prompt_for_type,
)
from travel_flow.modules.extraction.schemas import Document

logger = get_logger(__name__)


class ExtractionError(RuntimeError):
    pass


class RateLimitError(ExtractionError):
    """The extraction service refused the call for quota reasons. Never retried here."""

    def __init__(self, message: str, *, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ExtractionTruncatedError(ExtractionError):
    pass


class ExtractionParseError(ExtractionError):
    pass


def is_rate_limit(error: BaseException | None) -> bool:
    return isinstance(error, RateLimitError)


class ExtractionClient:
    """
    Client for an OpenAI-compatible chat-completions endpoint.

    One call per document (``extract_single``) or per group (``extract_batch``).
    Failures are classified into the ``ExtractionError`` family; nothing is retried.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.Client | None = None,
    ):
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self._base_url = (base_url or settings.openai_base_url).rstrip("/")
        self._model = model or settings.openai_model
        self._timeout = float(timeout_seconds or settings.extraction_timeout_seconds)
        self._http = http_client

    def extract_single(self, document: Document) -> dict[str, Any]:
        doc_type = detect_document_type(document.filename)
        content = [
            self._document_part(document),
            {"type": "text", "text": prompt_for_type(doc_type)},
        ]
        raw = self._complete(
            content,
            max_tokens=settings.extraction_max_tokens_single,
            mode="single",
            document_count=1,
        )
        obj = _parse_json_object(raw)
        if not isinstance(obj, dict):
            raise ExtractionParseError(f"Could not parse extraction result for {document.filename}")
        return obj

    def extract_batch(self, documents: list[Document]) -> list[dict[str, Any]]:
        """Return the per-document entries of a batched call, each keyed by ``index``."""
        content: list[dict[str, Any]] = []
        descriptions: list[str] = []
        for i, document in enumerate(documents):
            content.append(self._document_part(document))
            descriptions.append(
                f'- Document {i + 1} (index {i}): "{document.filename}" - detected as '
                f"{detect_document_type(document.filename)}"
            )
        content.append({"type": "text", "text": batched_prompt(descriptions)})
        raw = self._complete(
            content,
            max_tokens=settings.extraction_max_tokens_batch,
            mode="batch",
            document_count=len(documents),
        )
        return parse_batched_response(raw)

    def _document_part(self, document: Document) -> dict[str, Any]:
        if document.is_pdf:
            data = base64.b64encode(document.body).decode("ascii")
            return {
                "type": "file",
                "file": {
                    "filename": document.filename,
                    "file_data": f"data:application/pdf;base64,{data}",
                },
            }
        text = document.body.decode("utf-8", errors="replace")
        if document.is_html or _looks_like_html(text):
            text = _html_to_text(text)
        text = _truncate_text(text, max_chars=int(settings.extraction_max_text_chars or 0))
        return {"type": "text", "text": f'Document "{document.filename}":\n{text}'}

    def _complete(
        self,
        content: list[dict[str, Any]],
        *,
        max_tokens: int,
        mode: str,
        document_count: int,
    ) -> str:
        if not self._api_key:
            raise ExtractionError("Extraction service is not configured (missing API key)")

        payload = {
            "model": self._model,
            "temperature": 0,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        url = self._base_url + "/chat/completions"

        start = time.monotonic()
        log_event(
            logger,
            "extraction.request.start",
            mode=mode,
            document_count=document_count,
            model=self._model,
        )
        try:
            if self._http is not None:
                resp = self._http.post(url, headers=headers, json=payload, timeout=self._timeout)
            else:
                resp = httpx.post(
                    url,
                    headers=headers,
                    json=payload,
                    timeout=self._timeout,
                    follow_redirects=True,
                )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise _classify_status_error(e.response, mode=mode, start=start) from e
        except httpx.HTTPError as e:
            log_event(
                logger,
                "extraction.request.failure",
                mode=mode,
                error_type=type(e).__name__,
                duration_ms=monotonic_ms(start),
            )
            raise ExtractionError(f"Extraction request failed: {e}") from e

        try:
            raw = resp.json()
            choice = raw["choices"][0]
            msg = choice["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionParseError("Malformed completion envelope") from e

        finish_reason = choice.get("finish_reason")
        usage = raw.get("usage") if isinstance(raw.get("usage"), dict) else {}
        log_event(
            logger,
            "extraction.request.finish",
            mode=mode,
            document_count=document_count,
            finish_reason=finish_reason,
            completion_tokens=usage.get("completion_tokens"),
            duration_ms=monotonic_ms(start),
        )
        if finish_reason == "length":
            raise ExtractionTruncatedError(f"Extraction output truncated ({mode})")
        if isinstance(msg, dict) and msg.get("refusal"):
            raise ExtractionError("Extraction service refused the request")
        content_text = msg.get("content") if isinstance(msg, dict) else None
        if not isinstance(content_text, str) or not content_text.strip():
            raise ExtractionParseError("Empty extraction response")
        return content_text


def parse_batched_response(content: str) -> list[dict[str, Any]]:
    obj = _parse_json_object(content)
    if not isinstance(obj, dict):
        raise ExtractionParseError("Could not parse batched extraction response as JSON")
    documents = obj.get("documents")
    if isinstance(documents, list):
        return [d for d in documents if isinstance(d, dict)]
    # A single un-indexed document in batched mode is treated as index 0.
    if obj.get("flights") or obj.get("hotels"):
        return [{**obj, "index": 0}]
    raise ExtractionParseError("Unexpected batched extraction response shape")


def _classify_status_error(resp: httpx.Response, *, mode: str, start: float) -> ExtractionError:
    code = _error_code(resp)
    if resp.status_code == 429 or "rate_limit" in code:
        retry_after = _retry_after_seconds(resp.headers)
        log_event(
            logger,
            "extraction.rate_limited",
            mode=mode,
            status_code=resp.status_code,
            retry_after=retry_after,
            duration_ms=monotonic_ms(start),
        )
        return RateLimitError("Extraction service rate limit reached", retry_after=retry_after)
    log_event(
        logger,
        "extraction.request.failure",
        mode=mode,
        status_code=resp.status_code,
        error_code=code or None,
        duration_ms=monotonic_ms(start),
    )
    return ExtractionError(f"Extraction service returned HTTP {resp.status_code}")


def _error_code(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return ""
    err = body.get("error") if isinstance(body, dict) else None
    if not isinstance(err, dict):
        return ""
    return " ".join(str(err.get(k) or "") for k in ("code", "type")).strip().lower()


def _retry_after_seconds(headers: httpx.Headers) -> int | None:
    raw = headers.get("retry-after")
    if raw:
        try:
            seconds = int(raw.strip())
        except ValueError:
            seconds = 0
        if seconds > 0:
            return seconds
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            ms = float(raw_ms.strip())
        except ValueError:
            return None
        if ms > 0:
            return max(1, math.ceil(ms / 1000))
    return None


def _looks_like_html(text: str) -> bool:
    t = (text or "").lstrip().lower()
    if t.startswith("<!doctype html") or t.startswith("<html"):
        return True
    return bool(re.search(r"<(html|body|div|p|br|table|tr|td|span)(\s|>)", t[:2000], re.I))


def _html_to_text(html: str) -> str:
    html = re.sub(r"(?is)<(script|style).*?>.*?</\1>", "", html)
    html = re.sub(r"(?i)<br\s*/?>", "\n", html)
    html = re.sub(r"(?i)</(p|div|tr)\s*>", "\n", html)
    html = re.sub(r"(?s)<[^>]+>", "", html)
    html = unescape(html)
    lines = [re.sub(r"\s+", " ", ln).strip() for ln in html.splitlines()]
    return "\n".join([ln for ln in lines if ln])


def _truncate_text(text: str, *, max_chars: int) -> str:
    t = (text or "").replace("\u202f", " ").replace("\xa0", " ").strip()
    if max_chars <= 0 or len(t) <= max_chars:
        return t
    return t[: max_chars - 20].rstrip() + "\n\n[TRUNCATED]"


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except json.JSONDecodeError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except json.JSONDecodeError:
        return None


_default_client: ExtractionClient | None = None


def get_extraction_client() -> ExtractionClient:
    global _default_client  # noqa: PLW0603
    if _default_client is None:
        _default_client = ExtractionClient()
    return _default_client
