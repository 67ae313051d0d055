"""
Text Extraction  —  URL → plain text
═════════════════════════════════════

Two strategies, selected from the document's MIME type / extension:

  direct   — text/plain and markdown: GET the stored file and decode it
             (UTF-8, falling back to latin-1 with replacement)
  service  — pdf / docx / doc: POST the file URL to the document-understanding
             service (Unstructured-compatible API) and join the returned
             elements into one text

Failure policy:
  - A non-2xx response is a fatal input error for this attempt → ExtractionError.
    It is not retried here; the whole job can be retried later.
  - Timeouts and transport errors are transient → retried by the RetryPolicy,
    then surfaced as ExtractionError.
  - All attempts together are capped by `budget` so a hanging service cannot
    outlast the task's soft time limit.
  - Empty / whitespace-only output → ExtractionError. It usually means a
    scanned source with no OCR layer, and must never be indexed silently.

No local state is retained between calls.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from doc_ingest.core.exceptions import ExtractionError
from doc_ingest.core.retry import RetryPolicy
from doc_ingest.observability.tracing import traced

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Supported types
# ---------------------------------------------------------------------------

DIRECT_CONTENT_TYPES: frozenset[str] = frozenset(
    {"text/plain", "text/markdown", "application/x-markdown"}
)
DIRECT_EXTENSIONS: frozenset[str] = frozenset({"txt", "md", "markdown"})

SERVICE_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
        "application/msword",                                                        # .doc
    }
)
SERVICE_EXTENSIONS: frozenset[str] = frozenset({"pdf", "docx", "doc"})

EMPTY_TEXT_MESSAGE = (
    "No extractable text found in document. It may be image-based or scanned."
)


def _is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError))


def resolve_strategy(file_type: str | None, file_url: str = "") -> str:
    """
    Return "direct" or "service" for a MIME type or bare extension,
    falling back to the extension of the URL path.
    """
    mime = (file_type or "").split(";")[0].strip().lower().lstrip(".")
    if mime in DIRECT_CONTENT_TYPES or mime in DIRECT_EXTENSIONS:
        return "direct"
    if mime in SERVICE_CONTENT_TYPES or mime in SERVICE_EXTENSIONS:
        return "service"

    path = file_url.split("?", 1)[0]
    ext = path.rsplit(".", 1)[-1].lower() if "." in path.rsplit("/", 1)[-1] else ""
    if ext in DIRECT_EXTENSIONS:
        return "direct"
    if ext in SERVICE_EXTENSIONS:
        return "service"

    raise ExtractionError(f"Unsupported file type: {file_type or ext or 'unknown'}")


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Stateless extractor bound to one extraction-service endpoint.

    Constructor args:
        service_url  : document-understanding endpoint (POST {"url", "file_type"})
        api_key      : sent as the `unstructured-api-key` header when set
        timeout      : per-request timeout in seconds
        budget       : total seconds for every attempt plus backoff (None = uncapped)
        retry_policy : applied to transport failures only
        http_client  : optional shared httpx.AsyncClient (tests inject a MockTransport)

    Usage:
        extractor = TextExtractor(settings.extraction_service_url)
        text = await extractor.extract(file_url, "application/pdf")
    """

    def __init__(
        self,
        service_url:  str,
        api_key:      str = "",
        timeout:      float = 120.0,
        budget:       float | None = None,
        retry_policy: RetryPolicy | None = None,
        http_client:  httpx.AsyncClient | None = None,
    ) -> None:
        self._service_url = service_url
        self._api_key     = api_key
        self._timeout     = timeout
        self._retry       = (
            (retry_policy or RetryPolicy())
            .with_retry_on(_is_transport_error)
            .with_deadline(budget)
        )
        self._http        = http_client

    @traced("extract")
    async def extract(self, file_url: str, file_type: str | None = None) -> str:
        """Return the plain text of the file at *file_url*; raise ExtractionError otherwise."""
        if not file_url:
            raise ExtractionError("File URL is required for extraction")

        strategy = resolve_strategy(file_type, file_url)
        t0 = time.monotonic()

        try:
            if strategy == "direct":
                text = await self._retry.run(
                    lambda: self._fetch_direct(file_url), label="extract.direct",
                )
            else:
                text = await self._retry.run(
                    lambda: self._call_service(file_url, file_type), label="extract.service",
                )
        except ExtractionError:
            raise
        except httpx.HTTPStatusError as exc:
            raise ExtractionError(
                f"Extraction failed with HTTP {exc.response.status_code}", original=exc,
            ) from exc
        except TimeoutError as exc:
            raise ExtractionError("Extraction timed out", original=exc) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(
                f"Extraction request failed: {type(exc).__name__}: {exc}", original=exc,
            ) from exc

        if not text or not text.strip():
            logger.warning(
                "Extraction returned no text | strategy=%s url=%s",
                strategy, file_url.split("?")[0],
            )
            raise ExtractionError(EMPTY_TEXT_MESSAGE)

        logger.info(
            "Extraction | strategy=%s chars=%d elapsed_ms=%.0f",
            strategy, len(text), (time.monotonic() - t0) * 1000,
        )
        return text

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _fetch_direct(self, file_url: str) -> str:
        async with self._client() as http:
            resp = await http.get(file_url)
            resp.raise_for_status()
            data = resp.content

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1", errors="replace")

    async def _call_service(self, file_url: str, file_type: str | None) -> str:
        headers = {"accept": "application/json"}
        if self._api_key:
            headers["unstructured-api-key"] = self._api_key

        async with self._client() as http:
            resp = await http.post(
                self._service_url,
                json={"url": file_url, "file_type": file_type},
                headers=headers,
            )
            resp.raise_for_status()

            content_type = resp.headers.get("content-type", "")
            if "json" not in content_type:
                return resp.text
            return elements_to_text(resp.json())

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as http:
            yield http


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def elements_to_text(payload) -> str:
    """
    Convert an extraction-service response into plain text.

    Accepts {"text": "..."}, {"elements": [...]} or a bare element list.
    Tables prefer their HTML rendering (metadata.text_as_html) so cell
    structure survives into the chunk text.
    """
    if isinstance(payload, dict):
        if isinstance(payload.get("text"), str):
            return payload["text"]
        payload = payload.get("elements", [])

    if not isinstance(payload, list):
        raise ExtractionError("Extraction service returned an unexpected payload")

    parts: list[str] = []
    for elem in payload:
        if not isinstance(elem, dict):
            continue
        text = elem.get("text") or ""
        if elem.get("type") == "Table":
            text = (elem.get("metadata") or {}).get("text_as_html") or text
        if text.strip():
            parts.append(text.strip())
    return "\n\n".join(parts)
