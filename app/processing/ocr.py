"""
Text Extraction Strategies
══════════════════════════

Design: Strategy, one uniform contract
──────────────────────────────────────
Every tier of the extraction cascade implements

    attempt(file_bytes, filename) -> StrategyResult

and never raises: failures come back as `success=False` with `error` set,
so the cascade in app.processing.extractor is a flat loop instead of a
stack of nested try/except blocks.

  Tier 1: TextLayerExtractor                       (method "text-layer")
    - PDF text layer via PyMuPDF, DOCX paragraphs via python-docx,
      TXT/MD decoded in-process
    - Zero API calls; returns near-empty text for scanned PDFs

  Tier 2: UnstructuredOCRExtractor / TextractOCRExtractor   (method "ocr")
    - Rendered-page OCR, PDF only
    - Unstructured runs in-cluster; Textract is pay-per-page on AWS
    - Selected by settings.ocr_backend; absent when OCR is not configured

  Tier 3: VisionLLMExtractor                        (method "ai-vision")
    - Pages rendered to PNG with PyMuPDF and sent to a vision model
    - Most expensive tier; guarded by a page limit. Documents over the
      limit return method "manual-review-required" without calling the model

Page layout
───────────
Multi-page text is joined with "--- Página N ---" markers. The multi-document
analyzer relies on these markers to express fragment boundaries.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Used only when PyMuPDF cannot open the file to count pages.
BYTES_PER_PAGE_ESTIMATE = 1024 * 1024

PAGE_MARKER = "--- Página {n} ---"

PDF_MIME  = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

VISION_PROMPT = (
    "Transcribe all text visible in these document pages, in reading order. "
    "Keep line breaks, headings, table rows and amounts exactly as printed. "
    "Do not summarize and do not add commentary."
)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number : 1-based page index
    text        : raw extracted text (may be empty for image-only pages)
    confidence  : extraction confidence score (0.0–1.0); -1.0 = not applicable
    """
    page_number: int
    text:        str
    confidence:  float = -1.0


@dataclass
class StrategyResult:
    """Outcome of a single tier."""
    method:      str
    success:     bool
    pages:       list[PageText] = field(default_factory=list)
    confidence:  float = 0.0
    error:       str | None = None
    elapsed_ms:  float = 0.0
    tokens_used: int = 0

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def text(self) -> str:
        non_empty = [p for p in self.pages if p.text.strip()]
        if len(self.pages) <= 1:
            return "\n\n".join(p.text.strip() for p in non_empty)
        return "\n\n".join(
            f"{PAGE_MARKER.format(n=p.page_number)}\n{p.text.strip()}" for p in non_empty
        )

    @property
    def text_length(self) -> int:
        return len(self.text)

    @classmethod
    def failed(cls, method: str, error: str) -> "StrategyResult":
        return cls(method=method, success=False, error=error)


def detect_kind(filename: str, file_bytes: bytes) -> str:
    """Return "pdf", "docx" or "text" from magic bytes, then extension."""
    if file_bytes[:4] == b"%PDF":
        return "pdf"
    if file_bytes[:4] == b"PK\x03\x04" and filename.lower().endswith(".docx"):
        return "docx"
    lowered = filename.lower()
    if lowered.endswith(".pdf"):
        return "pdf"
    if lowered.endswith(".docx"):
        return "docx"
    return "text"


def count_pdf_pages(file_bytes: bytes) -> int:
    """Page count from PyMuPDF, falling back to a size-based estimate."""
    import fitz

    try:
        with fitz.open(stream=file_bytes, filetype="pdf") as doc:
            return doc.page_count
    except (RuntimeError, ValueError) as exc:
        logger.debug("Page count fallback to size estimate: %s", exc)
        return max(1, math.ceil(len(file_bytes) / BYTES_PER_PAGE_ESTIMATE))


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for extraction tiers.

    All implementations:
      - Accept raw bytes (never a file path — keeps workers stateless)
      - Return StrategyResult
      - Handle their own errors internally (log + return a failed result)
      - Are safe for concurrent use (no shared mutable state)
    """

    @property
    @abstractmethod
    def method_name(self) -> str:
        """Name recorded in documents.extraction_method."""

    def supports(self, kind: str) -> bool:
        return True

    @abstractmethod
    async def attempt(self, file_bytes: bytes, filename: str) -> StrategyResult:
        """
        Extract text. Must NOT raise — return a failed result so the
        cascade can fall through to the next tier.
        """


class _ExecutorExtractor(BaseTextExtractor):
    """Runs a blocking `_extract_sync` in the default executor under a timeout."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout = timeout_seconds

    async def attempt(self, file_bytes: bytes, filename: str) -> StrategyResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            call = loop.run_in_executor(None, self._extract_sync, file_bytes, filename)
            if self._timeout:
                result = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                result = await call
        except asyncio.TimeoutError:
            logger.error("%s timed out after %.0fs | file=%s", self.method_name, self._timeout, filename)
            result = StrategyResult.failed(self.method_name, f"timed out after {self._timeout:.0f}s")
        except Exception as exc:
            logger.warning("%s extraction failed | file=%s error=%s", self.method_name, filename, exc)
            result = StrategyResult.failed(self.method_name, str(exc))

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "%s | file=%s success=%s pages=%d chars=%d elapsed_ms=%.0f",
            self.method_name, filename, result.success,
            result.page_count, result.text_length, result.elapsed_ms,
        )
        return result

    @abstractmethod
    def _extract_sync(self, file_bytes: bytes, filename: str) -> StrategyResult:
        """Blocking extraction — runs in thread executor."""


# ---------------------------------------------------------------------------
# Tier 1: native text layer
# ---------------------------------------------------------------------------

class TextLayerExtractor(_ExecutorExtractor):
    """
    Cheapest tier — reads text the file already carries.

      PDF  → PyMuPDF page.get_text("text") per page
      DOCX → python-docx paragraphs (one logical page)
      TXT  → UTF-8, falling back to latin-1

    Scanned PDFs come back with (nearly) empty pages; the cascade sees the
    short text and escalates.
    """

    CONFIDENCE = 0.9

    @property
    def method_name(self) -> str:
        return "text-layer"

    def _extract_sync(self, file_bytes: bytes, filename: str) -> StrategyResult:
        kind = detect_kind(filename, file_bytes)
        if kind == "pdf":
            pages = self._pdf_pages(file_bytes)
        elif kind == "docx":
            pages = [PageText(page_number=1, text=self._docx_text(file_bytes))]
        else:
            try:
                text = file_bytes.decode("utf-8")
            except UnicodeDecodeError:
                text = file_bytes.decode("latin-1", errors="replace")
            pages = [PageText(page_number=1, text=text)]

        return StrategyResult(
            method=self.method_name,
            success=True,
            pages=pages,
            confidence=self.CONFIDENCE,
        )

    @staticmethod
    def _pdf_pages(file_bytes: bytes) -> list[PageText]:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[PageText] = []
        with fitz.open(stream=file_bytes, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(page_number=page_num, text=raw.strip()))
        return pages

    @staticmethod
    def _docx_text(file_bytes: bytes) -> str:
        import docx

        document = docx.Document(io.BytesIO(file_bytes))
        return "\n".join(para.text for para in document.paragraphs if para.text.strip())


# ---------------------------------------------------------------------------
# Tier 2a: Unstructured.io OCR
# ---------------------------------------------------------------------------

class UnstructuredOCRExtractor(_ExecutorExtractor):
    """
    OCR using the open-source Unstructured library (hi_res strategy:
    layout detection + tesseract). Needs poppler and tesseract in the image.

    Local mode keeps document bytes in-cluster, which matters for owner
    data (DNI numbers, addresses) found in deeds and minutes.
    """

    @property
    def method_name(self) -> str:
        return "ocr"

    def supports(self, kind: str) -> bool:
        return kind == "pdf"

    def _extract_sync(self, file_bytes: bytes, filename: str) -> StrategyResult:
        from unstructured.partition.pdf import partition_pdf

        elements = partition_pdf(
            file=io.BytesIO(file_bytes),
            strategy="hi_res",
            languages=["spa"],
            include_page_breaks=True,
            infer_table_structure=False,
        )

        pages_dict: dict[int, list[str]] = {}
        for elem in elements:
            page_num = (elem.metadata.page_number if elem.metadata else None) or 1
            text = str(elem).strip()
            if text:
                pages_dict.setdefault(page_num, []).append(text)

        pages = [
            PageText(page_number=pn, text="\n".join(texts), confidence=0.85)
            for pn, texts in sorted(pages_dict.items())
        ]
        return StrategyResult(method=self.method_name, success=True, pages=pages, confidence=0.85)


# ---------------------------------------------------------------------------
# Tier 2b: AWS Textract OCR
# ---------------------------------------------------------------------------

class TextractOCRExtractor(_ExecutorExtractor):
    """
    AWS Textract DetectDocumentText (synchronous API).

    Confidence is the mean word confidence across the document, normalized
    to 0–1. IAM: textract:DetectDocumentText on the worker task role.
    """

    def __init__(self, region: str, timeout_seconds: float | None = None) -> None:
        super().__init__(timeout_seconds)
        self._region = region

    @property
    def method_name(self) -> str:
        return "ocr"

    def supports(self, kind: str) -> bool:
        return kind == "pdf"

    def _extract_sync(self, file_bytes: bytes, filename: str) -> StrategyResult:
        import boto3

        client = boto3.client("textract", region_name=self._region)
        response = client.detect_document_text(Document={"Bytes": file_bytes})

        lines: dict[int, list[str]] = {}
        confidences: list[float] = []
        for block in response.get("Blocks", []):
            page_num = block.get("Page", 1)
            if block["BlockType"] == "LINE":
                lines.setdefault(page_num, []).append(block.get("Text", ""))
            elif block["BlockType"] == "WORD":
                confidences.append(block.get("Confidence", 0.0) / 100.0)

        avg_conf = sum(confidences) / len(confidences) if confidences else 0.0
        pages = [
            PageText(page_number=pn, text="\n".join(texts), confidence=round(avg_conf, 3))
            for pn, texts in sorted(lines.items())
        ]
        return StrategyResult(
            method=self.method_name, success=True, pages=pages, confidence=round(avg_conf, 3),
        )


# ---------------------------------------------------------------------------
# Tier 3: vision model
# ---------------------------------------------------------------------------

class VisionLLMExtractor(BaseTextExtractor):
    """
    Last resort: rasterize pages and ask a vision-capable model to transcribe.

    Page limit: files with more than `max_pages` pages are not sent at all;
    the result carries method "manual-review-required" so an operator can
    pick them up.
    """

    MANUAL_REVIEW = "manual-review-required"

    def __init__(
        self,
        gateway: LLMGateway,
        max_pages: int = 5,
        dpi: int = 150,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._gateway = gateway
        self._max_pages = max_pages
        self._dpi = dpi
        self._timeout = timeout_seconds

    @property
    def method_name(self) -> str:
        return "ai-vision"

    def supports(self, kind: str) -> bool:
        return kind == "pdf"

    async def attempt(self, file_bytes: bytes, filename: str) -> StrategyResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        page_count = await loop.run_in_executor(None, count_pdf_pages, file_bytes)
        if page_count > self._max_pages:
            logger.warning(
                "Vision tier skipped | file=%s pages=%d max_pages=%d",
                filename, page_count, self._max_pages,
            )
            return StrategyResult.failed(
                self.MANUAL_REVIEW,
                f"Document has {page_count} pages; vision extraction is limited to {self._max_pages}",
            )

        try:
            images = await loop.run_in_executor(None, self._render_pages, file_bytes)
            response = await asyncio.wait_for(
                self._gateway.invoke_vision(VISION_PROMPT, images),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Vision extraction timed out after %.0fs | file=%s", self._timeout, filename)
            return StrategyResult.failed(self.method_name, f"timed out after {self._timeout:.0f}s")
        except Exception as exc:
            logger.warning("Vision extraction failed | file=%s error=%s", filename, exc)
            return StrategyResult.failed(self.method_name, str(exc))

        result = StrategyResult(
            method=self.method_name,
            success=bool(response.content.strip()),
            pages=[PageText(page_number=1, text=response.content, confidence=0.8)],
            confidence=0.8,
            tokens_used=response.total_tokens,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        if not result.success:
            result.error = "vision model returned no text"
        logger.info(
            "ai-vision | file=%s pages=%d chars=%d tokens=%d elapsed_ms=%.0f",
            filename, page_count, result.text_length, result.tokens_used, result.elapsed_ms,
        )
        return result

    def _render_pages(self, file_bytes: bytes) -> list[str]:
        """Render every page to a base64 PNG — runs in thread executor."""
        import fitz

        images: list[str] = []
        with fitz.open(stream=file_bytes, filetype="pdf") as doc:
            for page in doc:
                pix = page.get_pixmap(dpi=self._dpi)
                images.append(base64.b64encode(pix.tobytes("png")).decode("ascii"))
        return images
