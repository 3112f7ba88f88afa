"""
Multi-Document Analyzer
═══════════════════════

Administrators often scan a whole folder into one PDF: an invoice, the
contract it relates to, a delivery note, a notice to owners. This module
finds the logical documents inside such a bundle.

    analyze(bytes, filename)
    ────────────────────────
      1. TextExtractionCascade.extract()            (once, for the whole file)
      2. AI boundary detection over line-numbered text
           → [{type, startLine, endLine, startMarker, endMarker, title, ...}]
      3. Slice fragments:
           both markers found in order → text between the markers
           otherwise                   → lines [startLine .. endLine]
      4. is_multi_document = ≥2 fragments with non-trivial length

    separate(text, filename, detected, output_dir)
    ──────────────────────────────────────────────
      Writes one "{n}_{type}_{title}.txt" per fragment (header + text) and an
      analysis-log-<ts>.json. Unsupported fragments are written too; they are
      simply never materialized as Documents.

Failure policy: if boundary detection fails (AI error, unreadable JSON,
no documents) the whole text is treated as one "unknown" document with
confidence 0.1. Only a failed extraction makes analyze() report
success=False.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import unicodedata
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from app.core.config import Settings, settings as default_settings
from app.llm.gateway import MalformedResponseError
from app.processing.extractor import ExtractionResult, TextExtractionCascade
from app.schemas.documents import SUPPORTED_TYPES, DocumentType

if TYPE_CHECKING:
    from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.1

# ---------------------------------------------------------------------------
# Type normalization: model answers in Spanish or English, with or without accents
# ---------------------------------------------------------------------------

_TYPE_ALIASES: dict[str, str] = {
    "albaran": "albaran",
    "delivery note": "albaran",
    "nota de entrega": "albaran",
    "factura": "factura",
    "invoice": "factura",
    "bill": "factura",
    "contrato": "contrato",
    "contract": "contrato",
    "agreement": "contrato",
    "acta": "acta",
    "minutes": "acta",
    "meeting minutes": "acta",
    "escritura": "escritura",
    "deed": "escritura",
    "property deed": "escritura",
    "escritura de compraventa": "escritura",
    "presupuesto": "presupuesto",
    "budget": "presupuesto",
    "estimate": "presupuesto",
    "quote": "presupuesto",
    "comunicado": "comunicado",
    "communication": "comunicado",
    "notice": "comunicado",
    "notification": "comunicado",
}


def _strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_document_type(raw: str | None) -> tuple[str, DocumentType | None]:
    """
    Map a model-proposed type label onto the closed set.

    Returns (label, member): label is the normalized slug for supported types
    and the original lowercase label otherwise; member is None when the label
    is outside the supported set.
    """
    label = (raw or "unknown").strip().lower()
    key = _strip_accents(label)
    mapped = _TYPE_ALIASES.get(key) or _TYPE_ALIASES.get(label)
    if mapped:
        member = DocumentType(mapped)
        return mapped, member if member in SUPPORTED_TYPES else None
    return label, None


def safe_title(title: str, limit: int = 50) -> str:
    ascii_title = _strip_accents(title)
    cleaned = re.sub(r"[^A-Za-z0-9\s\-_]", "", ascii_title).strip()
    return re.sub(r"\s+", "-", cleaned)[:limit] or "documento"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class DetectedDocument:
    """One proposed logical document inside a bundle. Never persisted by itself."""
    type:            str
    document_type:   DocumentType | None
    confidence:      float
    suggested_title: str
    start_line:      int
    end_line:        int
    description:     str = ""
    keywords:        list[str] = field(default_factory=list)
    start_marker:    str | None = None
    end_marker:      str | None = None
    text_fragment:   str = ""
    start_offset:    int = 0
    end_offset:      int = 0

    @property
    def is_supported(self) -> bool:
        return self.document_type is not None

    @property
    def lines(self) -> str:
        return f"{self.start_line}-{self.end_line}"


@dataclass
class AnalysisResult:
    success:               bool
    is_multi_document:     bool
    confidence:            float
    detected_documents:    list[DetectedDocument]
    extracted_text:        str
    total_pages:           int
    total_lines:           int
    extraction:            ExtractionResult
    analysis_details:      str = ""
    text_truncated:        bool = False
    max_supported_length:  int = 0
    tokens_used:           int = 0
    error:                 str | None = None

    @property
    def supported_documents(self) -> int:
        return sum(1 for d in self.detected_documents if d.is_supported)

    @property
    def unsupported_documents(self) -> int:
        return len(self.detected_documents) - self.supported_documents


@dataclass
class SeparatedFile:
    filename: str
    type:     str
    title:    str
    lines:    str


@dataclass
class SeparationResult:
    output_files: list[str]
    output_path:  str
    log_file:     str | None
    text_files:   list[SeparatedFile]
    summary:      dict[str, Any]
    errors:       list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Fragment slicing
# ---------------------------------------------------------------------------

def _line_offsets(text: str) -> list[int]:
    offsets = [0]
    for match in re.finditer("\n", text):
        offsets.append(match.end())
    return offsets


def slice_fragment(text: str, doc: DetectedDocument) -> tuple[str, int, int]:
    """
    Cut the fragment for `doc` out of `text`.

    Markers win when both occur in order; the fragment is the text between
    them. Otherwise the 1-based inclusive line range is used, clamped to the
    text.
    """
    if doc.start_marker and doc.end_marker:
        start_idx = text.find(doc.start_marker)
        end_idx = text.find(doc.end_marker, start_idx + 1) if start_idx != -1 else -1
        if start_idx != -1 and end_idx > start_idx:
            begin = start_idx + len(doc.start_marker)
            return text[begin:end_idx], begin, end_idx

    offsets = _line_offsets(text)
    first = max(0, doc.start_line - 1)
    last = min(len(offsets) - 1, doc.end_line - 1)
    if first > last:
        return "", 0, 0
    begin = offsets[first]
    end = offsets[last + 1] - 1 if last + 1 < len(offsets) else len(text)
    return text[begin:end], begin, end


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

BOUNDARY_SYSTEM_PROMPT = """\
You analyze text extracted from a PDF that may bundle several unrelated documents
(invoices, contracts, delivery notes, meeting minutes, notices to owners, deeds, budgets).

Return ONE JSON object:
{
  "isMultiDocument": boolean,
  "confidence": number 0-1,
  "analysisDetails": string,
  "detectedDocuments": [
    {
      "type": string,
      "startLine": integer (1-based, inclusive),
      "endLine": integer (1-based, inclusive),
      "confidence": number 0-1,
      "suggestedTitle": string,
      "description": string,
      "keywords": [string],
      "startMarker": exact text (15+ chars) where the document starts,
      "endMarker": exact text (15+ chars) where the next part starts
    }
  ]
}

Rules:
- Prefer one of these types when it applies: {supported}. Otherwise use a short
  descriptive label (e.g. "multa", "parte medico").
- Lines are prefixed with "L<n>:"; do not include the prefix in markers.
- When page markers like "--- Página 7 ---" exist, use them as markers:
  a document on pages 7-8 has startMarker "--- Página 7 ---" and endMarker "--- Página 9 ---".
- Cover the whole text; documents must not overlap.
"""


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class MultiDocumentAnalyzer:
    """
    Usage:
        analyzer = MultiDocumentAnalyzer(cascade, gateway)
        analysis = await analyzer.analyze(pdf_bytes, "escaneo_octubre.pdf")
        if analysis.is_multi_document:
            await analyzer.separate(analysis.extracted_text, filename,
                                    analysis.detected_documents, output_dir)
    """

    def __init__(
        self,
        cascade: TextExtractionCascade,
        gateway: LLMGateway | None,
        config:  Settings | None = None,
    ) -> None:
        self._cascade = cascade
        self._gateway = gateway
        self._config  = config or default_settings

    async def analyze(self, file_bytes: bytes, filename: str) -> AnalysisResult:
        max_chars = self._config.multi_document_max_chars

        # ── Step 1: extract once ──
        extraction = await self._cascade.extract(file_bytes, filename)
        if not extraction.success:
            logger.warning("MultiDoc | extraction failed | file=%s error=%s", filename, extraction.error)
            return AnalysisResult(
                success=False,
                is_multi_document=False,
                confidence=0.0,
                detected_documents=[],
                extracted_text="",
                total_pages=0,
                total_lines=0,
                extraction=extraction,
                max_supported_length=max_chars,
                tokens_used=extraction.tokens_used,
                error=extraction.error,
            )

        text = extraction.text
        lines = text.split("\n")
        truncated = len(text) > max_chars

        # ── Step 2: boundary detection ──
        raw, details, confidence, tokens = await self._detect_boundaries(text[:max_chars], filename)
        if not raw:
            raw = [self._whole_text_entry(len(lines))]
            confidence = FALLBACK_CONFIDENCE

        # ── Step 3: slice ──
        detected = [self._build_detected(entry, text) for entry in raw]

        # ── Step 4: decide ──
        substantial = [
            d for d in detected
            if len(d.text_fragment.strip()) >= self._config.min_fragment_chars
        ]
        is_multi = len(substantial) >= 2

        logger.info(
            "MultiDoc | file=%s lines=%d detected=%d substantial=%d multi=%s truncated=%s",
            filename, len(lines), len(detected), len(substantial), is_multi, truncated,
        )
        return AnalysisResult(
            success=True,
            is_multi_document=is_multi,
            confidence=confidence,
            detected_documents=detected,
            extracted_text=text,
            total_pages=extraction.page_count,
            total_lines=len(lines),
            extraction=extraction,
            analysis_details=details,
            text_truncated=truncated,
            max_supported_length=max_chars,
            tokens_used=extraction.tokens_used + tokens,
        )

    async def _detect_boundaries(
        self, text: str, filename: str,
    ) -> tuple[list[dict[str, Any]], str, float, int]:
        """Ask the model for boundaries. Returns ([], reason, 0.1, tokens) on any failure."""
        if self._gateway is None:
            return [], "Boundary detection disabled", FALLBACK_CONFIDENCE, 0

        numbered = "\n".join(f"L{i}: {line}" for i, line in enumerate(text.split("\n"), start=1))
        system = BOUNDARY_SYSTEM_PROMPT.replace(
            "{supported}", ", ".join(sorted(t.value for t in SUPPORTED_TYPES)),
        )
        user = f"File: {filename}\n\nTEXT:\n{numbered}"

        tokens = 0
        try:
            response = await asyncio.wait_for(
                self._gateway.invoke_json(
                    system, user, max_output_tokens=self._config.llm_max_tokens_complex,
                ),
                timeout=self._config.agent_timeout_seconds,
            )
            tokens = response.total_tokens
            data = response.json()
        except asyncio.TimeoutError:
            logger.warning("MultiDoc | boundary detection timed out | file=%s", filename)
            return [], "Boundary detection timed out", FALLBACK_CONFIDENCE, tokens
        except MalformedResponseError as exc:
            logger.warning("MultiDoc | unreadable boundary reply | file=%s error=%s", filename, exc)
            return [], f"Unreadable analysis reply: {exc}", FALLBACK_CONFIDENCE, tokens
        except Exception as exc:
            logger.warning("MultiDoc | boundary detection failed | file=%s error=%s", filename, exc)
            return [], f"Boundary detection failed: {exc}", FALLBACK_CONFIDENCE, tokens

        entries = data.get("detectedDocuments")
        if not isinstance(entries, list) or not entries:
            return [], "Analysis returned no documents", FALLBACK_CONFIDENCE, tokens

        confidence = _clamp(data.get("confidence"), default=0.5)
        details = str(data.get("analysisDetails") or "Analysis completed")
        return [e for e in entries if isinstance(e, dict)], details, confidence, tokens

    @staticmethod
    def _whole_text_entry(total_lines: int) -> dict[str, Any]:
        return {
            "type": DocumentType.UNKNOWN.value,
            "startLine": 1,
            "endLine": max(1, total_lines),
            "confidence": FALLBACK_CONFIDENCE,
            "suggestedTitle": "Unknown Document",
            "description": "Boundary detection unavailable; whole file kept as one document",
        }

    @staticmethod
    def _build_detected(entry: dict[str, Any], text: str) -> DetectedDocument:
        label, member = normalize_document_type(entry.get("type"))
        start_line = max(1, _as_int(entry.get("startLine"), 1))
        end_line = max(start_line, _as_int(entry.get("endLine"), start_line))
        keywords = entry.get("keywords")

        doc = DetectedDocument(
            type=label,
            document_type=member,
            confidence=_clamp(entry.get("confidence"), default=0.5),
            suggested_title=str(entry.get("suggestedTitle") or f"{label} document"),
            start_line=start_line,
            end_line=end_line,
            description=str(entry.get("description") or ""),
            keywords=[str(k) for k in keywords] if isinstance(keywords, list) else [],
            start_marker=entry.get("startMarker") or None,
            end_marker=entry.get("endMarker") or None,
        )
        doc.text_fragment, doc.start_offset, doc.end_offset = slice_fragment(text, doc)
        return doc

    # -----------------------------------------------------------------------
    # Separation
    # -----------------------------------------------------------------------

    async def separate(
        self,
        text:               str,
        filename:           str,
        detected_documents: list[DetectedDocument],
        output_dir:         str | Path,
    ) -> SeparationResult:
        """Write one text file per fragment plus a JSON log. Blocking I/O runs in the executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._separate_sync, text, filename, detected_documents, Path(output_dir),
        )

    def _separate_sync(
        self,
        text:     str,
        filename: str,
        detected: list[DetectedDocument],
        out_dir:  Path,
    ) -> SeparationResult:
        out_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")

        output_files: list[str] = []
        text_files: list[SeparatedFile] = []
        errors: list[str] = []

        for index, doc in enumerate(detected, start=1):
            fragment, _, _ = slice_fragment(text, doc)
            out_name = f"{index}_{safe_title(doc.type, 30)}_{safe_title(doc.suggested_title)}.txt"
            header = (
                "=== DOCUMENTO SEPARADO ===\n"
                f"Archivo original: {filename}\n"
                f"Tipo detectado: {doc.type}\n"
                f"Título sugerido: {doc.suggested_title}\n"
                f"Líneas: {doc.lines}\n"
                f"Confianza: {round(doc.confidence * 100)}%\n"
                f"Soportado por pipeline: {'SÍ' if doc.is_supported else 'NO'}\n"
                f"Descripción: {doc.description}\n"
                f"Palabras clave: {', '.join(doc.keywords)}\n"
                f"Fecha separación: {now.isoformat()}\n"
                "=========================\n\n"
            )
            try:
                (out_dir / out_name).write_text(header + fragment + "\n", encoding="utf-8")
            except OSError as exc:
                msg = f"Error writing document {index} ({doc.type}): {exc}"
                logger.error("MultiDoc | %s", msg)
                errors.append(msg)
                continue

            output_files.append(str(out_dir / out_name))
            text_files.append(SeparatedFile(
                filename=out_name, type=doc.type, title=doc.suggested_title, lines=doc.lines,
            ))

        summary = {
            "original_file":        filename,
            "documents_found":      len(detected),
            "supported_documents":  sum(1 for d in detected if d.is_supported),
            "unsupported_documents": sum(1 for d in detected if not d.is_supported),
            "files_created":        len(output_files),
            "total_characters":     len(text),
            "fragment_characters":  sum(len(slice_fragment(text, d)[0]) for d in detected),
        }

        log_path = out_dir / f"analysis-log-{stamp}.json"
        log_data = {
            "originalFile": filename,
            "analysisDate": now.isoformat(),
            "totalLinesProcessed": text.count("\n") + 1,
            **summary,
            "detectedDocuments": [
                {
                    "type": d.type,
                    "title": d.suggested_title,
                    "lines": d.lines,
                    "confidence": d.confidence,
                    "supported": d.is_supported,
                    "keywords": d.keywords,
                    "startMarker": d.start_marker,
                    "endMarker": d.end_marker,
                }
                for d in detected
            ],
            "outputFiles": [asdict(f) for f in text_files],
            "errors": errors,
        }
        try:
            log_path.write_text(json.dumps(log_data, ensure_ascii=False, indent=2), encoding="utf-8")
            log_file: str | None = str(log_path)
        except OSError as exc:
            errors.append(f"Error writing analysis log: {exc}")
            log_file = None

        logger.info(
            "MultiDoc | separated file=%s files=%d errors=%d dir=%s",
            filename, len(output_files), len(errors), out_dir,
        )
        return SeparationResult(
            output_files=output_files,
            output_path=str(out_dir),
            log_file=log_file,
            text_files=text_files,
            summary=summary,
            errors=errors,
        )


def _clamp(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, number))


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
