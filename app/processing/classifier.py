"""
Document Classifier
═══════════════════

Assigns one of the closed DocumentType values to a document or fragment.

    ┌─────────────────────────────────────────────────────────────────────┐
    │ 1. filename patterns      conf ≥ filename_cutoff   → return (no AI) │
    │ 2. keyword analysis       text > 100 chars                          │
    │                           conf ≥ text_analysis_min → return         │
    │ 3. AI classifier          use_ai, first 2000 chars                  │
    │                           in-set type, conf ≥ ai_min → return       │
    │ 4. best of the above, fallback_used=True                            │
    │    (nothing at all → UNKNOWN at low_confidence_default)             │
    └─────────────────────────────────────────────────────────────────────┘

classify() never raises. AI errors, timeouts and out-of-set answers are
logged and the best cheaper result is used instead; `needs_review` marks
results whose confidence is below the review threshold so the UI can flag
them.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import unicodedata
from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.core.config import Settings, settings as default_settings
from app.llm.gateway import MalformedResponseError
from app.schemas.documents import SUPPORTED_TYPES, DocumentType

if TYPE_CHECKING:
    from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)


class ClassificationMethod:
    FILENAME      = "filename"
    TEXT_ANALYSIS = "text-analysis"
    AI_AGENT      = "ai-agent"
    FALLBACK      = "fallback"


# ---------------------------------------------------------------------------
# Filename patterns: checked in order, first hit wins
# ---------------------------------------------------------------------------

_FILENAME_PATTERNS: list[tuple[re.Pattern[str], DocumentType, float]] = [
    (re.compile(r"\bacta\b|^acta"),               DocumentType.ACTA,        0.95),
    (re.compile(r"\bfactura\b|^factura"),         DocumentType.FACTURA,     0.95),
    (re.compile(r"\bcontrato\b|^contrato"),       DocumentType.CONTRATO,    0.95),
    (re.compile(r"\bcomunicado\b|^comunicado"),   DocumentType.COMUNICADO,  0.95),
    (re.compile(r"\bpresupuesto\b|^presupuesto"), DocumentType.PRESUPUESTO, 0.90),
    (re.compile(r"\balbaran\b|^albaran"),         DocumentType.ALBARAN,     0.90),
    (re.compile(r"\bescritura\b|^escritura"),     DocumentType.ESCRITURA,   0.90),
]


# ---------------------------------------------------------------------------
# Keyword table: strong hits weigh 3, medium hits 1
# ---------------------------------------------------------------------------

_KEYWORDS: dict[DocumentType, dict[str, list[str]]] = {
    DocumentType.ACTA: {
        "strong": ["junta", "reunión", "presidente", "secretario", "propietarios", "acuerdos", "orden del día"],
        "medium": ["asamblea", "convocatoria", "administrador", "comunidad"],
    },
    DocumentType.FACTURA: {
        "strong": ["factura", "importe", "iva", "subtotal", "proveedor", "cliente"],
        "medium": ["precio", "cantidad", "concepto", "total"],
    },
    DocumentType.CONTRATO: {
        "strong": ["contrato", "partes", "cláusulas", "servicios", "contratante"],
        "medium": ["obligaciones", "condiciones", "duración", "precio"],
    },
    DocumentType.COMUNICADO: {
        "strong": ["comunicado", "información", "aviso", "notificación"],
        "medium": ["atentamente", "administración", "vecinos", "propietarios"],
    },
}

STRONG_WEIGHT = 3
MEDIUM_WEIGHT = 1
MIN_TEXT_FOR_ANALYSIS = 100

_COMPILED_KEYWORDS: dict[DocumentType, list[tuple[re.Pattern[str], int]]] = {
    doc_type: [
        (re.compile(rf"\b{re.escape(word)}\b"), STRONG_WEIGHT) for word in groups["strong"]
    ] + [
        (re.compile(rf"\b{re.escape(word)}\b"), MEDIUM_WEIGHT) for word in groups["medium"]
    ]
    for doc_type, groups in _KEYWORDS.items()
}

CLASSIFIER_SYSTEM_PROMPT = (
    "You classify documents managed by a Spanish homeowners' community administrator. "
    "Answer with a JSON object: "
    '{"document_type": one of ["acta", "factura", "contrato", "albaran", "comunicado", '
    '"escritura", "presupuesto", "unknown"], "confidence": number between 0 and 1, '
    '"reasoning": short explanation}. '
    "acta = meeting minutes, factura = invoice, contrato = contract, albaran = delivery note, "
    "comunicado = notice to owners, escritura = property deed, presupuesto = budget or quote."
)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ClassificationResult:
    document_type:      DocumentType
    confidence:         float
    method:             str
    reasoning:          str = ""
    processing_time_ms: int = 0
    tokens_used:        int = 0
    fallback_used:      bool = False
    needs_review:       bool = False
    raw_response:       str | None = None
    input_sample_length: int = 0

    @property
    def is_supported(self) -> bool:
        return self.document_type in SUPPORTED_TYPES


def normalize_filename(filename: str) -> str:
    """Lowercase, strip accents and turn separators into spaces."""
    stem = filename.rsplit("/", 1)[-1]
    decomposed = unicodedata.normalize("NFKD", stem.lower())
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[_\-.]+", " ", ascii_only).strip()


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class DocumentClassifier:
    """
    Stateless classifier; the AI client is injected.

    Usage:
        classifier = DocumentClassifier(gateway)
        result = await classifier.classify("scan_0042.pdf", text)
    """

    def __init__(self, gateway: LLMGateway | None, config: Settings | None = None) -> None:
        self._gateway = gateway
        self._config  = config or default_settings

    async def classify(
        self,
        filename: str,
        text: str = "",
        use_ai: bool = True,
    ) -> ClassificationResult:
        t0 = time.monotonic()
        cfg = self._config
        tried: list[ClassificationResult] = []

        # ── Step 1: filename ──
        by_name = self.classify_by_filename(filename)
        if by_name is not None:
            tried.append(by_name)
            if by_name.confidence >= cfg.filename_confidence_cutoff:
                return self._finish(by_name, t0)

        # ── Step 2: keyword analysis ──
        if text and len(text) > MIN_TEXT_FOR_ANALYSIS:
            by_text = self.classify_by_keywords(text)
            if by_text is not None:
                tried.append(by_text)
                if by_text.confidence >= cfg.text_analysis_min_confidence:
                    return self._finish(by_text, t0)

        # ── Step 3: AI ──
        if use_ai and self._gateway is not None:
            by_ai = await self._classify_with_ai(filename, text)
            if by_ai is not None:
                tried.append(by_ai)
                if by_ai.confidence >= cfg.classification_ai_min_confidence:
                    return self._finish(by_ai, t0)

        # ── Step 4: best available ──
        if tried:
            best = max(tried, key=lambda r: r.confidence)
            best.fallback_used = True
            return self._finish(best, t0)

        return self._finish(
            ClassificationResult(
                document_type=DocumentType.UNKNOWN,
                confidence=cfg.low_confidence_default,
                method=ClassificationMethod.FALLBACK,
                reasoning="No filename, keyword or AI signal",
                fallback_used=True,
            ),
            t0,
        )

    # -----------------------------------------------------------------------
    # Strategies
    # -----------------------------------------------------------------------

    @staticmethod
    def classify_by_filename(filename: str) -> ClassificationResult | None:
        name = normalize_filename(filename)
        for pattern, doc_type, confidence in _FILENAME_PATTERNS:
            if pattern.search(name):
                return ClassificationResult(
                    document_type=doc_type,
                    confidence=confidence,
                    method=ClassificationMethod.FILENAME,
                    reasoning=f"Filename matches '{doc_type.value}'",
                )
        return None

    @staticmethod
    def classify_by_keywords(text: str) -> ClassificationResult | None:
        lowered = text.lower()
        best_type: DocumentType | None = None
        best_score = 0

        for doc_type, patterns in _COMPILED_KEYWORDS.items():
            score = sum(len(p.findall(lowered)) * weight for p, weight in patterns)
            if score > best_score:
                best_type, best_score = doc_type, score

        if best_type is None:
            return None
        return ClassificationResult(
            document_type=best_type,
            confidence=round(min(0.95, best_score * 0.1), 3),
            method=ClassificationMethod.TEXT_ANALYSIS,
            reasoning=f"Keyword score {best_score} for '{best_type.value}'",
        )

    async def _classify_with_ai(self, filename: str, text: str) -> ClassificationResult | None:
        sample = text[: self._config.classification_sample_chars]
        user_prompt = (
            f"Filename: {filename}\n"
            f"Full text length: {len(text)} characters\n"
            f"Text preview:\n{sample}"
        )

        try:
            response = await asyncio.wait_for(
                self._gateway.invoke_json(
                    CLASSIFIER_SYSTEM_PROMPT,
                    user_prompt,
                    max_output_tokens=self._config.llm_max_tokens_classifier,
                ),
                timeout=self._config.classification_timeout_seconds,
            )
            data = response.json()
        except asyncio.TimeoutError:
            logger.warning(
                "Classifier | AI timed out after %.0fs | file=%s",
                self._config.classification_timeout_seconds, filename,
            )
            return None
        except MalformedResponseError as exc:
            logger.warning("Classifier | AI reply unreadable | file=%s error=%s", filename, exc)
            return None
        except Exception as exc:
            logger.warning("Classifier | AI call failed | file=%s error=%s", filename, exc)
            return None

        doc_type = DocumentType.parse(data.get("document_type"))
        if doc_type is None or doc_type not in SUPPORTED_TYPES:
            logger.warning(
                "Classifier | AI returned out-of-set type %r | file=%s",
                data.get("document_type"), filename,
            )
            return ClassificationResult(
                document_type=DocumentType.UNKNOWN,
                confidence=self._config.low_confidence_default,
                method=ClassificationMethod.AI_AGENT,
                reasoning=f"Rejected out-of-set type {data.get('document_type')!r}",
                tokens_used=response.total_tokens,
                raw_response=response.content,
                input_sample_length=len(sample),
            )

        try:
            confidence = float(data.get("confidence", 0.8))
        except (TypeError, ValueError):
            confidence = 0.8

        return ClassificationResult(
            document_type=doc_type,
            confidence=round(max(0.0, min(0.95, confidence)), 3),
            method=ClassificationMethod.AI_AGENT,
            reasoning=str(data.get("reasoning") or "AI classification"),
            tokens_used=response.total_tokens,
            raw_response=response.content,
            input_sample_length=len(sample),
        )

    def _finish(self, result: ClassificationResult, t0: float) -> ClassificationResult:
        result.processing_time_ms = int((time.monotonic() - t0) * 1000)
        result.needs_review = (
            result.confidence < self._config.classification_review_threshold
            or not result.is_supported
        )
        logger.info(
            "Classifier | type=%s confidence=%.2f method=%s fallback=%s review=%s",
            result.document_type.value, result.confidence, result.method,
            result.fallback_used, result.needs_review,
        )
        return result
