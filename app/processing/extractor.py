"""
Text Extraction Cascade
═══════════════════════

Runs the extraction tiers from app.processing.ocr in fixed cost order and
returns the first result that is good enough.

    ┌──────────────────────────────────────────────────────────────────────┐
    │  for tier in [text-layer, ocr, ai-vision]:                           │
    │      skip tiers that do not handle this file kind (OCR is PDF-only)  │
    │      result = await tier.attempt(bytes, filename)                    │
    │      not success              → remember error, next tier            │
    │      len(text) < min_length   → remember error, next tier            │
    │      first tier, low quality  → keep as candidate, next tier         │
    │      otherwise                → done ✓                               │
    │                                                                      │
    │  no tier accepted:                                                   │
    │      candidate kept?  → return it (better than nothing)              │
    │      else             → success=False, "all-strategies-failed"       │
    └──────────────────────────────────────────────────────────────────────┘

The quality score only runs on the first tier: it catches PDFs whose text
layer exists but is garbage (broken font encodings, OCR'd-by-scanner noise).

The cascade has no side effects. Callers persist the result.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

from app.core.config import Settings, settings as default_settings
from app.processing.ocr import (
    BaseTextExtractor,
    StrategyResult,
    TextLayerExtractor,
    TextractOCRExtractor,
    UnstructuredOCRExtractor,
    VisionLLMExtractor,
    detect_kind,
)

if TYPE_CHECKING:
    from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)

ALL_FAILED = "all-strategies-failed"

_WORD_RE  = re.compile(r"^[\wÁÉÍÓÚÜÑáéíóúüñ][\wÁÉÍÓÚÜÑáéíóúüñ'’\-/.]*[.,;:!?)]?$")
_ALPHA_RE = re.compile(r"[A-Za-zÁÉÍÓÚÜÑáéíóúüñ]")
_NOISE_RE = re.compile(r"[^\w\s.,;:!?¿¡()\-/%€$'’\"«»ºª@#&+*=]")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class TierAttempt:
    method:     str
    success:    bool
    chars:      int
    elapsed_ms: float
    error:      str | None = None


@dataclass
class ExtractionResult:
    """
    Output of the cascade.

    success       : a tier produced text of at least the minimum length
    text          : extracted text ("" on failure)
    method        : "text-layer" | "ocr" | "ai-vision" | "manual-review-required" | "all-strategies-failed"
    page_count    : pages seen by the winning tier (0 on failure)
    confidence    : tier confidence (0–1)
    error         : last tier error when success is False
    quality_score : heuristic score of the accepted text (None if not computed)
    elapsed_ms    : total cascade wall time
    tokens_used   : model tokens spent (vision tier only)
    attempts      : one entry per tier actually tried
    """
    success:       bool
    text:          str
    method:        str
    page_count:    int = 0
    confidence:    float = 0.0
    error:         str | None = None
    quality_score: float | None = None
    elapsed_ms:    float = 0.0
    tokens_used:   int = 0
    attempts:      list[TierAttempt] = field(default_factory=list)

    @property
    def text_length(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Quality heuristic
# ---------------------------------------------------------------------------

def text_quality_score(text: str) -> float:
    """
    Score 0–1 for how much `text` looks like real prose.

    Weighted mix of:
      - word-shape ratio       tokens that look like words or numbers
      - structural punctuation presence of sentence/field punctuation
      - noise proportion       characters outside letters, digits and common symbols
    """
    tokens = text.split()
    if not tokens:
        return 0.0

    word_like = sum(
        1 for tok in tokens
        if _WORD_RE.match(tok) and (_ALPHA_RE.search(tok) or tok[0].isdigit())
    )
    word_ratio = word_like / len(tokens)

    punctuation = 1.0 if re.search(r"[.,:;]", text) else 0.0

    visible = [ch for ch in text if not ch.isspace()]
    noise = len(_NOISE_RE.findall(text)) / len(visible) if visible else 1.0
    noise_penalty = min(1.0, noise * 4)

    return round(0.6 * word_ratio + 0.2 * punctuation + 0.2 * (1.0 - noise_penalty), 3)


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------

class TextExtractionCascade:
    """
    Stateless cascade over an explicit, ordered list of tiers.

    Constructor args:
        strategies        : tiers in cost order (cheapest first)
        min_text_length   : default acceptance threshold in characters
        quality_threshold : first-tier quality score below which we escalate;
                            None disables the check

    Usage:
        cascade = build_cascade(gateway)
        result = await cascade.extract(pdf_bytes, "factura_2024.pdf")
    """

    def __init__(
        self,
        strategies:        Sequence[BaseTextExtractor],
        min_text_length:   int = 50,
        quality_threshold: float | None = None,
    ) -> None:
        if not strategies:
            raise ValueError("TextExtractionCascade needs at least one strategy")
        self._strategies        = list(strategies)
        self._min_text_length   = min_text_length
        self._quality_threshold = quality_threshold

    @property
    def methods(self) -> list[str]:
        return [s.method_name for s in self._strategies]

    async def extract(
        self,
        file_bytes: bytes,
        filename: str,
        min_acceptable_length: int | None = None,
    ) -> ExtractionResult:
        t0 = time.monotonic()
        min_len = self._min_text_length if min_acceptable_length is None else min_acceptable_length
        kind = detect_kind(filename, file_bytes)

        attempts: list[TierAttempt] = []
        candidate: StrategyResult | None = None
        candidate_score: float | None = None
        last_error: str | None = None
        last_method = ALL_FAILED
        tokens = 0

        for position, strategy in enumerate(self._strategies):
            if not strategy.supports(kind):
                continue

            result = await strategy.attempt(file_bytes, filename)
            tokens += result.tokens_used
            attempts.append(TierAttempt(
                method=result.method,
                success=result.success,
                chars=result.text_length,
                elapsed_ms=round(result.elapsed_ms, 1),
                error=result.error,
            ))

            # ── Tier failed outright ──
            if not result.success:
                last_error = result.error or f"{result.method} failed"
                last_method = result.method
                continue

            # ── Tier returned too little text ──
            if result.text_length < min_len:
                last_error = (
                    f"{result.method} returned {result.text_length} characters "
                    f"(minimum {min_len})"
                )
                last_method = result.method
                logger.info(
                    "Cascade escalating | file=%s method=%s chars=%d min=%d",
                    filename, result.method, result.text_length, min_len,
                )
                continue

            # ── First tier passed length; check it is not garbage ──
            score: float | None = None
            if position == 0 and self._quality_threshold is not None:
                score = text_quality_score(result.text)
                if score < self._quality_threshold:
                    logger.info(
                        "Cascade escalating on quality | file=%s score=%.2f threshold=%.2f",
                        filename, score, self._quality_threshold,
                    )
                    candidate, candidate_score = result, score
                    last_error = f"{result.method} text quality {score:.2f} below threshold"
                    continue

            return self._build(result, attempts, t0, tokens, score)

        if candidate is not None:
            logger.warning(
                "No tier beat the low-quality text layer; keeping it | file=%s score=%.2f",
                filename, candidate_score,
            )
            return self._build(candidate, attempts, t0, tokens, candidate_score)

        method = VisionLLMExtractor.MANUAL_REVIEW if last_method == VisionLLMExtractor.MANUAL_REVIEW else ALL_FAILED
        logger.error(
            "Extraction failed | file=%s method=%s tiers=%d error=%s",
            filename, method, len(attempts), last_error,
        )
        return ExtractionResult(
            success=False,
            text="",
            method=method,
            error=last_error or "no extraction tier supports this file",
            elapsed_ms=(time.monotonic() - t0) * 1000,
            tokens_used=tokens,
            attempts=attempts,
        )

    @staticmethod
    def _build(
        result:   StrategyResult,
        attempts: list[TierAttempt],
        t0:       float,
        tokens:   int,
        score:    float | None,
    ) -> ExtractionResult:
        elapsed = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction | method=%s pages=%d chars=%d tiers_tried=%d elapsed_ms=%.0f",
            result.method, result.page_count, result.text_length, len(attempts), elapsed,
        )
        return ExtractionResult(
            success=True,
            text=result.text,
            method=result.method,
            page_count=result.page_count,
            confidence=result.confidence,
            quality_score=score,
            elapsed_ms=elapsed,
            tokens_used=tokens,
            attempts=attempts,
        )


def build_cascade(
    gateway: LLMGateway | None = None,
    config:  Settings | None = None,
) -> TextExtractionCascade:
    """
    Assemble the production tier list from settings.

    OCR is included only when settings.ocr_backend names a backend; the
    vision tier only when a gateway is supplied and vision is enabled.
    """
    config = config or default_settings
    strategies: list[BaseTextExtractor] = [TextLayerExtractor()]

    if config.ocr_backend == "textract":
        strategies.append(TextractOCRExtractor(config.aws_region, config.ocr_timeout_seconds))
    elif config.ocr_backend == "unstructured":
        strategies.append(UnstructuredOCRExtractor(config.ocr_timeout_seconds))

    if gateway is not None and config.vision_enabled:
        strategies.append(VisionLLMExtractor(
            gateway,
            max_pages=config.vision_max_pages,
            dpi=config.vision_render_dpi,
            timeout_seconds=config.text_extraction_timeout_seconds,
        ))

    return TextExtractionCascade(
        strategies,
        min_text_length=config.min_text_length,
        quality_threshold=config.text_quality_threshold if config.quality_escalation_enabled else None,
    )
