"""
Paragraph Chunker
═════════════════

Last pipeline stage (processing_level 4): splits a document's extracted
text into ordered chunks stored in saas.document_chunks.

  1. Walk the text line by line:
       "--- Página N ---"  → page boundary (marker itself is dropped)
       heading-like line   → new section, remembered as chunk heading
  2. Split each section at blank lines (paragraphs)
  3. Paragraphs longer than chunk_max_chars are split at sentence
     boundaries (spaCy sentencizer, regex fallback), then hard-split
  4. Pieces shorter than chunk_min_chars are merged into a neighbour

Each chunk keeps the page it starts on and the nearest preceding heading.

spaCy is loaded once per process. A missing model is not an error: the
regex sentence splitter is used instead.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass

from app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_PAGE_MARKER_RE = re.compile(r"^-{3}\s*P[áa]gina\s+(\d+)\s*-{3}$", re.IGNORECASE)

# Headings in Spanish administrative documents:
#   ALL CAPS lines ("ORDEN DEL DÍA"), numbered sections ("2. Acuerdos"),
#   legal structure ("CLÁUSULA TERCERA", "Artículo 5")
_HEADING_RE = re.compile(
    r"""
    ^(
        \#{1,6}\s+.+
      | [A-ZÁÉÍÓÚÑÜ][A-ZÁÉÍÓÚÑÜ\s]{4,}:?
      | (?:\d+\.)+\d*\s+[A-ZÁÉÍÓÚÑ].{3,}
      | (?:CL[ÁA]USULA|Cl[áa]usula|Art[íi]culo|ART[ÍI]CULO|ANEXO|Anexo)\s+\S+.*
    )$
    """,
    re.VERBOSE,
)
MIN_HEADING_LEN = 6
MAX_HEADING_LEN = 120


@dataclass
class ChunkResult:
    """One stored chunk; fields map onto DocumentChunk columns."""
    chunk_index: int
    content:     str
    char_count:  int
    page_number: int
    heading:     str = ""


# ---------------------------------------------------------------------------
# spaCy model singleton
# ---------------------------------------------------------------------------

_spacy_nlp = None
_spacy_failed = False


def _get_nlp(model_name: str):
    global _spacy_nlp, _spacy_failed
    if _spacy_nlp is None and not _spacy_failed:
        import spacy
        try:
            _spacy_nlp = spacy.load(model_name, disable=["ner", "parser"])
            if "sentencizer" not in _spacy_nlp.pipe_names:
                _spacy_nlp.add_pipe("sentencizer")
            logger.info("spaCy model '%s' loaded", model_name)
        except OSError:
            logger.warning(
                "spaCy model '%s' not found — run: python -m spacy download %s",
                model_name, model_name,
            )
            _spacy_failed = True
    return _spacy_nlp


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class ParagraphChunker:
    """
    Usage:
        chunker = ParagraphChunker()
        chunks = chunker.chunk(document.extracted_text, document_id=str(document.id))
    """

    def __init__(self, config: Settings | None = None, use_spacy: bool = True) -> None:
        cfg = config or default_settings
        self._min_chars   = cfg.chunk_min_chars
        self._max_chars   = cfg.chunk_max_chars
        self._spacy_model = cfg.spacy_model
        self._use_spacy   = use_spacy

    def chunk(self, text: str, document_id: str = "") -> list[ChunkResult]:
        text = _normalize_text(text or "")
        if not text.strip():
            logger.warning("Chunker | empty text | doc=%s", document_id)
            return []

        pieces: list[tuple[str, int, str]] = []
        for block, page, heading in self._split_into_sections(text):
            for para in re.split(r"\n\s*\n", block):
                para = para.strip()
                if not para:
                    continue
                if len(para) <= self._max_chars:
                    pieces.append((para, page, heading))
                else:
                    pieces.extend((p, page, heading) for p in self._split_long(para))

        merged = self._merge_short(pieces)
        results = [
            ChunkResult(
                chunk_index=idx,
                content=content,
                char_count=len(content),
                page_number=page,
                heading=heading,
            )
            for idx, (content, page, heading) in enumerate(merged)
        ]

        logger.info(
            "Chunker | doc=%s chunks=%d avg_chars=%.0f",
            document_id, len(results),
            sum(c.char_count for c in results) / max(1, len(results)),
        )
        return results

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    @staticmethod
    def _split_into_sections(text: str) -> list[tuple[str, int, str]]:
        """Returns (block, page_number, heading) in document order."""
        sections: list[tuple[str, int, str]] = []
        page = 1
        heading = ""
        block_page = 1
        current: list[str] = []

        def flush() -> None:
            block = "\n".join(current).strip()
            if block:
                sections.append((block, block_page, heading))
            current.clear()

        for line in text.split("\n"):
            stripped = line.strip()
            marker = _PAGE_MARKER_RE.match(stripped)
            if marker:
                flush()
                page = int(marker.group(1))
                block_page = page
                continue
            if MIN_HEADING_LEN <= len(stripped) <= MAX_HEADING_LEN and _HEADING_RE.match(stripped):
                flush()
                heading = stripped.lstrip("# ").rstrip(":")
                block_page = page
                continue
            if not current:
                block_page = page
            current.append(line)
        flush()
        return sections

    # ------------------------------------------------------------------
    # Long paragraphs
    # ------------------------------------------------------------------

    def _split_long(self, para: str) -> list[str]:
        sentences = self._split_sentences(para)
        parts: list[str] = []
        buffer = ""
        for sentence in sentences:
            if len(sentence) > self._max_chars:
                if buffer:
                    parts.append(buffer)
                    buffer = ""
                parts.extend(self._hard_split(sentence))
            elif buffer and len(buffer) + 1 + len(sentence) > self._max_chars:
                parts.append(buffer)
                buffer = sentence
            else:
                buffer = f"{buffer} {sentence}" if buffer else sentence
        if buffer:
            parts.append(buffer)
        return parts

    def _split_sentences(self, text: str) -> list[str]:
        nlp = _get_nlp(self._spacy_model) if self._use_spacy else None
        if nlp is not None:
            try:
                doc = nlp(text)
                return [s.text.strip() for s in doc.sents if s.text.strip()]
            except Exception as exc:
                logger.warning("Chunker | spaCy sentence split failed: %s — using regex", exc)
        return [s.strip() for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]

    def _hard_split(self, text: str) -> list[str]:
        parts: list[str] = []
        start = 0
        while start < len(text):
            end = min(len(text), start + self._max_chars)
            if end < len(text):
                space = text.rfind(" ", start, end)
                if space > start + self._min_chars:
                    end = space
            piece = text[start:end].strip()
            if piece:
                parts.append(piece)
            start = end
        return parts

    # ------------------------------------------------------------------
    # Short pieces
    # ------------------------------------------------------------------

    def _merge_short(self, pieces: list[tuple[str, int, str]]) -> list[tuple[str, int, str]]:
        """A piece at or under chunk_min_chars joins the next one (or the previous, at the end)."""
        merged: list[tuple[str, int, str]] = []
        pending: tuple[str, int, str] | None = None

        for content, page, heading in pieces:
            if pending is not None:
                joined = f"{pending[0]}\n\n{content}"
                if len(joined) <= self._max_chars:
                    content, page, heading = joined, pending[1], pending[2] or heading
                else:
                    merged.append(pending)
                pending = None
            if len(content) <= self._min_chars:
                pending = (content, page, heading)
            else:
                merged.append((content, page, heading))

        if pending is not None:
            if merged and len(merged[-1][0]) + 2 + len(pending[0]) <= self._max_chars:
                last = merged[-1]
                merged[-1] = (f"{last[0]}\n\n{pending[0]}", last[1], last[2])
            elif not merged:
                merged.append(pending)
            # a trailing fragment that fits nowhere is too short to keep
        return merged


def _normalize_text(text: str) -> str:
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return "\n".join(line.rstrip() for line in text.splitlines()).strip()
