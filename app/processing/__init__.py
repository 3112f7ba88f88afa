"""
Document Processing Package
════════════════════════════

Stateless building blocks used by the pipeline orchestrator:

  Text Extraction → (Bundle Analysis) → Classification → Chunking

Modules
───────
  ocr.py             Extraction strategies (text layer → OCR → vision model)
  extractor.py       Cascade that runs the strategies in cost order
  multi_document.py  Detects and separates logical documents inside one file
  classifier.py      Filename → keywords → AI document type classification
  chunking.py        Paragraph chunker for the final stage

Every component receives its collaborators (gateway, settings) through its
constructor; nothing here touches the database.
"""

from app.processing.chunking import ChunkResult, ParagraphChunker
from app.processing.classifier import ClassificationResult, DocumentClassifier
from app.processing.extractor import ExtractionResult, TextExtractionCascade, build_cascade
from app.processing.multi_document import AnalysisResult, DetectedDocument, MultiDocumentAnalyzer

__all__ = [
    "AnalysisResult",
    "ChunkResult",
    "ClassificationResult",
    "DetectedDocument",
    "DocumentClassifier",
    "ExtractionResult",
    "MultiDocumentAnalyzer",
    "ParagraphChunker",
    "TextExtractionCascade",
    "build_cascade",
]
