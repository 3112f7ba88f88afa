"""
Structured Extraction Package
══════════════════════════════

One extractor per supported document type turns text into the typed
record stored in saas.extracted_<type> tables.

Public API::

    from app.extraction import ExtractorFactory

    extractor = ExtractorFactory(gateway).get_extractor(DocumentType.CONTRATO)
    outcome = await extractor.process_metadata(document_id, text)
"""

from app.extraction.base import BaseDocumentExtractor, ExtractionMethod, ExtractorOutcome
from app.extraction.factory import ExtractorFactory

__all__ = [
    "BaseDocumentExtractor",
    "ExtractionMethod",
    "ExtractorFactory",
    "ExtractorOutcome",
]
