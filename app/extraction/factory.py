"""
Extractor Factory

Maps a DocumentType onto its extractor. Types without an extractor
(unknown, multidocumento, anything the classifier could not place) get
None; the orchestrator records the metadata stage as skipped for them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from app.core.config import Settings, settings as default_settings
from app.extraction.base import BaseDocumentExtractor
from app.extraction.extractors import ALL_EXTRACTORS
from app.schemas.documents import DocumentType

if TYPE_CHECKING:
    from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)


class ExtractorFactory:
    """
    Registry of extractor classes; instances share the injected gateway.

    Usage:
        factory = ExtractorFactory(gateway)
        extractor = factory.get_extractor(DocumentType.FACTURA)
        outcome = await extractor.process_metadata(str(doc.id), doc.extracted_text)
    """

    def __init__(
        self,
        gateway:    LLMGateway | None,
        config:     Settings | None = None,
        extractors: tuple[type[BaseDocumentExtractor], ...] = ALL_EXTRACTORS,
    ) -> None:
        self._gateway  = gateway
        self._config   = config or default_settings
        self._registry: dict[DocumentType, type[BaseDocumentExtractor]] = {}
        self._cache:    dict[DocumentType, BaseDocumentExtractor] = {}
        for cls in extractors:
            self.register(cls)

    def register(self, extractor_cls: type[BaseDocumentExtractor]) -> None:
        doc_type = extractor_cls.document_type
        if doc_type in self._registry:
            logger.warning(
                "ExtractorFactory | replacing %s with %s",
                self._registry[doc_type].__name__, extractor_cls.__name__,
            )
        self._registry[doc_type] = extractor_cls
        self._cache.pop(doc_type, None)

    def get_extractor(self, document_type: DocumentType | str | None) -> BaseDocumentExtractor | None:
        doc_type = (
            document_type if isinstance(document_type, DocumentType)
            else DocumentType.parse(document_type)
        )
        if doc_type is None or doc_type not in self._registry:
            logger.info("ExtractorFactory | no extractor for type=%s", document_type)
            return None
        if doc_type not in self._cache:
            self._cache[doc_type] = self._registry[doc_type](self._gateway, self._config)
        return self._cache[doc_type]

    def supported_types(self) -> list[DocumentType]:
        return list(self._registry)

    def table_for(self, document_type: DocumentType) -> str | None:
        cls = self._registry.get(document_type)
        return cls.table_name if cls else None
