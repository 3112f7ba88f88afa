"""
Unit Tests — DocumentClassifier
════════════════════════════════
Coverage targets:
  ✅ Filename hit above the cutoff → no keyword or AI work
  ✅ Keyword analysis for invoices and minutes
  ✅ AI classification: accepted, clamped, out-of-set, malformed, timeout, error
  ✅ Best-available fallback and the UNKNOWN default
  ✅ needs_review threshold
"""

from __future__ import annotations

import asyncio

import pytest

from app.core.config import Settings
from app.processing.classifier import (
    ClassificationMethod,
    DocumentClassifier,
    normalize_filename,
)
from app.schemas.documents import DocumentType
from tests.fakes import FakeGateway

WEAK_NOTICE = (
    "Les escribimos por el aviso recibido sobre el corte de agua previsto para la semana "
    "que viene en toda la calle del barrio antiguo."
)


def _settings(**overrides) -> Settings:
    return Settings(database_url="postgresql+asyncpg://u:p@localhost/db", **overrides)


class SlowGateway(FakeGateway):
    async def invoke_json(self, *args, **kwargs):
        await asyncio.sleep(1)
        return await super().invoke_json(*args, **kwargs)


@pytest.mark.unit
@pytest.mark.processing
class TestFilenameAndKeywords:

    async def test_filename_match_skips_ai(self, fake_gateway, invoice_text):
        classifier = DocumentClassifier(fake_gateway)

        result = await classifier.classify("Factura_2024-118.pdf", invoice_text)

        assert result.document_type == DocumentType.FACTURA
        assert result.method == ClassificationMethod.FILENAME
        assert result.confidence == 0.95
        assert result.needs_review is False
        assert fake_gateway.calls == []

    async def test_child_filename_carries_the_type(self, fake_gateway):
        result = await DocumentClassifier(fake_gateway).classify("2_presupuesto_Reforma-portal.txt", "")
        assert result.document_type == DocumentType.PRESUPUESTO
        assert result.method == ClassificationMethod.FILENAME

    async def test_invoice_keywords(self, fake_gateway, invoice_text):
        result = await DocumentClassifier(fake_gateway).classify("scan_0042.pdf", invoice_text)

        assert result.document_type == DocumentType.FACTURA
        assert result.method == ClassificationMethod.TEXT_ANALYSIS
        assert result.confidence >= 0.8
        assert fake_gateway.calls == []

    async def test_minutes_keywords(self, fake_gateway, minutes_text):
        result = await DocumentClassifier(fake_gateway).classify("scan_0043.pdf", minutes_text)

        assert result.document_type == DocumentType.ACTA
        assert result.method == ClassificationMethod.TEXT_ANALYSIS

    def test_keywords_need_a_hit(self):
        assert DocumentClassifier.classify_by_keywords("texto sin ninguna palabra relevante " * 5) is None

    def test_normalize_filename_strips_accents_and_separators(self):
        assert normalize_filename("carpeta/Factura_Ñandú-2024.PDF") == "factura nandu 2024 pdf"


@pytest.mark.unit
@pytest.mark.processing
class TestAIClassification:

    async def test_ai_result_accepted(self):
        gateway = FakeGateway([{"document_type": "contrato", "confidence": 0.85, "reasoning": "partes y cláusulas"}])

        result = await DocumentClassifier(gateway).classify("scan.pdf", "texto breve")

        assert result.document_type == DocumentType.CONTRATO
        assert result.method == ClassificationMethod.AI_AGENT
        assert result.confidence == 0.85
        assert result.tokens_used == 160
        assert result.needs_review is False
        assert result.raw_response is not None
        assert "Filename: scan.pdf" in gateway.calls[0].user_prompt

    async def test_ai_confidence_clamped(self):
        gateway = FakeGateway([{"document_type": "ACTA", "confidence": 1.5}])
        result = await DocumentClassifier(gateway).classify("scan.pdf", "")
        assert result.document_type == DocumentType.ACTA
        assert result.confidence == 0.95

    async def test_ai_prompt_sample_is_bounded(self):
        gateway = FakeGateway([{"document_type": "acta", "confidence": 0.9}])
        classifier = DocumentClassifier(gateway, _settings(classification_sample_chars=100))

        result = await classifier.classify("scan.pdf", "x" * 5000, use_ai=True)

        assert result.input_sample_length == 100

    async def test_out_of_set_type_becomes_unknown(self):
        gateway = FakeGateway([{"document_type": "multa", "confidence": 0.9}])

        result = await DocumentClassifier(gateway).classify("scan.pdf", "")

        assert result.document_type == DocumentType.UNKNOWN
        assert result.confidence == 0.3
        assert result.fallback_used is True
        assert result.needs_review is True

    async def test_malformed_reply_falls_back(self):
        gateway = FakeGateway(["no es json"])

        result = await DocumentClassifier(gateway).classify("scan.pdf", "")

        assert result.document_type == DocumentType.UNKNOWN
        assert result.method == ClassificationMethod.FALLBACK

    async def test_provider_error_falls_back_to_keywords(self):
        gateway = FakeGateway([RuntimeError("rate limited")])

        result = await DocumentClassifier(gateway).classify("scan.pdf", WEAK_NOTICE)

        assert result.document_type == DocumentType.COMUNICADO
        assert result.method == ClassificationMethod.TEXT_ANALYSIS
        assert result.fallback_used is True
        assert result.needs_review is True

    async def test_timeout_falls_back(self):
        gateway = SlowGateway([{"document_type": "acta", "confidence": 0.9}])
        classifier = DocumentClassifier(gateway, _settings(classification_timeout_seconds=0.01))

        result = await classifier.classify("scan.pdf", "")

        assert result.document_type == DocumentType.UNKNOWN
        assert result.fallback_used is True

    async def test_no_gateway_uses_rule_based_result(self):
        result = await DocumentClassifier(None).classify("scan.pdf", WEAK_NOTICE)
        assert result.document_type == DocumentType.COMUNICADO
        assert result.confidence == 0.3

    async def test_use_ai_false_never_calls_the_model(self, fake_gateway):
        result = await DocumentClassifier(fake_gateway).classify("scan.pdf", "", use_ai=False)

        assert result.document_type == DocumentType.UNKNOWN
        assert result.method == ClassificationMethod.FALLBACK
        assert fake_gateway.calls == []

    async def test_review_threshold_is_configurable(self):
        gateway = FakeGateway([{"document_type": "albaran", "confidence": 0.75}])
        classifier = DocumentClassifier(gateway, _settings(classification_review_threshold=0.8))

        result = await classifier.classify("scan.pdf", "")

        assert result.document_type == DocumentType.ALBARAN
        assert result.needs_review is True
