"""
Unit Tests — MultiDocumentAnalyzer
═══════════════════════════════════
The cascade is a stub returning fixed text; the gateway replays boundary
replies.

Coverage targets:
  ✅ Bundle detected → fragments sliced by line range and by markers
  ✅ Type labels normalized (Spanish / English / accents); unknown labels kept, unsupported
  ✅ Trivial second fragment → not a bundle
  ✅ No gateway / failed detection → one "unknown" document, confidence 0.1
  ✅ Extraction failure → success=False
  ✅ Truncation flag and prompt bound
  ✅ separate() writes one file per fragment plus the JSON log
"""

from __future__ import annotations

import json

import pytest

from app.core.config import Settings
from app.processing.extractor import ExtractionResult
from app.processing.multi_document import (
    FALLBACK_CONFIDENCE,
    DetectedDocument,
    MultiDocumentAnalyzer,
    normalize_document_type,
    safe_title,
    slice_fragment,
)
from app.schemas.documents import DocumentType
from tests.fakes import FakeGateway


class StubCascade:
    def __init__(self, text: str = "", success: bool = True, error: str | None = None) -> None:
        self.text = text
        self.success = success
        self.error = error
        self.calls = 0

    async def extract(self, file_bytes: bytes, filename: str, min_acceptable_length=None) -> ExtractionResult:
        self.calls += 1
        if not self.success:
            return ExtractionResult(success=False, text="", method="all-strategies-failed", error=self.error)
        return ExtractionResult(success=True, text=self.text, method="text-layer", page_count=2, confidence=0.9)


def _settings(**overrides) -> Settings:
    return Settings(database_url="postgresql+asyncpg://u:p@localhost/db", **overrides)


def _bundle_reply(**overrides) -> dict:
    reply = {
        "isMultiDocument": True,
        "confidence": 0.88,
        "analysisDetails": "Factura y acta en el mismo escaneo",
        "detectedDocuments": [
            {
                "type": "Factura",
                "startLine": 1,
                "endLine": 8,
                "confidence": 0.9,
                "suggestedTitle": "Factura ascensor",
                "keywords": ["ascensor", "mantenimiento"],
            },
            {
                "type": "meeting minutes",
                "startLine": 10,
                "endLine": 18,
                "confidence": 0.85,
                "suggestedTitle": "Acta junta ordinaria",
            },
        ],
    }
    reply.update(overrides)
    return reply


@pytest.mark.unit
@pytest.mark.processing
class TestAnalyze:

    async def test_bundle_is_split_by_line_ranges(self, bundle_text, invoice_text):
        gateway = FakeGateway([_bundle_reply()])
        analyzer = MultiDocumentAnalyzer(StubCascade(bundle_text), gateway)

        analysis = await analyzer.analyze(b"%PDF", "escaneo.pdf")

        assert analysis.success is True
        assert analysis.is_multi_document is True
        assert analysis.confidence == 0.88
        assert analysis.total_lines == 18
        assert analysis.total_pages == 2
        invoice, minutes = analysis.detected_documents
        assert invoice.type == "factura"
        assert invoice.document_type == DocumentType.FACTURA
        assert invoice.text_fragment == invoice_text.rstrip("\n")
        assert invoice.keywords == ["ascensor", "mantenimiento"]
        assert minutes.document_type == DocumentType.ACTA
        assert minutes.text_fragment.startswith("ACTA DE LA JUNTA")
        assert analysis.supported_documents == 2
        assert analysis.tokens_used == 160

    async def test_prompt_numbers_lines(self, bundle_text):
        gateway = FakeGateway([_bundle_reply()])
        await MultiDocumentAnalyzer(StubCascade(bundle_text), gateway).analyze(b"%PDF", "escaneo.pdf")

        prompt = gateway.calls[0].user_prompt
        assert "L1: FACTURA Nº F-2024/118" in prompt
        assert "L10: ACTA DE LA JUNTA GENERAL ORDINARIA" in prompt
        assert "factura" in gateway.calls[0].system_prompt

    async def test_markers_win_over_line_ranges(self, bundle_text):
        reply = _bundle_reply()
        reply["detectedDocuments"][1].update(
            startLine=1, endLine=2,
            startMarker="ORDEN DEL DÍA", endMarker="ACUERDOS",
        )
        analysis = await MultiDocumentAnalyzer(StubCascade(bundle_text), FakeGateway([reply])).analyze(b"%PDF", "x.pdf")

        fragment = analysis.detected_documents[1].text_fragment
        assert fragment.strip().startswith("1. Aprobación de cuentas")
        assert "ACUERDOS" not in fragment

    async def test_unsupported_label_is_kept(self, bundle_text):
        reply = _bundle_reply()
        reply["detectedDocuments"][1]["type"] = "Multa de tráfico"
        analysis = await MultiDocumentAnalyzer(StubCascade(bundle_text), FakeGateway([reply])).analyze(b"%PDF", "x.pdf")

        other = analysis.detected_documents[1]
        assert other.type == "multa de tráfico"
        assert other.is_supported is False
        assert analysis.unsupported_documents == 1
        assert analysis.is_multi_document is True

    async def test_trivial_second_fragment_is_not_a_bundle(self, bundle_text):
        reply = _bundle_reply()
        reply["detectedDocuments"][1].update(startLine=9, endLine=9)
        analysis = await MultiDocumentAnalyzer(StubCascade(bundle_text), FakeGateway([reply])).analyze(b"%PDF", "x.pdf")

        assert analysis.is_multi_document is False
        assert len(analysis.detected_documents) == 2

    async def test_no_gateway_keeps_whole_text(self, bundle_text):
        analysis = await MultiDocumentAnalyzer(StubCascade(bundle_text), None).analyze(b"%PDF", "x.pdf")

        assert analysis.success is True
        assert analysis.is_multi_document is False
        assert analysis.confidence == FALLBACK_CONFIDENCE
        (only,) = analysis.detected_documents
        assert only.type == "unknown"
        assert only.is_supported is False
        assert only.start_line == 1 and only.end_line == 18
        assert only.text_fragment == bundle_text

    @pytest.mark.parametrize("reply", [
        "respuesta sin json",
        {"isMultiDocument": False, "detectedDocuments": []},
        RuntimeError("provider down"),
    ])
    async def test_failed_detection_falls_back(self, bundle_text, reply):
        analysis = await MultiDocumentAnalyzer(StubCascade(bundle_text), FakeGateway([reply])).analyze(b"%PDF", "x.pdf")

        assert analysis.success is True
        assert analysis.confidence == FALLBACK_CONFIDENCE
        assert [d.type for d in analysis.detected_documents] == ["unknown"]

    async def test_extraction_failure(self):
        cascade = StubCascade(success=False, error="cannot open file")
        gateway = FakeGateway()

        analysis = await MultiDocumentAnalyzer(cascade, gateway).analyze(b"%PDF", "roto.pdf")

        assert analysis.success is False
        assert analysis.error == "cannot open file"
        assert analysis.detected_documents == []
        assert gateway.calls == []

    async def test_long_text_is_truncated_for_the_model(self, bundle_text):
        gateway = FakeGateway([_bundle_reply()])
        analyzer = MultiDocumentAnalyzer(StubCascade(bundle_text), gateway, _settings(multi_document_max_chars=100))

        analysis = await analyzer.analyze(b"%PDF", "x.pdf")

        assert analysis.text_truncated is True
        assert analysis.max_supported_length == 100
        assert "ACUERDOS" not in gateway.calls[0].user_prompt
        # slicing still uses the full text
        assert analysis.detected_documents[1].text_fragment.startswith("ACTA")


@pytest.mark.unit
@pytest.mark.processing
class TestSeparate:

    async def test_writes_fragment_files_and_log(self, tmp_path, bundle_text):
        analyzer = MultiDocumentAnalyzer(StubCascade(bundle_text), FakeGateway([_bundle_reply()]))
        analysis = await analyzer.analyze(b"%PDF", "escaneo.pdf")

        separation = await analyzer.separate(
            analysis.extracted_text, "escaneo.pdf", analysis.detected_documents, tmp_path / "out",
        )

        assert separation.errors == []
        assert [f.filename for f in separation.text_files] == [
            "1_factura_Factura-ascensor.txt",
            "2_acta_Acta-junta-ordinaria.txt",
        ]
        first = (tmp_path / "out" / "1_factura_Factura-ascensor.txt").read_text(encoding="utf-8")
        assert first.startswith("=== DOCUMENTO SEPARADO ===")
        assert "Tipo detectado: factura" in first
        assert "Soportado por pipeline: SÍ" in first
        assert "Total factura: 1.210,00 €" in first

        log = json.loads((tmp_path / "out" / separation.log_file.rsplit("/", 1)[-1]).read_text(encoding="utf-8"))
        assert log["originalFile"] == "escaneo.pdf"
        assert log["documents_found"] == 2
        assert log["files_created"] == 2
        assert [d["type"] for d in log["detectedDocuments"]] == ["factura", "acta"]
        assert separation.summary["supported_documents"] == 2


@pytest.mark.unit
@pytest.mark.processing
class TestHelpers:

    @pytest.mark.parametrize("raw, expected", [
        ("Factura", ("factura", DocumentType.FACTURA)),
        ("Albarán", ("albaran", DocumentType.ALBARAN)),
        ("delivery note", ("albaran", DocumentType.ALBARAN)),
        ("Property Deed", ("escritura", DocumentType.ESCRITURA)),
        ("quote", ("presupuesto", DocumentType.PRESUPUESTO)),
        ("notice", ("comunicado", DocumentType.COMUNICADO)),
        ("multa", ("multa", None)),
        (None, ("unknown", None)),
    ])
    def test_normalize_document_type(self, raw, expected):
        assert normalize_document_type(raw) == expected

    def test_slice_by_lines_clamps_to_text(self):
        doc = DetectedDocument("acta", DocumentType.ACTA, 0.9, "t", start_line=2, end_line=99)
        fragment, begin, end = slice_fragment("uno\ndos\ntres", doc)
        assert fragment == "dos\ntres"
        assert (begin, end) == (4, 12)

    def test_slice_with_markers_out_of_order_uses_lines(self):
        doc = DetectedDocument(
            "acta", DocumentType.ACTA, 0.9, "t", start_line=1, end_line=1,
            start_marker="tres", end_marker="uno",
        )
        assert slice_fragment("uno\ndos\ntres", doc)[0] == "uno"

    def test_slice_past_the_end_is_empty(self):
        doc = DetectedDocument("acta", DocumentType.ACTA, 0.9, "t", start_line=10, end_line=12)
        assert slice_fragment("uno\ndos", doc) == ("", 0, 0)

    def test_safe_title(self):
        assert safe_title("Acta Junta (Ordinaria) 2024/03") == "Acta-Junta-Ordinaria-202403"
        assert safe_title("¿¿??") == "documento"
