"""
Unit Tests — Pipeline Orchestrator and StageState
══════════════════════════════════════════════════
The orchestrator runs against the in-memory store with the real
classifier, extractor factory and chunker; only the text cascade is a
stub.

Coverage targets:
  ✅ StageState: allowed transitions, gates, manual re-run, level limits, columns
  ✅ Full run at level 4 → every stage completed, record + chunks stored
  ✅ Unknown type → metadata and chunking skipped with a reason
  ✅ Failed stage halts the run; earlier stages keep their state
  ✅ processing_level limits (stored level and per-call override)
  ✅ Handler crash / timeout → failed; OperationalError propagates
  ✅ rerun_stage() cascades to later stages, recovers stages left processing;
     gate and level violations raise
  ✅ record_extraction() for documents without a stored file
  ✅ process_children() runs siblings in order
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app.extraction.factory import ExtractorFactory
from app.processing.chunking import ParagraphChunker
from app.processing.classifier import DocumentClassifier
from app.processing.extractor import ExtractionResult
from app.schemas.documents import PipelineStage, StageStatus
from app.services.persistence import pipeline_status
from app.services.pipeline import (
    InvalidStageTransition,
    PipelineOrchestrator,
    StageState,
)

OFFICE_NOTE = (
    "Listado de lecturas de contadores de agua del edificio para el segundo "
    "trimestre del año en curso, ordenado por planta y puerta."
)

EXTRACTION, CLASSIFICATION, METADATA, CHUNKING = (
    PipelineStage.EXTRACTION,
    PipelineStage.CLASSIFICATION,
    PipelineStage.METADATA,
    PipelineStage.CHUNKING,
)


class StubCascade:
    """Returns fixed text, or raises `error` when it is an exception."""

    def __init__(self, text: str = "", error: BaseException | str | None = None) -> None:
        self.text = text
        self.error = error
        self.filenames: list[str] = []

    async def extract(self, file_bytes: bytes, filename: str, min_acceptable_length=None) -> ExtractionResult:
        self.filenames.append(filename)
        if isinstance(self.error, BaseException):
            raise self.error
        if self.error:
            return ExtractionResult(success=False, text="", method="all-strategies-failed", error=self.error)
        return ExtractionResult(success=True, text=self.text, method="text-layer", page_count=1, confidence=0.9)


@pytest.fixture
def make_orchestrator(patched_store, session_factory, mock_storage):
    def _build(cascade: StubCascade, gateway=None) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            session_factory=session_factory,
            cascade=cascade,
            classifier=DocumentClassifier(gateway),
            extractor_factory=ExtractorFactory(gateway),
            chunker=ParagraphChunker(use_spacy=False),
            storage_factory=lambda organization_id: mock_storage,
        )
    return _build


@pytest.fixture
def make_document(store, test_org_id, test_community_id):
    def _build(filename: str = "Factura_118.pdf", **values):
        defaults = dict(
            organization_id=test_org_id,
            community_id=test_community_id,
            filename=filename,
            original_filename=filename,
            storage_key=f"{test_org_id}/documents/{uuid.uuid4().hex}.pdf",
            mime_type="application/pdf",
            size_bytes=2048,
            file_hash=uuid.uuid4().hex,
        )
        return store.add_document(**{**defaults, **values})
    return _build


def _statuses(result) -> list[tuple[PipelineStage, StageStatus]]:
    return [(o.stage, o.status) for o in result.outcomes]


# ─────────────────────────────────────────────────────────────────────────────
# StageState
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestStageState:

    def test_new_state_starts_with_extraction(self):
        state = StageState.new()
        assert all(s == StageStatus.PENDING for s in state.statuses.values())
        assert state.next_stage() == EXTRACTION
        assert state.is_finished() is False

    def test_pending_cannot_jump_to_completed(self):
        with pytest.raises(InvalidStageTransition):
            StageState.new().transition(EXTRACTION, StageStatus.COMPLETED)

    def test_gate_blocks_later_stage(self):
        state = StageState.new()
        with pytest.raises(InvalidStageTransition, match="prerequisite"):
            state.transition(CLASSIFICATION, StageStatus.PROCESSING)

    def test_skipped_opens_the_gate(self):
        state = StageState.new()
        state.transition(EXTRACTION, StageStatus.PROCESSING)
        state.transition(EXTRACTION, StageStatus.COMPLETED)
        state.transition(CLASSIFICATION, StageStatus.PROCESSING)
        state.transition(CLASSIFICATION, StageStatus.COMPLETED)
        state.transition(METADATA, StageStatus.SKIPPED, "No extractor")

        assert state.prerequisite_satisfied(CHUNKING) is True
        assert state.next_stage() == CHUNKING
        assert state.errors[METADATA] == "No extractor"

    def test_terminal_states_need_manual_rerun(self):
        state = StageState.new()
        state.transition(EXTRACTION, StageStatus.PROCESSING)
        state.transition(EXTRACTION, StageStatus.FAILED)
        assert state.errors[EXTRACTION] == "Stage failed"

        with pytest.raises(InvalidStageTransition, match="manual"):
            state.transition(EXTRACTION, StageStatus.PROCESSING)
        state.transition(EXTRACTION, StageStatus.PROCESSING, manual=True)

        assert state.status(EXTRACTION) == StageStatus.PROCESSING
        assert state.errors[EXTRACTION] is None

    def test_stale_processing_stage_moves_only_on_manual_rerun(self):
        state = StageState.new()
        state.transition(EXTRACTION, StageStatus.PROCESSING)

        with pytest.raises(InvalidStageTransition, match="manual"):
            state.transition(EXTRACTION, StageStatus.PROCESSING)
        state.transition(EXTRACTION, StageStatus.PROCESSING, manual=True)

        assert state.status(EXTRACTION) == StageStatus.PROCESSING

    def test_failed_stage_blocks_next_stage(self):
        state = StageState.new()
        state.transition(EXTRACTION, StageStatus.PROCESSING)
        state.transition(EXTRACTION, StageStatus.FAILED, "cannot open file")
        assert state.next_stage() is None
        assert state.is_finished() is False

    def test_processing_level_limits_stages(self):
        state = StageState.new(processing_level=1)
        state.transition(EXTRACTION, StageStatus.PROCESSING)
        state.transition(EXTRACTION, StageStatus.COMPLETED)

        assert state.enabled(CLASSIFICATION) is False
        assert state.next_stage() is None
        assert state.is_finished() is True

    def test_gate_uses_previous_enabled_stage(self):
        state = StageState.new(processing_level=2)
        assert state.prerequisite_satisfied(EXTRACTION) is True
        assert state.prerequisite_satisfied(CLASSIFICATION) is False

    def test_columns(self):
        state = StageState.new(processing_level=3)
        assert state.as_columns() == {}

        state.transition(EXTRACTION, StageStatus.PROCESSING)
        state.transition(EXTRACTION, StageStatus.COMPLETED)
        columns = state.as_columns()
        assert columns["extraction_status"] == "completed"
        assert columns["extraction_error"] is None
        assert "extraction_completed_at" in columns
        assert "classification_status" not in columns

        everything = state.all_columns()
        assert everything["processing_level"] == 3
        assert everything["chunking_status"] == "pending"

    def test_from_document(self, make_document):
        document = make_document(
            extraction_status="completed", classification_status="failed",
            classification_error="provider down", processing_level=3,
        )

        state = StageState.from_document(document)

        assert state.status(CLASSIFICATION) == StageStatus.FAILED
        assert state.errors[CLASSIFICATION] == "provider down"
        assert state.processing_level == 3


# ─────────────────────────────────────────────────────────────────────────────
# process_document
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestProcessDocument:

    async def test_full_run(self, make_orchestrator, make_document, store, session_factory, test_org_id, invoice_text):
        cascade = StubCascade(invoice_text)
        document = make_document("Factura_118.pdf")

        result = await make_orchestrator(cascade).process_document(document.id, test_org_id)

        assert result.success is True
        assert _statuses(result) == [
            (EXTRACTION, StageStatus.COMPLETED),
            (CLASSIFICATION, StageStatus.COMPLETED),
            (METADATA, StageStatus.COMPLETED),
            (CHUNKING, StageStatus.COMPLETED),
        ]
        assert result.document_type == "factura"
        assert cascade.filenames == ["Factura_118.pdf"]

        assert document.extracted_text == invoice_text
        assert document.text_length == len(invoice_text)
        assert document.extraction_method == "text-layer"
        assert document.document_type == "factura"
        assert document.needs_review is False
        assert document.processing_started_at is not None
        assert document.processing_completed_at is not None
        assert document.doc_metadata["extraction_agent"] == "factura_extractor_v2"
        assert document.doc_metadata["extraction_method"] == "regex-fallback"

        record = store.extracted["extracted_invoices"][document.id]
        assert record["organization_id"] == test_org_id
        assert record["total_amount"] == Decimal("1210.0")
        assert store.classifications[0].classification_method == "filename"
        assert document.chunks_count == len(store.chunks[document.id]) == 1
        assert pipeline_status(document)["overall_status"] == "completed"
        assert set(session_factory.organizations) == {test_org_id}

    async def test_unknown_type_skips_metadata_and_chunking(self, make_orchestrator, make_document, store, test_org_id):
        document = make_document("scan_0042.pdf")

        result = await make_orchestrator(StubCascade(OFFICE_NOTE)).process_document(document.id, test_org_id)

        assert result.success is True
        assert _statuses(result)[2:] == [(METADATA, StageStatus.SKIPPED), (CHUNKING, StageStatus.SKIPPED)]
        assert document.document_type == "unknown"
        assert document.needs_review is True
        assert document.metadata_error == "No extractor for type 'unknown'"
        assert document.chunking_error == "Unsupported type 'unknown'"
        assert store.extracted == {}
        assert document.id not in store.chunks
        assert pipeline_status(document)["overall_status"] == "completed"

    async def test_failed_extraction_halts(self, make_orchestrator, make_document, test_org_id):
        document = make_document()

        result = await make_orchestrator(StubCascade(error="cannot open file")).process_document(
            document.id, test_org_id,
        )

        assert result.success is False
        assert _statuses(result) == [(EXTRACTION, StageStatus.FAILED)]
        assert document.extraction_error == "cannot open file"
        assert document.extraction_method == "all-strategies-failed"
        assert document.classification_status == "pending"
        assert document.processing_completed_at is None

    async def test_short_text_fails_extraction(self, make_orchestrator, make_document, test_org_id):
        document = make_document()

        await make_orchestrator(StubCascade("hola")).process_document(document.id, test_org_id)

        assert document.extraction_status == "failed"
        assert document.extraction_error == "Extracted text below minimum length"

    async def test_metadata_write_failure(self, make_orchestrator, make_document, store, test_org_id, invoice_text):
        store.reject_tables["extracted_invoices"] = "IntegrityError: check constraint"
        document = make_document()

        result = await make_orchestrator(StubCascade(invoice_text)).process_document(document.id, test_org_id)

        assert _statuses(result)[-1] == (METADATA, StageStatus.FAILED)
        assert document.metadata_error == "IntegrityError: check constraint"
        assert document.classification_status == "completed"
        assert document.chunking_status == "pending"

    async def test_stored_processing_level(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document(processing_level=2)

        result = await make_orchestrator(StubCascade(invoice_text)).process_document(document.id, test_org_id)

        assert [o.stage for o in result.outcomes] == [EXTRACTION, CLASSIFICATION]
        assert document.metadata_status == "pending"
        assert document.processing_completed_at is not None

    async def test_processing_level_override(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document()

        result = await make_orchestrator(StubCascade(invoice_text)).process_document(
            document.id, test_org_id, processing_level=1,
        )

        assert [o.stage for o in result.outcomes] == [EXTRACTION]
        assert document.processing_level == 1

    async def test_stage_left_processing_blocks_automatic_run(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document(extraction_status="processing")
        cascade = StubCascade(invoice_text)

        result = await make_orchestrator(cascade).process_document(document.id, test_org_id)

        assert result.outcomes == []
        assert cascade.filenames == []

    async def test_missing_stored_file(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document(storage_key=None)

        await make_orchestrator(StubCascade(invoice_text)).process_document(document.id, test_org_id)

        assert document.extraction_error == "No stored file to extract from"

    @pytest.mark.parametrize("error, message", [
        (RuntimeError("boom"), "RuntimeError: boom"),
        (asyncio.TimeoutError(), "extraction timed out"),
    ])
    async def test_handler_exception_fails_stage(self, make_orchestrator, make_document, test_org_id, error, message):
        document = make_document()

        result = await make_orchestrator(StubCascade(error=error)).process_document(document.id, test_org_id)

        assert _statuses(result) == [(EXTRACTION, StageStatus.FAILED)]
        assert document.extraction_error == message

    async def test_operational_error_propagates(self, make_orchestrator, make_document, test_org_id):
        document = make_document()
        cascade = StubCascade(error=OperationalError("SELECT 1", {}, Exception("server closed the connection")))

        with pytest.raises(OperationalError):
            await make_orchestrator(cascade).process_document(document.id, test_org_id)

    async def test_other_organization_cannot_see_the_document(self, make_orchestrator, make_document, other_org_id, invoice_text):
        document = make_document()

        result = await make_orchestrator(StubCascade(invoice_text)).process_document(document.id, other_org_id)

        assert result.success is False
        assert result.error == f"Document not found: {document.id}"
        assert document.extraction_status == "pending"


# ─────────────────────────────────────────────────────────────────────────────
# Re-runs, recorded extraction, siblings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestRerunAndChildren:

    async def test_rerun_cascades_to_later_stages(self, make_orchestrator, make_document, store, test_org_id, invoice_text):
        orchestrator = make_orchestrator(StubCascade(invoice_text))
        document = make_document()
        await orchestrator.process_document(document.id, test_org_id)

        result = await orchestrator.rerun_stage(document.id, test_org_id, CLASSIFICATION)

        assert _statuses(result) == [
            (CLASSIFICATION, StageStatus.COMPLETED),
            (METADATA, StageStatus.COMPLETED),
            (CHUNKING, StageStatus.COMPLETED),
        ]
        first, second = store.classifications
        assert first.is_current is False
        assert first.superseded_by == second.id
        assert second.is_current is True

    async def test_rerun_after_failure(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document()
        await make_orchestrator(StubCascade(error="timed out after 120s")).process_document(document.id, test_org_id)

        result = await make_orchestrator(StubCascade(invoice_text)).rerun_stage(document.id, test_org_id, EXTRACTION)

        assert result.success is True
        assert len(result.outcomes) == 4
        assert document.extraction_error is None

    async def test_rerun_of_stage_left_processing(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document(extraction_status="processing")

        result = await make_orchestrator(StubCascade(invoice_text)).rerun_stage(document.id, test_org_id, EXTRACTION)

        assert result.success is True
        assert [o.stage for o in result.outcomes] == [EXTRACTION, CLASSIFICATION, METADATA, CHUNKING]
        assert document.extraction_status == "completed"
        assert document.processing_completed_at is not None

    async def test_rerun_cascades_through_later_stage_left_processing(self, make_orchestrator, make_document, test_org_id, invoice_text):
        orchestrator = make_orchestrator(StubCascade(invoice_text))
        document = make_document()
        await orchestrator.process_document(document.id, test_org_id)
        document.metadata_status = "processing"
        document.chunking_status = "pending"

        result = await orchestrator.rerun_stage(document.id, test_org_id, CLASSIFICATION)

        assert _statuses(result) == [
            (CLASSIFICATION, StageStatus.COMPLETED),
            (METADATA, StageStatus.COMPLETED),
            (CHUNKING, StageStatus.COMPLETED),
        ]
        assert document.metadata_status == "completed"
        assert document.chunking_status == "completed"

    async def test_rerun_requires_prerequisite(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document(extraction_status="failed")

        with pytest.raises(InvalidStageTransition):
            await make_orchestrator(StubCascade(invoice_text)).rerun_stage(document.id, test_org_id, CLASSIFICATION)

    async def test_rerun_of_disabled_stage(self, make_orchestrator, make_document, test_org_id, invoice_text):
        document = make_document(processing_level=2)

        with pytest.raises(InvalidStageTransition, match="not enabled"):
            await make_orchestrator(StubCascade(invoice_text)).rerun_stage(document.id, test_org_id, CHUNKING)

    async def test_recorded_extraction_then_continue(self, make_orchestrator, make_document, test_org_id, minutes_text):
        cascade = StubCascade()
        orchestrator = make_orchestrator(cascade)
        document = make_document("2_acta_Junta-ordinaria.txt", storage_key=None, mime_type="text/plain")

        outcome = await orchestrator.record_extraction(
            document.id, test_org_id,
            ExtractionResult(success=True, text=minutes_text, method="multi-document-fragment", confidence=0.85),
        )
        result = await orchestrator.process_document(document.id, test_org_id)

        assert outcome.status == StageStatus.COMPLETED
        assert document.extraction_method == "multi-document-fragment"
        assert [o.stage for o in result.outcomes] == [CLASSIFICATION, METADATA, CHUNKING]
        assert document.document_type == "acta"
        assert cascade.filenames == []

    async def test_process_children(self, make_orchestrator, make_document, test_org_id, invoice_text):
        cascade = StubCascade(invoice_text)
        first = make_document("Factura_1.pdf")
        second = make_document("Factura_2.pdf")

        results = await make_orchestrator(cascade).process_children([first.id, second.id], test_org_id)

        assert list(results) == [first.id, second.id]
        assert all(r.success for r in results.values())
        assert cascade.filenames == ["Factura_1.pdf", "Factura_2.pdf"]
