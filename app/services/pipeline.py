"""
Pipeline Orchestrator
═════════════════════

Drives one document through the four ingestion stages and owns every
retry / skip decision.

    processing_level   stages run
    ────────────────   ─────────────────────────────────────────────
          1            extraction
          2            extraction → classification
          3            extraction → classification → metadata
          4            extraction → classification → metadata → chunking

Stage state machine (StageState)
────────────────────────────────

    pending ──► processing ──► completed
       │             ├───────► failed
       └──► skipped  └───────► skipped

    completed / failed / skipped ──► processing   only with manual=True
                                                  (explicit re-run)

  Gate: a stage may enter processing or completed only when the previous
  enabled stage is completed or skipped. A failed stage halts the run;
  earlier stages keep their state.

Run model
─────────
  - The document row is re-read before each stage; each stage opens its
    own short session through the injected session factory.
  - Stage exceptions and timeouts become `failed` with the error recorded.
  - Systemic database errors (OperationalError, InterfaceError) propagate
    to the caller (Celery retries the task).
  - Unsupported or unknown document types: metadata and chunking `skipped`.
  - Tokens and elapsed time accumulate on the document row.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings as default_settings
from app.extraction.factory import ExtractorFactory
from app.llm.gateway import LLMGateway
from app.models.documents import Document
from app.processing.chunking import ParagraphChunker
from app.processing.classifier import DocumentClassifier
from app.processing.extractor import ExtractionResult, TextExtractionCascade, build_cascade
from app.schemas.documents import (
    STAGE_ORDER,
    SUPPORTED_TYPES,
    DocumentType,
    PipelineStage,
    StageStatus,
)
from app.services.persistence import PersistenceService
from app.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[UUID], AbstractAsyncContextManager[AsyncSession]]
StorageFactory = Callable[[UUID], S3StorageService]

_SYSTEMIC_DB_ERRORS = (OperationalError, InterfaceError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Stage state machine
# ---------------------------------------------------------------------------

class InvalidStageTransition(ValueError):
    """A stage status change that the state machine does not allow."""


_ALLOWED: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING:    frozenset({StageStatus.PROCESSING, StageStatus.SKIPPED}),
    StageStatus.PROCESSING: frozenset({StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED}),
    StageStatus.COMPLETED:  frozenset(),
    StageStatus.FAILED:     frozenset(),
    StageStatus.SKIPPED:    frozenset(),
}

_MANUAL: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PROCESSING: frozenset({StageStatus.PROCESSING}),
    StageStatus.COMPLETED:  frozenset({StageStatus.PROCESSING}),
    StageStatus.FAILED:     frozenset({StageStatus.PROCESSING}),
    StageStatus.SKIPPED:    frozenset({StageStatus.PROCESSING}),
}

_GATED = frozenset({StageStatus.PROCESSING, StageStatus.COMPLETED})
_DONE = frozenset({StageStatus.COMPLETED, StageStatus.SKIPPED})


@dataclass
class StageState:
    """In-memory view of the four stage columns; flattened only via as_columns()."""
    statuses:         dict[PipelineStage, StageStatus]
    processing_level: int
    errors:           dict[PipelineStage, Optional[str]] = field(default_factory=dict)
    completed_at:     dict[PipelineStage, datetime] = field(default_factory=dict)
    _dirty:           set[PipelineStage] = field(default_factory=set, repr=False)

    @classmethod
    def new(cls, processing_level: int = 4) -> "StageState":
        return cls(
            statuses={stage: StageStatus.PENDING for stage in STAGE_ORDER},
            processing_level=processing_level,
        )

    @classmethod
    def from_document(cls, document: Document) -> "StageState":
        return cls(
            statuses={
                stage: StageStatus(getattr(document, f"{stage.value}_status"))
                for stage in STAGE_ORDER
            },
            processing_level=document.processing_level,
            errors={stage: getattr(document, f"{stage.value}_error") for stage in STAGE_ORDER},
        )

    def status(self, stage: PipelineStage) -> StageStatus:
        return self.statuses[stage]

    def enabled(self, stage: PipelineStage) -> bool:
        return STAGE_ORDER.index(stage) + 1 <= self.processing_level

    def prerequisite_satisfied(self, stage: PipelineStage) -> bool:
        """True when the previous enabled stage is completed or skipped (or there is none)."""
        index = STAGE_ORDER.index(stage)
        for previous in reversed(STAGE_ORDER[:index]):
            if self.enabled(previous):
                return self.statuses[previous] in _DONE
        return True

    def transition(
        self,
        stage:  PipelineStage,
        new:    StageStatus,
        error:  Optional[str] = None,
        manual: bool = False,
    ) -> None:
        current = self.statuses[stage]
        allowed = _ALLOWED[current] | (_MANUAL.get(current, frozenset()) if manual else frozenset())
        if new not in allowed:
            raise InvalidStageTransition(
                f"{stage.value}: {current.value} → {new.value} not allowed"
                + ("" if manual else " without a manual re-run")
            )
        if new in _GATED and not self.prerequisite_satisfied(stage):
            raise InvalidStageTransition(
                f"{stage.value}: prerequisite stage not completed or skipped"
            )

        self.statuses[stage] = new
        self._dirty.add(stage)
        if new == StageStatus.PROCESSING:
            self.errors[stage] = None
        elif new == StageStatus.FAILED:
            self.errors[stage] = error or "Stage failed"
        elif new == StageStatus.COMPLETED:
            self.errors[stage] = None
            self.completed_at[stage] = _utcnow()
        else:
            self.errors[stage] = error

    def next_stage(self) -> Optional[PipelineStage]:
        """First enabled, pending stage whose gate is open; None when nothing can run."""
        for stage in STAGE_ORDER:
            if not self.enabled(stage):
                return None
            status = self.statuses[stage]
            if status in _DONE:
                continue
            if status == StageStatus.PENDING and self.prerequisite_satisfied(stage):
                return stage
            return None
        return None

    def is_finished(self) -> bool:
        return all(
            self.statuses[s] in _DONE for s in STAGE_ORDER if self.enabled(s)
        )

    def as_columns(self) -> dict[str, Any]:
        columns: dict[str, Any] = {}
        for stage in self._dirty:
            columns[f"{stage.value}_status"] = self.statuses[stage].value
            columns[f"{stage.value}_error"] = self.errors.get(stage)
            if stage in self.completed_at:
                columns[f"{stage.value}_completed_at"] = self.completed_at[stage]
        return columns

    def all_columns(self) -> dict[str, Any]:
        """Every stage column; used when creating a document row."""
        self._dirty.update(STAGE_ORDER)
        columns = self.as_columns()
        columns["processing_level"] = self.processing_level
        return columns


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class StageOutcome:
    stage:      PipelineStage
    status:     StageStatus
    error:      Optional[str] = None
    elapsed_ms: int = 0
    tokens:     int = 0


@dataclass
class PipelineRunResult:
    document_id:   UUID
    outcomes:      list[StageOutcome] = field(default_factory=list)
    document_type: Optional[str] = None
    error:         Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and all(o.status != StageStatus.FAILED for o in self.outcomes)


@dataclass
class _StageReport:
    """What a stage handler hands back to the run loop."""
    status:  StageStatus
    error:   Optional[str] = None
    tokens:  int = 0
    columns: dict[str, Any] = field(default_factory=dict)


class DocumentGone(LookupError):
    pass


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineOrchestrator:
    """
    Usage:
        orchestrator = PipelineOrchestrator(
            session_factory=tenant_session,
            cascade=build_cascade(gateway),
            classifier=DocumentClassifier(gateway),
            extractor_factory=ExtractorFactory(gateway),
            chunker=ParagraphChunker(),
            storage_factory=S3StorageService,
        )
        result = await orchestrator.process_document(document_id, organization_id)
    """

    def __init__(
        self,
        session_factory:   SessionFactory,
        cascade:           TextExtractionCascade,
        classifier:        DocumentClassifier,
        extractor_factory: ExtractorFactory,
        chunker:           ParagraphChunker,
        storage_factory:   StorageFactory | None = None,
        config:            Settings | None = None,
    ) -> None:
        self._sessions   = session_factory
        self._cascade    = cascade
        self._classifier = classifier
        self._extractors = extractor_factory
        self._chunker    = chunker
        self._storage    = storage_factory
        self._config     = config or default_settings

        self._handlers: dict[PipelineStage, Callable[[Document], Awaitable[_StageReport]]] = {
            PipelineStage.EXTRACTION:     self._run_extraction,
            PipelineStage.CLASSIFICATION: self._run_classification,
            PipelineStage.METADATA:       self._run_metadata,
            PipelineStage.CHUNKING:       self._run_chunking,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_document(
        self,
        document_id:      UUID,
        organization_id:  UUID,
        processing_level: int | None = None,
    ) -> PipelineRunResult:
        """Run every pending, enabled stage in order until done, failed or blocked."""
        result = PipelineRunResult(document_id=document_id)

        async with self._sessions(organization_id) as session:
            store = PersistenceService(session)
            document = await store.get_document(document_id, organization_id)
            if document is None:
                result.error = f"Document not found: {document_id}"
                return result
            start_columns: dict[str, Any] = {}
            if processing_level is not None and processing_level != document.processing_level:
                start_columns["processing_level"] = processing_level
            if document.processing_started_at is None:
                start_columns["processing_started_at"] = _utcnow()
            if start_columns:
                await store.apply_stage_state(document_id, organization_id, start_columns)

        logger.info(
            "Pipeline | start | doc=%s org=%s level=%s",
            document_id, organization_id, processing_level or document.processing_level,
        )

        while True:
            document, state = await self._load(document_id, organization_id)
            if document is None:
                result.error = f"Document not found: {document_id}"
                break
            result.document_type = document.document_type
            stage = state.next_stage()
            if stage is None:
                break
            outcome = await self._run_stage(stage, document, state)
            result.outcomes.append(outcome)
            if outcome.status == StageStatus.FAILED:
                break

        await self._finish(document_id, organization_id, result)
        return result

    async def rerun_stage(
        self,
        document_id:     UUID,
        organization_id: UUID,
        stage:           PipelineStage,
    ) -> PipelineRunResult:
        """
        Explicit re-run of `stage`. Every later enabled stage is re-run after
        it, since its input may have changed.

        Raises:
            InvalidStageTransition: stage not enabled, or its prerequisite is not done.
        """
        result = PipelineRunResult(document_id=document_id)
        document, state = await self._load(document_id, organization_id)
        if document is None:
            result.error = f"Document not found: {document_id}"
            return result
        if not state.enabled(stage):
            raise InvalidStageTransition(
                f"{stage.value} is not enabled at processing_level {state.processing_level}"
            )
        if not state.prerequisite_satisfied(stage):
            raise InvalidStageTransition(f"{stage.value}: prerequisite stage not completed or skipped")

        logger.info("Pipeline | manual re-run | doc=%s stage=%s", document_id, stage.value)
        for current in STAGE_ORDER[STAGE_ORDER.index(stage):]:
            document, state = await self._load(document_id, organization_id)
            if document is None:
                result.error = f"Document not found: {document_id}"
                break
            if not state.enabled(current):
                break
            outcome = await self._run_stage(current, document, state, manual=True)
            result.outcomes.append(outcome)
            result.document_type = document.document_type
            if outcome.status == StageStatus.FAILED:
                break

        await self._finish(document_id, organization_id, result)
        return result

    async def record_extraction(
        self,
        document_id:       UUID,
        organization_id:   UUID,
        extraction_result: ExtractionResult,
    ) -> StageOutcome:
        """
        Record an extraction produced outside the cascade run (bundle
        children get the analyzer's fragment), then leave the document
        ready to continue from classification.
        """
        document, state = await self._load(document_id, organization_id)
        if document is None:
            return StageOutcome(
                PipelineStage.EXTRACTION, StageStatus.FAILED, f"Document not found: {document_id}",
            )

        state.transition(PipelineStage.EXTRACTION, StageStatus.PROCESSING)
        report = self._extraction_report(extraction_result)
        state.transition(PipelineStage.EXTRACTION, report.status, report.error)
        await self._save(document_id, organization_id, state, report.columns)
        return StageOutcome(PipelineStage.EXTRACTION, report.status, report.error)

    async def process_children(
        self,
        children:        list[UUID],
        organization_id: UUID,
    ) -> dict[UUID, PipelineRunResult]:
        """Sibling documents run one after another, paced by ai_call_delay_seconds."""
        results: dict[UUID, PipelineRunResult] = {}
        for index, child_id in enumerate(children):
            if index and self._config.ai_call_delay_seconds > 0:
                await asyncio.sleep(self._config.ai_call_delay_seconds)
            results[child_id] = await self.process_document(child_id, organization_id)
        return results

    # ------------------------------------------------------------------
    # Run loop internals
    # ------------------------------------------------------------------

    async def _load(
        self, document_id: UUID, organization_id: UUID,
    ) -> tuple[Document | None, StageState]:
        async with self._sessions(organization_id) as session:
            document = await PersistenceService(session).get_document(document_id, organization_id)
        if document is None:
            return None, StageState.new()
        return document, StageState.from_document(document)

    async def _save(
        self,
        document_id:     UUID,
        organization_id: UUID,
        state:           StageState,
        extra:           dict[str, Any] | None = None,
        tokens:          int = 0,
        elapsed_ms:      int = 0,
    ) -> None:
        async with self._sessions(organization_id) as session:
            store = PersistenceService(session)
            found = await store.apply_stage_state(
                document_id, organization_id, {**(extra or {}), **state.as_columns()},
            )
            if not found:
                raise DocumentGone(f"Document not found: {document_id}")
            await store.add_usage(document_id, organization_id, tokens, elapsed_ms)

    async def _run_stage(
        self,
        stage:    PipelineStage,
        document: Document,
        state:    StageState,
        manual:   bool = False,
    ) -> StageOutcome:
        doc_id, org_id = document.id, document.organization_id
        state.transition(stage, StageStatus.PROCESSING, manual=manual)
        try:
            await self._save(doc_id, org_id, state)
        except DocumentGone as exc:
            return StageOutcome(stage, StageStatus.FAILED, str(exc))

        t0 = time.monotonic()
        try:
            report = await self._handlers[stage](document)
        except _SYSTEMIC_DB_ERRORS:
            raise
        except asyncio.TimeoutError:
            report = _StageReport(StageStatus.FAILED, f"{stage.value} timed out")
        except DocumentGone as exc:
            report = _StageReport(StageStatus.FAILED, str(exc))
        except Exception as exc:
            logger.exception("Pipeline | stage crashed | doc=%s stage=%s", doc_id, stage.value)
            report = _StageReport(StageStatus.FAILED, f"{type(exc).__name__}: {exc}")
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        state.transition(stage, report.status, report.error)
        try:
            await self._save(doc_id, org_id, state, report.columns, report.tokens, elapsed_ms)
        except DocumentGone as exc:
            return StageOutcome(stage, StageStatus.FAILED, str(exc), elapsed_ms, report.tokens)

        log = logger.warning if report.status == StageStatus.FAILED else logger.info
        log(
            "Pipeline | stage=%s status=%s doc=%s elapsed_ms=%d tokens=%d error=%s",
            stage.value, report.status.value, doc_id, elapsed_ms, report.tokens, report.error or "-",
        )
        return StageOutcome(stage, report.status, report.error, elapsed_ms, report.tokens)

    async def _finish(self, document_id: UUID, organization_id: UUID, result: PipelineRunResult) -> None:
        document, state = await self._load(document_id, organization_id)
        if document is None:
            return
        if state.is_finished() and document.processing_completed_at is None:
            async with self._sessions(organization_id) as session:
                await PersistenceService(session).apply_stage_state(
                    document_id, organization_id, {"processing_completed_at": _utcnow()},
                )
        logger.info(
            "Pipeline | end | doc=%s success=%s stages=%s",
            document_id, result.success,
            ",".join(f"{o.stage.value}:{o.status.value}" for o in result.outcomes) or "-",
        )

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def _run_extraction(self, document: Document) -> _StageReport:
        if not document.storage_key:
            return _StageReport(StageStatus.FAILED, "No stored file to extract from")
        if self._storage is None:
            return _StageReport(StageStatus.FAILED, "Storage not configured")

        storage = self._storage(document.organization_id)
        try:
            file_bytes = await storage.get_document(document.storage_key)
        except FileNotFoundError as exc:
            return _StageReport(StageStatus.FAILED, str(exc))

        extraction = await self._cascade.extract(
            file_bytes, document.original_filename or document.filename,
        )
        return self._extraction_report(extraction)

    def _extraction_report(self, extraction: ExtractionResult) -> _StageReport:
        columns = {
            "extraction_method":     extraction.method,
            "extraction_confidence": extraction.confidence,
            "page_count":            extraction.page_count,
        }
        if not extraction.success or extraction.text_length < self._config.min_text_length:
            return _StageReport(
                StageStatus.FAILED,
                extraction.error or "Extracted text below minimum length",
                extraction.tokens_used,
                columns,
            )
        columns.update(
            extracted_text=extraction.text,
            text_length=extraction.text_length,
        )
        return _StageReport(StageStatus.COMPLETED, None, extraction.tokens_used, columns)

    async def _run_classification(self, document: Document) -> _StageReport:
        result = await self._classifier.classify(document.filename, document.extracted_text or "")

        async with self._sessions(document.organization_id) as session:
            await PersistenceService(session).record_classification(
                document.id,
                document.organization_id,
                document_type=result.document_type.value,
                confidence=result.confidence,
                classification_method=result.method,
                reasoning=result.reasoning,
                processing_time_ms=result.processing_time_ms,
                tokens_used=result.tokens_used,
                input_sample_length=result.input_sample_length,
                filename_analyzed=document.filename,
                raw_response=result.raw_response,
            )

        return _StageReport(
            StageStatus.COMPLETED,
            tokens=result.tokens_used,
            columns={
                "document_type": result.document_type.value,
                "needs_review":  result.needs_review,
            },
        )

    async def _run_metadata(self, document: Document) -> _StageReport:
        doc_type = DocumentType.parse(document.document_type)
        extractor = self._extractors.get_extractor(doc_type) if doc_type in SUPPORTED_TYPES else None
        if extractor is None:
            return _StageReport(
                StageStatus.SKIPPED, f"No extractor for type '{document.document_type}'",
            )

        outcome = await extractor.process_metadata(str(document.id), document.extracted_text or "")
        if not outcome.success:
            return _StageReport(StageStatus.FAILED, outcome.error, outcome.tokens_used)

        async with self._sessions(document.organization_id) as session:
            stored = await PersistenceService(session).upsert_with_organization(
                extractor.table_name, document.id, outcome.data, outcome.method,
            )
        if not stored.success:
            return _StageReport(StageStatus.FAILED, stored.error, outcome.tokens_used)

        return _StageReport(
            StageStatus.COMPLETED,
            tokens=outcome.tokens_used,
            columns={"doc_metadata": {
                **(document.doc_metadata or {}),
                "extraction_agent":  extractor.agent_name,
                "extraction_method": outcome.method,
                "missing_required":  outcome.missing_required,
            }},
        )

    async def _run_chunking(self, document: Document) -> _StageReport:
        if DocumentType.parse(document.document_type) not in SUPPORTED_TYPES:
            return _StageReport(
                StageStatus.SKIPPED, f"Unsupported type '{document.document_type}'",
            )
        text = document.extracted_text or ""
        if not text.strip():
            return _StageReport(StageStatus.FAILED, "No text to chunk")

        loop = asyncio.get_running_loop()
        chunks = await loop.run_in_executor(None, self._chunker.chunk, text, str(document.id))

        async with self._sessions(document.organization_id) as session:
            count = await PersistenceService(session).replace_chunks(
                document.id, document.organization_id, chunks,
            )
        return _StageReport(StageStatus.COMPLETED, columns={"chunks_count": count})


def build_orchestrator(
    gateway:         LLMGateway | None,
    session_factory: SessionFactory,
    config:          Settings | None = None,
) -> PipelineOrchestrator:
    """Production wiring shared by the API and the worker."""
    config = config or default_settings
    return PipelineOrchestrator(
        session_factory=session_factory,
        cascade=build_cascade(gateway, config),
        classifier=DocumentClassifier(gateway, config),
        extractor_factory=ExtractorFactory(gateway, config),
        chunker=ParagraphChunker(config),
        storage_factory=S3StorageService,
        config=config,
    )
