"""
Persistence Layer
═════════════════

All database writes of the ingestion pipeline go through PersistenceService.
It wraps one AsyncSession; the caller owns the transaction boundary
(`async with session.begin()` or tenant_session()).

Organization scoping
────────────────────
Structured records never take organization_id from the caller. The
service reads it from the owning document row, so a record can only land
in the organization that owns the document:

    insert/upsert_with_organization(table, document_id, data)
        1. SELECT organization_id FROM documents WHERE id = :document_id
              no row          → success=False "Document not found: <id>"
              no organization → success=False (tenant-scope violation)
        2. row = {document_id, organization_id, <typed columns>, payload=data}
        3. INSERT … / INSERT … ON CONFLICT (document_id) DO UPDATE

Error policy
────────────
Row-level errors (IntegrityError, DataError) are reported as
success=False; the stage that asked for the write marks itself failed.
Connectivity errors (OperationalError, InterfaceError) propagate because
no later stage could succeed either.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import Date, Numeric, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.documents import (
    AuditLog,
    Community,
    Document,
    DocumentChunk,
    DocumentClassification,
)
from app.models.extracted import EXTRACTED_TABLES, ExtractedRecordMixin
from app.processing.chunking import ChunkResult
from app.schemas.documents import STAGE_ORDER, PipelineStage, StageStatus

logger = logging.getLogger(__name__)

_ENVELOPE_COLUMNS = frozenset(
    {"id", "document_id", "organization_id", "payload", "extraction_method", "created_at", "updated_at"}
)


class TenantScopeError(RuntimeError):
    """A write would have crossed or lacked an organization boundary."""


@dataclass
class PersistenceResult:
    success:  bool
    error:    Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Row building
# ---------------------------------------------------------------------------

def _to_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def build_extracted_row(
    model:           type[ExtractedRecordMixin],
    document_id:     UUID,
    organization_id: UUID,
    data:            dict[str, Any],
    method:          str = "ai",
) -> dict[str, Any]:
    """Envelope + every typed column (None when absent from `data`); the whole dict goes to payload."""
    row: dict[str, Any] = {
        "document_id":       document_id,
        "organization_id":   organization_id,
        "payload":           data,
        "extraction_method": method,
    }
    for column in model.__table__.columns:
        if column.name in _ENVELOPE_COLUMNS:
            continue
        value = data.get(column.name)
        if isinstance(column.type, Date):
            value = _to_date(value)
        elif isinstance(column.type, Numeric):
            value = _to_decimal(value)
        elif value is not None and not isinstance(value, str):
            value = str(value)
        row[column.name] = value
    return row


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PersistenceService:
    """
    Usage:
        async with tenant_session(org_id) as session:
            store = PersistenceService(session)
            result = await store.upsert_with_organization("extracted_invoices", doc_id, data)
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Structured records
    # ------------------------------------------------------------------

    async def insert_with_organization(
        self, table: str, document_id: UUID, data: dict[str, Any], method: str = "ai",
    ) -> PersistenceResult:
        return await self._write(table, document_id, data, method, upsert=False)

    async def upsert_with_organization(
        self, table: str, document_id: UUID, data: dict[str, Any], method: str = "ai",
    ) -> PersistenceResult:
        return await self._write(table, document_id, data, method, upsert=True)

    async def _write(
        self,
        table:       str,
        document_id: UUID,
        data:        dict[str, Any],
        method:      str,
        upsert:      bool,
    ) -> PersistenceResult:
        t0 = time.monotonic()
        meta: dict[str, Any] = {"document_id": str(document_id), "table": table}

        model = EXTRACTED_TABLES.get(table)
        if model is None:
            return self._failed(f"Unknown table: {table}", meta, t0)

        # ── Step 1: resolve the owning organization ──
        owner = (await self._session.execute(
            select(Document.id, Document.organization_id).where(Document.id == document_id)
        )).first()
        if owner is None:
            return self._failed(f"Document not found: {document_id}", meta, t0)
        organization_id = owner.organization_id
        if organization_id is None:
            return self._failed(
                str(TenantScopeError(f"Document {document_id} has no organization")), meta, t0,
            )

        # ── Step 2: build the row ──
        row = build_extracted_row(model, document_id, organization_id, data, method)
        stmt = pg_insert(model).values(**row)
        if upsert:
            updatable = {k: stmt.excluded[k] for k in row if k != "document_id"}
            updatable["updated_at"] = func.now()
            stmt = stmt.on_conflict_do_update(index_elements=["document_id"], set_=updatable)

        # ── Step 3: write ──
        try:
            async with self._session.begin_nested():
                await self._session.execute(stmt)
        except (IntegrityError, DataError) as exc:
            logger.warning(
                "Persistence | %s rejected | table=%s doc=%s error=%s",
                "upsert" if upsert else "insert", table, document_id, exc.orig,
            )
            return self._failed(f"{type(exc).__name__}: {exc.orig}", meta, t0)

        meta["organization_id"] = str(organization_id)
        meta["processing_time_ms"] = int((time.monotonic() - t0) * 1000)
        logger.info(
            "Persistence | %s ok | table=%s doc=%s org=%s",
            "upsert" if upsert else "insert", table, document_id, organization_id,
        )
        return PersistenceResult(success=True, metadata=meta)

    @staticmethod
    def _failed(error: str, meta: dict[str, Any], t0: float) -> PersistenceResult:
        meta["processing_time_ms"] = int((time.monotonic() - t0) * 1000)
        logger.warning("Persistence | %s | table=%s", error, meta.get("table"))
        return PersistenceResult(success=False, error=error, metadata=meta)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: UUID, organization_id: UUID) -> Document | None:
        return await self._session.scalar(
            select(Document).where(
                Document.id == document_id,
                Document.organization_id == organization_id,
            )
        )

    async def create_document(self, **values: Any) -> Document:
        document = Document(**values)
        self._session.add(document)
        await self._session.flush()
        return document

    async def find_duplicate(self, organization_id: UUID, file_hash: str) -> Document | None:
        return await self._session.scalar(
            select(Document).where(
                Document.organization_id == organization_id,
                Document.file_hash == file_hash,
            )
        )

    async def find_community(self, community_id: UUID, organization_id: UUID) -> Community | None:
        return await self._session.scalar(
            select(Community).where(
                Community.id == community_id,
                Community.organization_id == organization_id,
            )
        )

    async def list_documents(
        self,
        organization_id: UUID,
        document_type:   str | None = None,
        community_id:    UUID | None = None,
        limit:           int = 50,
        offset:          int = 0,
    ) -> tuple[list[Document], int]:
        filters = [Document.organization_id == organization_id]
        if document_type:
            filters.append(Document.document_type == document_type)
        if community_id:
            filters.append(Document.community_id == community_id)

        total = await self._session.scalar(select(func.count()).select_from(Document).where(*filters))
        rows = await self._session.scalars(
            select(Document).where(*filters)
            .order_by(Document.created_at.desc())
            .limit(limit).offset(offset)
        )
        return list(rows), int(total or 0)

    async def apply_stage_state(
        self, document_id: UUID, organization_id: UUID, columns: dict[str, Any],
    ) -> bool:
        """Write flattened stage columns; False when the document disappeared."""
        result = await self._session.execute(
            update(Document)
            .where(Document.id == document_id, Document.organization_id == organization_id)
            .values(**columns, updated_at=func.now())
        )
        return bool(result.rowcount)

    async def add_usage(
        self, document_id: UUID, organization_id: UUID, tokens: int = 0, elapsed_ms: int = 0,
    ) -> None:
        if not tokens and not elapsed_ms:
            return
        await self._session.execute(
            update(Document)
            .where(Document.id == document_id, Document.organization_id == organization_id)
            .values(
                total_tokens_used=Document.total_tokens_used + tokens,
                total_processing_time_ms=Document.total_processing_time_ms + elapsed_ms,
            )
        )

    # ------------------------------------------------------------------
    # Classification history
    # ------------------------------------------------------------------

    async def record_classification(
        self,
        document_id:     UUID,
        organization_id: UUID,
        **values:        Any,
    ) -> DocumentClassification:
        """Insert the new current classification and supersede the previous one."""
        previous = list(await self._session.scalars(
            select(DocumentClassification).where(
                DocumentClassification.document_id == document_id,
                DocumentClassification.is_current.is_(True),
            )
        ))
        record = DocumentClassification(
            document_id=document_id,
            organization_id=organization_id,
            is_current=True,
            **values,
        )
        self._session.add(record)
        await self._session.flush()
        for old in previous:
            old.is_current = False
            old.superseded_by = record.id
        return record

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def replace_chunks(
        self, document_id: UUID, organization_id: UUID, chunks: list[ChunkResult],
    ) -> int:
        await self._session.execute(
            delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
        )
        self._session.add_all(
            DocumentChunk(
                organization_id=organization_id,
                document_id=document_id,
                chunk_index=c.chunk_index,
                content=c.content,
                char_count=c.char_count,
                page_number=c.page_number,
                heading=c.heading or None,
            )
            for c in chunks
        )
        await self._session.flush()
        return len(chunks)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_pipeline_status(self, document_id: UUID, organization_id: UUID) -> dict[str, Any] | None:
        document = await self.get_document(document_id, organization_id)
        if document is None:
            return None
        return pipeline_status(document)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def write_audit_log(
        self,
        organization_id: UUID,
        action:          str,
        user_id:         UUID | None = None,
        resource:        str | None = None,
        metadata:        dict[str, Any] | None = None,
        ip_address:      str | None = None,
        success:         bool = True,
    ) -> None:
        self._session.add(AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            resource=resource,
            doc_metadata=metadata or {},
            ip_address=ip_address,
            success=success,
        ))
        await self._session.flush()


def pipeline_status(document: Document) -> dict[str, Any]:
    """
    Per-stage summary of a document row.

    Only stages enabled by processing_level are counted. overall_status is
    failed if any enabled stage failed, processing while any is pending or
    processing, completed otherwise.
    """
    completed: list[PipelineStage] = []
    pending:   list[PipelineStage] = []
    failed:    list[PipelineStage] = []
    errors:    dict[str, str] = {}

    for level, stage in enumerate(STAGE_ORDER, start=1):
        status = StageStatus(getattr(document, f"{stage.value}_status"))
        error = getattr(document, f"{stage.value}_error")
        if error:
            errors[stage.value] = error
        if level > document.processing_level:
            continue
        if status in (StageStatus.COMPLETED, StageStatus.SKIPPED):
            completed.append(stage)
        elif status == StageStatus.FAILED:
            failed.append(stage)
        else:
            pending.append(stage)

    if failed:
        overall = "failed"
    elif pending:
        overall = "processing"
    else:
        overall = "completed"

    return {
        "document_id":           document.id,
        "filename":              document.filename,
        "document_type":         document.document_type,
        "processing_level":      document.processing_level,
        "extraction_status":     document.extraction_status,
        "classification_status": document.classification_status,
        "metadata_status":       document.metadata_status,
        "chunking_status":       document.chunking_status,
        "completed_steps":       completed,
        "pending_steps":         pending,
        "failed_steps":          failed,
        "overall_status":        overall,
        "errors":                errors,
        "needs_review":          bool(document.needs_review),
        "chunks_count":          document.chunks_count or 0,
        "parent_document_id":    document.parent_document_id,
        "updated_at":            document.updated_at,
    }
