"""
SQLAlchemy ORM Models — Documents, Classifications, Chunks & Audit Logs

Using SQLAlchemy mapped classes (2.x style) for full async support.

RLS note: Row-Level Security is enforced at the PostgreSQL level via the
app.current_tenant_id GUC set by db/session.py. Writes still stamp
organization_id explicitly so a row can never be created without an owner.

Schema: saas (set via __table_args__)

Pipeline columns
════════════════
Each document carries four independent stage columns. They are written only
through app.services.pipeline.StageState.as_columns(), which is where the
transition rules live.

    extraction_status ─► classification_status ─► metadata_status ─► chunking_status
          │                      │                       │                   │
     level ≥ 1              level ≥ 2               level ≥ 3           level ≥ 4
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import INET, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


_STAGE_STATUS_VALUES = "('pending', 'processing', 'completed', 'failed', 'skipped')"


def _stage_status_check(stage: str) -> CheckConstraint:
    return CheckConstraint(
        f"{stage}_status IN {_STAGE_STATUS_VALUES}",
        name=f"documents_{stage}_status_check",
    )


# ---------------------------------------------------------------------------
# Organization / Community: owned by the administration module, read here
# ---------------------------------------------------------------------------

class Organization(Base):
    """Tenant. Rows are managed outside this service."""

    __tablename__ = "organizations"
    __table_args__ = ({"schema": "saas"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Community(Base):
    """Sub-tenant scope a document may belong to (a homeowners' community)."""

    __tablename__ = "communities"
    __table_args__ = (
        Index("idx_communities_organization_id", "organization_id"),
        {"schema": "saas"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)


# ---------------------------------------------------------------------------
# Document model: saas.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded or derived file and its pipeline progress.

    Bundles: a multi-document upload is stored once as a parent with
    document_type='multidocumento' and processing_level=1. Each supported
    fragment becomes a child row with parent_document_id pointing back.

    Checksum (file_hash) is used for deduplication within a tenant:
        UNIQUE(organization_id, file_hash) prevents re-ingestion of identical files.
    """

    __tablename__ = "documents"
    __table_args__ = (
        _stage_status_check("extraction"),
        _stage_status_check("classification"),
        _stage_status_check("metadata"),
        _stage_status_check("chunking"),
        CheckConstraint(
            "processing_level BETWEEN 1 AND 4",
            name="documents_processing_level_check",
        ),
        UniqueConstraint("organization_id", "file_hash", name="uq_documents_org_hash"),
        Index("idx_documents_organization_id", "organization_id"),
        Index("idx_documents_community_id",    "organization_id", "community_id"),
        Index("idx_documents_parent_id",       "parent_document_id"),
        Index("idx_documents_type",            "organization_id", "document_type"),
        {"schema": "saas"},
    )

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Tenant scope: never supplied by the client; always taken from JWT
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    community_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.communities.id", ondelete="SET NULL"),
        nullable=True,
    )
    parent_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.documents.id", ondelete="CASCADE"),
        nullable=True,
        comment="Set on children materialized from a multi-document bundle",
    )
    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Identity-provider subject of the uploader",
    )

    # File reference
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    original_filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    storage_key: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="S3 object key: tenants/<org_id>/documents/<md5>.<ext>; NULL for children",
    )
    mime_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="MIME type detected server-side (never trusted from client Content-Type)",
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_hash: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="MD5 hex digest for tenant-scoped deduplication",
    )

    # Classification outcome
    document_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )

    # Extraction outcome
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extraction_method: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Stage gate
    processing_level: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=4, server_default="4",
    )

    # Per-stage state: see StageState for the transition rules
    extraction_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    extraction_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extraction_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    classification_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    classification_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    classification_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    metadata_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    metadata_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    chunking_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    chunking_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunking_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    chunks_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Accounting
    total_processing_time_ms: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0",
    )
    total_tokens_used: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0",
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Analyzer hints for children: suggested title, line range, analyzer confidence",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} org={self.organization_id} "
            f"type={self.document_type} level={self.processing_level} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Classification history: saas.document_classifications
# ---------------------------------------------------------------------------

class DocumentClassification(Base):
    """
    One row per classification attempt. Rows are never deleted: a newer
    attempt flips the previous row's is_current and links it via superseded_by.
    """

    __tablename__ = "document_classifications"
    __table_args__ = (
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="document_classifications_confidence_check",
        ),
        Index("idx_doc_classifications_document", "document_id", "is_current"),
        Index("idx_doc_classifications_org",      "organization_id"),
        {"schema": "saas"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.organizations.id", ondelete="CASCADE"),
        nullable=False,
    )

    document_type: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    classification_method: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="filename | text-analysis | ai-agent | fallback",
    )
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_sample_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    filename_analyzed: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_current: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true",
    )
    superseded_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.document_classifications.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Chunk model: saas.document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """One paragraph-level text chunk produced by the chunking stage."""

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
        Index("idx_document_chunks_org",         "organization_id"),
        {"schema": "saas"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str]     = mapped_column(Text, nullable=False)
    char_count: Mapped[int]  = mapped_column(Integer, nullable=False, default=0, server_default="0")
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    heading: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# AuditLog model: saas.audit_logs
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """
    Append-only audit trail.

    Written for every multi-document upload (including failures), bundle
    materialization and manual stage re-runs.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_organization_id", "organization_id"),
        Index("idx_audit_logs_user_id",         "user_id"),
        Index("idx_audit_logs_created_at",      "created_at"),
        {"schema": "saas"},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    action: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. document.multi_analyze, document.bundle_materialized, document.stage_rerun",
    )
    resource: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="e.g. document:<uuid>",
    )
    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    ip_address: Mapped[Optional[str]] = mapped_column(INET, nullable=True)

    success: Mapped[bool]  = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog id={self.id} org={self.organization_id} "
            f"action={self.action!r} success={self.success}>"
        )
