"""
Document Ingestion — Enums and Pydantic Request/Response Schemas

Covers:
  - The closed document-type set and the per-stage status enum
  - POST /api/v1/documents/multi-analyze response (camelCase on the wire)
  - GET  /api/v1/documents/{id}/status
  - All structured error bodies (400, 401, 403, 404, 409, 413, 422, 500, 503)

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - organization_id is taken from the JWT, never from the form.
  - All timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Closed document-type set
# ---------------------------------------------------------------------------

class DocumentType(str, Enum):
    """
    Every type the pipeline knows about. Only the first seven have a
    structured extractor; MULTIDOCUMENT marks an unsplit bundle parent and
    UNKNOWN is the classifier's low-confidence default.
    """
    ACTA        = "acta"          # minutes
    FACTURA     = "factura"       # invoice
    CONTRATO    = "contrato"      # contract
    ALBARAN     = "albaran"       # delivery note
    COMUNICADO  = "comunicado"    # communication / notice
    ESCRITURA   = "escritura"     # property deed
    PRESUPUESTO = "presupuesto"   # budget / quote
    MULTIDOCUMENT = "multidocumento"
    UNKNOWN     = "unknown"

    @classmethod
    def parse(cls, value: Any) -> Optional["DocumentType"]:
        """Return the member for `value`, or None when it is outside the set."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


SUPPORTED_TYPES: frozenset[DocumentType] = frozenset(
    {
        DocumentType.ACTA,
        DocumentType.FACTURA,
        DocumentType.CONTRATO,
        DocumentType.ALBARAN,
        DocumentType.COMUNICADO,
        DocumentType.ESCRITURA,
        DocumentType.PRESUPUESTO,
    }
)


# ---------------------------------------------------------------------------
# Pipeline state machine
# ---------------------------------------------------------------------------

class PipelineStage(str, Enum):
    EXTRACTION     = "extraction"
    CLASSIFICATION = "classification"
    METADATA       = "metadata"
    CHUNKING       = "chunking"


STAGE_ORDER: tuple[PipelineStage, ...] = (
    PipelineStage.EXTRACTION,
    PipelineStage.CLASSIFICATION,
    PipelineStage.METADATA,
    PipelineStage.CHUNKING,
)


class StageStatus(str, Enum):
    """
    Maps to saas.documents.<stage>_status.
    Transitions: pending → processing → completed | failed | skipped
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    SKIPPED    = "skipped"


# ---------------------------------------------------------------------------
# Allowed MIME types: enforced before touching S3
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
        "text/plain",
        "text/markdown",
    }
)

ALLOWED_EXTENSIONS: frozenset[str] = frozenset({".pdf", ".docx", ".txt", ".md"})


# ---------------------------------------------------------------------------
# multi-analyze response: camelCase on the wire
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DetectedDocumentOut(_CamelModel):
    type:            str
    confidence:      float = Field(..., ge=0.0, le=1.0)
    is_supported:    bool
    suggested_title: str
    description:     str = ""
    keywords:        list[str] = Field(default_factory=list)
    start_line:      int
    end_line:        int
    start_marker:    Optional[str] = None
    end_marker:      Optional[str] = None
    text_length:     int = 0
    text_fragment:   str = ""


class SeparatedFileOut(_CamelModel):
    filename: str
    type:     str
    title:    str
    lines:    str


class SeparationOut(_CamelModel):
    output_files: list[str] = Field(default_factory=list)
    output_path:  str
    log_file:     Optional[str] = None
    text_files:   list[SeparatedFileOut] = Field(default_factory=list)
    summary:      dict[str, Any] = Field(default_factory=dict)
    errors:       list[str] = Field(default_factory=list)


class StageOutcomeOut(_CamelModel):
    stage:  PipelineStage
    status: StageStatus
    error:  Optional[str] = None


class ChildDocumentOut(_CamelModel):
    id:       Optional[UUID] = None
    filename: str
    type:     str
    title:    str
    success:  bool = True
    pipeline: list[StageOutcomeOut] = Field(default_factory=list)
    error:    Optional[str] = None


class UploadOut(_CamelModel):
    success:                bool
    parent_document_id:     Optional[UUID] = None
    document_id:            Optional[UUID] = None   # set when the upload was a single document
    child_documents:        list[ChildDocumentOut] = Field(default_factory=list)
    total_children_created: int = 0
    community_name:         Optional[str] = None
    errors:                 list[str] = Field(default_factory=list)


class MultiAnalyzeResponse(_CamelModel):
    """Returned by POST /documents/multi-analyze — HTTP 200 even on partial child failures."""
    success:                 bool
    is_multi_document:       bool
    confidence:              float
    detected_documents:      list[DetectedDocumentOut] = Field(default_factory=list)
    extracted_text_length:   int = 0
    total_pages:             int = 0
    total_lines:             int = 0
    extraction_method:       str
    supported_documents:     int = 0
    unsupported_documents:   int = 0
    text_truncated:          bool = False
    max_supported_length:    int
    analysis_details:        Optional[str] = None
    error:                   Optional[str] = None
    separation:              Optional[SeparationOut] = None
    upload:                  Optional[UploadOut] = None
    output_path:             str
    report_file:             Optional[str] = None
    original_filename:       str
    original_file_size:      int
    timestamp:               datetime


class SeparatedDocumentIn(_CamelModel):
    type:            str
    suggested_title: str = ""
    text_fragment:   str = Field(..., min_length=1)
    confidence:      float = Field(0.0, ge=0.0, le=1.0)
    start_line:      int = 0
    end_line:        int = 0


class ProcessSeparatedRequest(_CamelModel):
    """POST /documents/process-separated — fragments reviewed by a user, sent back for processing."""
    documents:         list[SeparatedDocumentIn] = Field(..., min_length=1)
    community_id:      UUID
    processing_level:  int = Field(4, ge=1, le=4)
    original_filename: str = "separated-document"


class ProcessSeparatedResponse(_CamelModel):
    success:   bool
    total:     int
    processed: int
    skipped:   list[str] = Field(default_factory=list)
    documents: list[ChildDocumentOut] = Field(default_factory=list)
    timestamp: datetime


# ---------------------------------------------------------------------------
# Document status response: GET /documents/{id}/status
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Polled by the UI to render per-stage progress."""
    document_id:           UUID
    filename:              str
    document_type:         Optional[str] = None
    processing_level:      int
    extraction_status:     StageStatus
    classification_status: StageStatus
    metadata_status:       StageStatus
    chunking_status:       StageStatus
    completed_steps:       list[PipelineStage] = Field(default_factory=list)
    pending_steps:         list[PipelineStage] = Field(default_factory=list)
    failed_steps:          list[PipelineStage] = Field(default_factory=list)
    overall_status:        str = Field(..., description="completed | processing | failed")
    errors:                dict[str, str] = Field(default_factory=dict)
    needs_review:          bool = False
    chunks_count:          int = 0
    parent_document_id:    Optional[UUID] = None
    updated_at:            Optional[datetime] = None


class DocumentSummary(BaseModel):
    document_id:        UUID
    filename:           str
    document_type:      Optional[str] = None
    community_id:       Optional[UUID] = None
    parent_document_id: Optional[UUID] = None
    processing_level:   int
    overall_status:     str
    created_at:         Optional[datetime] = None


class StageRerunResponse(BaseModel):
    """HTTP 202 — the re-run was queued."""
    document_id: UUID
    stage:       PipelineStage
    task_id:     Optional[str] = None
    status:      str = "queued"


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")
    timestamp:     datetime         = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class UploadErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{detected_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has an unsupported type '{detected_type}'. Allowed: PDF, DOCX, TXT, MD.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, max_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {max_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def missing_community() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_COMMUNITY",
            message="communityId is required when uploadToDatabase is true.",
            details=[
                ErrorDetail(
                    field="communityId",
                    message="Select the community the documents belong to.",
                    code="MISSING_COMMUNITY",
                )
            ],
        )

    @staticmethod
    def community_not_found(community_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="COMMUNITY_NOT_FOUND",
            message=f"Community '{community_id}' was not found in your organization.",
            details=[],
        )

    @staticmethod
    def invalid_output_path(path: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_OUTPUT_PATH",
            message="outputPath must stay inside the configured analysis directory.",
            details=[
                ErrorDetail(
                    field="outputPath",
                    message=f"'{path}' resolves outside the analysis root.",
                    code="INVALID_OUTPUT_PATH",
                )
            ],
        )

    @staticmethod
    def unauthorized() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Authentication required. Provide a valid Bearer token.",
            details=[
                ErrorDetail(
                    field=None,
                    message="Missing or invalid Authorization header.",
                    code="UNAUTHORIZED",
                )
            ],
        )

    @staticmethod
    def token_expired() -> ErrorResponse:
        return ErrorResponse(
            error_code="TOKEN_EXPIRED",
            message="Your access token has expired. Please re-authenticate.",
            details=[],
        )

    @staticmethod
    def forbidden(required_role: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message=f"Insufficient permissions. Role '{required_role}' or above is required.",
            details=[
                ErrorDetail(
                    field=None,
                    message="Contact your organization administrator to request elevated access.",
                    code="FORBIDDEN",
                )
            ],
        )

    @staticmethod
    def duplicate_document(checksum: str, existing_id: UUID | None = None) -> ErrorResponse:
        existing = f" (document_id: {existing_id})" if existing_id else ""
        return ErrorResponse(
            error_code="DUPLICATE_DOCUMENT",
            message="This file has already been uploaded to your organization.",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"A document with checksum '{checksum}' already exists{existing}."
                    ),
                    code="DUPLICATE_DOCUMENT",
                )
            ],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the document. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def queue_error() -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_ERROR",
            message="The re-run could not be queued.",
            details=[
                ErrorDetail(
                    field=None,
                    message="The message broker may be temporarily unavailable. Retry shortly.",
                    code="QUEUE_ERROR",
                )
            ],
        )

    @staticmethod
    def invalid_stage_rerun(stage: str, reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_STAGE_RERUN",
            message=f"Stage '{stage}' cannot be re-run.",
            details=[ErrorDetail(field="stage", message=reason, code="INVALID_STAGE_RERUN")],
        )

    @staticmethod
    def internal_error(request_id: str | None = None, detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred while processing the document.",
            details=(
                [ErrorDetail(field=None, message=detail, code="INTERNAL_ERROR")]
                if detail
                else []
            ),
            request_id=request_id,
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found in your organization.",
            details=[],
        )


# ---------------------------------------------------------------------------
# HTTP status code → error code mapping (for OpenAPI documentation)
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "INVALID_REQUEST",        # missing file, unsupported type, missing communityId
    401: "UNAUTHORIZED",           # missing/invalid/expired JWT
    403: "FORBIDDEN",              # valid JWT, insufficient role
    404: "NOT_FOUND",              # unknown community or document
    409: "DUPLICATE_DOCUMENT",     # checksum collision within organization
    413: "FILE_TOO_LARGE",         # body exceeds max_upload_bytes
    422: "VALIDATION_ERROR",       # FastAPI Pydantic validation failure
    500: "INTERNAL_ERROR",         # unhandled exception
    503: "QUEUE_ERROR",            # broker unavailable
}
