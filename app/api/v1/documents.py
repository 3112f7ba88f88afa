"""
Document Ingestion API Router

  POST /documents/multi-analyze                    member+   analyze, separate, optionally ingest
  POST /documents/process-separated                member+   ingest reviewed fragments
  GET  /documents/{document_id}/status             viewer+   per-stage pipeline status
  POST /documents/{document_id}/stages/{stage}/retry  admin+ manual re-run via Celery (202)
  GET  /documents                                  viewer+   paginated list

Request lifecycle (multi-analyze):
  ┌──────────────────────────────────────────────────────────┐
  │ 1. JWT verification → organization_id + role             │
  │    (never taken from the form)                           │
  │ 2. RBAC gate (member or above)                           │
  │ 3. MultiDocumentIngestionService.multi_analyze()         │
  │ 4. camelCase JSON body + X-Request-ID header             │
  └──────────────────────────────────────────────────────────┘

Every error body is an ErrorResponse; the service raises HTTPException with
the body as detail and the exception handlers in app.main unwrap it.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional
from uuid import UUID

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse

from app.auth.dependencies import Analyzer, Orchestrator, Publisher, Sessions, TenantDB, TenantStorage
from app.auth.rbac import require_role
from app.auth.token import TokenPayload
from app.schemas.documents import (
    DocumentStatusResponse,
    DocumentSummary,
    ErrorResponse,
    MultiAnalyzeResponse,
    PipelineStage,
    ProcessSeparatedRequest,
    ProcessSeparatedResponse,
    StageRerunResponse,
    UploadErrors,
)
from app.services.ingestion import MultiDocumentIngestionService
from app.services.persistence import PersistenceService, pipeline_status
from app.services.pipeline import StageState

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)

_member = require_role("member")
_viewer = require_role("viewer")
_admin  = require_role("admin")


# ---------------------------------------------------------------------------
# POST /documents/multi-analyze
# ---------------------------------------------------------------------------

@router.post(
    "/multi-analyze",
    response_model=MultiAnalyzeResponse,
    summary="Detect and separate documents inside one file",
    description=(
        "Extracts the text once, asks the model for document boundaries, writes one "
        "text file per detected document and, with uploadToDatabase=true, creates a "
        "bundle parent plus one processed child per supported document."
    ),
    responses={
        200: {"model": MultiAnalyzeResponse},
        400: {"model": ErrorResponse, "description": "Missing file, unsupported type, bad outputPath or communityId"},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse, "description": "Requires member+"},
        404: {"model": ErrorResponse, "description": "Community not in caller's organization"},
        409: {"model": ErrorResponse, "description": "Same file already ingested"},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def multi_analyze(
    request:          Request,
    analyzer:         Analyzer,
    orchestrator:     Orchestrator,
    storage:          TenantStorage,
    sessions:         Sessions,
    file:             Optional[UploadFile] = File(None, description="PDF, DOCX, TXT or MD"),
    outputPath:       Optional[str]        = Form(None),
    uploadToDatabase: bool                 = Form(False),
    communityId:      Optional[str]        = Form(None),
    user:             TokenPayload         = Depends(_member),
) -> JSONResponse:
    request_id = _request_id(request)
    service = MultiDocumentIngestionService(
        user=user,
        analyzer=analyzer,
        orchestrator=orchestrator,
        storage=storage,
        session_factory=sessions,
    )

    try:
        result = await service.multi_analyze(
            file=file,
            output_path=outputPath,
            upload_to_database=uploadToDatabase,
            community_id=communityId,
            client_ip=_extract_client_ip(request),
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception(
            "Unhandled multi-analyze error | org=%s request_id=%s",
            user.organization_id, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=UploadErrors.internal_error(request_id, str(exc)).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=result.model_dump(mode="json", by_alias=True),
        headers={"X-Request-ID": request_id},
    )


# ---------------------------------------------------------------------------
# POST /documents/process-separated
# ---------------------------------------------------------------------------

@router.post(
    "/process-separated",
    response_model=ProcessSeparatedResponse,
    summary="Ingest fragments reviewed after a multi-analyze run",
    responses={
        200: {"model": ProcessSeparatedResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def process_separated(
    request:      Request,
    body:         ProcessSeparatedRequest,
    analyzer:     Analyzer,
    orchestrator: Orchestrator,
    storage:      TenantStorage,
    sessions:     Sessions,
    user:         TokenPayload = Depends(_member),
) -> JSONResponse:
    service = MultiDocumentIngestionService(
        user=user,
        analyzer=analyzer,
        orchestrator=orchestrator,
        storage=storage,
        session_factory=sessions,
    )
    result = await service.process_separated(body, client_ip=_extract_client_ip(request))
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=result.model_dump(mode="json", by_alias=True),
        headers={"X-Request-ID": _request_id(request)},
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Per-stage pipeline status",
    responses={
        200: {"model": DocumentStatusResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_document_status(
    document_id: UUID,
    db:   TenantDB,
    user: TokenPayload = Depends(_viewer),
) -> DocumentStatusResponse:
    summary = await PersistenceService(db).get_pipeline_status(document_id, user.organization_id)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=UploadErrors.document_not_found(document_id).model_dump(mode="json"),
        )
    return DocumentStatusResponse(**summary)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/stages/{stage}/retry
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/stages/{stage}/retry",
    response_model=StageRerunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Manually re-run one pipeline stage and the stages after it",
    responses={
        202: {"model": StageRerunResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse, "description": "Requires admin+"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Stage disabled or its prerequisite is not done"},
        503: {"model": ErrorResponse, "description": "Message broker unavailable"},
    },
)
async def retry_stage(
    request:     Request,
    document_id: UUID,
    stage:       PipelineStage,
    publisher:   Publisher,
    db:          TenantDB,
    user:        TokenPayload = Depends(_admin),
) -> JSONResponse:
    store = PersistenceService(db)
    document = await store.get_document(document_id, user.organization_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=UploadErrors.document_not_found(document_id).model_dump(mode="json"),
        )

    state = StageState.from_document(document)
    reason = None
    if not state.enabled(stage):
        reason = f"'{stage.value}' is not enabled at processing_level {state.processing_level}"
    elif not state.prerequisite_satisfied(stage):
        reason = "the previous stage is neither completed nor skipped"
    if reason:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=UploadErrors.invalid_stage_rerun(stage.value, reason).model_dump(mode="json"),
        )

    try:
        task_id = await publisher.publish_processing_task(document_id, user.organization_id, stage)
    except Exception:
        logger.exception("Re-run dispatch failed | doc=%s stage=%s", document_id, stage.value)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=UploadErrors.queue_error().model_dump(mode="json"),
        )

    await store.write_audit_log(
        organization_id=user.organization_id,
        user_id=_as_uuid(user.sub),
        action="document.stage_rerun_requested",
        resource=f"document:{document_id}",
        metadata={"stage": stage.value, "task_id": task_id},
        ip_address=_extract_client_ip(request),
    )

    response = StageRerunResponse(document_id=document_id, stage=stage, task_id=task_id)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=response.model_dump(mode="json"),
        headers={
            "X-Request-ID": _request_id(request),
            "Location":     f"/api/v1/documents/{document_id}/status",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    summary="List documents in the caller's organization",
    responses={
        200: {"description": "Paginated list of documents"},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
    },
)
async def list_documents(
    db:            TenantDB,
    page:          int            = Query(1, ge=1),
    limit:         int            = Query(20, ge=1, le=100),
    document_type: Optional[str]  = Query(None, alias="type"),
    community_id:  Optional[UUID] = Query(None, alias="communityId"),
    user:          TokenPayload   = Depends(_viewer),
) -> dict:
    rows, total = await PersistenceService(db).list_documents(
        user.organization_id,
        document_type=document_type,
        community_id=community_id,
        limit=limit,
        offset=(page - 1) * limit,
    )
    documents = []
    for d in rows:
        summary = pipeline_status(d)
        documents.append(DocumentSummary(
            document_id=d.id,
            filename=d.filename,
            document_type=d.document_type,
            community_id=d.community_id,
            parent_document_id=d.parent_document_id,
            processing_level=d.processing_level,
            overall_status=summary["overall_status"],
            created_at=d.created_at,
        ).model_dump(mode="json"))

    return {"page": page, "limit": limit, "total": total, "documents": documents}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _extract_client_ip(request: Request) -> str | None:
    """First X-Forwarded-For entry, else the direct peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
        return ip or None
    return request.client.host if request.client else None


def _as_uuid(value: str) -> UUID | None:
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError):
        return None
