"""
Multi-Document Ingestion Service

Backs POST /documents/multi-analyze and POST /documents/process-separated.

multi-analyze flow:
  1. Read the upload with a size guard (400 missing, 413 too large)
  2. Detect MIME type from magic bytes; check extension (400)
  3. Resolve outputPath inside analysis_output_root (400)
  4. uploadToDatabase: communityId required (400), community must belong to
     the caller's organization (404), file must not be a duplicate (409)
  5. MultiDocumentAnalyzer.analyze() — one extraction, AI boundaries
  6. Bundle → separate() writes one text file per fragment
  7. uploadToDatabase:
       - S3 put under tenants/<org>/documents/<md5>.<ext>
       - bundle: parent (type multidocumento, level 1) + one child per
         supported fragment, each run through the pipeline in turn
       - single: one document, level 4, extraction reused from step 5
  8. Audit log entries and analysis-report-<ts>.json
  9. HTTP 200 with per-child results (child failures are reported, not raised)

Security invariants:
  - organization_id ALWAYS comes from the verified JWT, never the form.
  - The S3 key is built server-side from the organization and MD5.
  - MIME type comes from magic bytes, not the client's Content-Type header.
  - The (organization_id, file_hash) UNIQUE constraint is the final
    duplicate guard (SELECT-then-INSERT race → IntegrityError → 409).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import mimetypes
import re
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import HTTPException, UploadFile, status
from sqlalchemy.exc import IntegrityError

from app.auth.token import TokenPayload
from app.core.config import Settings, settings as default_settings
from app.db.session import tenant_session
from app.processing.extractor import ExtractionResult
from app.processing.multi_document import (
    AnalysisResult,
    DetectedDocument,
    MultiDocumentAnalyzer,
    SeparationResult,
    normalize_document_type,
    safe_title,
)
from app.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    ALLOWED_EXTENSIONS,
    ChildDocumentOut,
    DetectedDocumentOut,
    DocumentType,
    MultiAnalyzeResponse,
    PipelineStage,
    ProcessSeparatedRequest,
    ProcessSeparatedResponse,
    SeparatedFileOut,
    SeparationOut,
    StageOutcomeOut,
    StageStatus,
    UploadErrors,
    UploadOut,
)
from app.services.persistence import PersistenceService
from app.services.pipeline import PipelineOrchestrator, PipelineRunResult, StageState
from app.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

BUNDLE_PROCESSING_LEVEL = 1
FULL_PROCESSING_LEVEL = 4

# ---------------------------------------------------------------------------
# File type validation helpers
# ---------------------------------------------------------------------------

_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":       "application/pdf",
    b"PK\x03\x04": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1": "application/msword",  # legacy .doc, rejected
}


def _detect_mime_type(filename: str, file_head: bytes) -> str:
    """Magic bytes first, then the extension. Never the client Content-Type."""
    for magic, mime in _MAGIC_BYTES.items():
        if file_head.startswith(magic):
            return mime

    ext = _get_extension(filename)
    if ext in (".txt", ".md"):
        return "text/plain"

    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def _get_extension(filename: str) -> str:
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _sanitize_filename(filename: str) -> str:
    """Basename only, unsafe characters replaced, capped at 200 chars."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200]


def compute_md5(data: bytes) -> str:
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(now: datetime) -> str:
    return now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def child_filename(index: int, doc_type: str, title: str) -> str:
    """`{n}_{type}_{title}.txt` — the type in the name lets the classifier hit on the filename."""
    return f"{index}_{doc_type}_{safe_title(title)}.txt"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class MultiDocumentIngestionService:
    """
    One instance per request; every collaborator is injected.

    Usage:
        service = MultiDocumentIngestionService(user, analyzer, orchestrator, storage)
        response = await service.multi_analyze(file, output_path, True, community_id, ip)
    """

    def __init__(
        self,
        user:            TokenPayload,
        analyzer:        MultiDocumentAnalyzer,
        orchestrator:    PipelineOrchestrator,
        storage:         S3StorageService,
        session_factory=tenant_session,
        config:          Settings | None = None,
    ) -> None:
        self._user         = user
        self._analyzer     = analyzer
        self._orchestrator = orchestrator
        self._storage      = storage
        self._sessions     = session_factory
        self._config       = config or default_settings
        self._org          = user.organization_id
        self._user_id      = _as_uuid(user.sub)

    # ------------------------------------------------------------------
    # multi-analyze
    # ------------------------------------------------------------------

    async def multi_analyze(
        self,
        file:               UploadFile | None,
        output_path:        str | None,
        upload_to_database: bool,
        community_id:       str | None,
        client_ip:          str | None = None,
    ) -> MultiAnalyzeResponse:
        started = _utcnow()

        # ---- Step 1–2: read and validate ---------------------------------
        file_bytes = await self._read_upload(file)
        original_name = file.filename or "upload"
        mime = _detect_mime_type(original_name, file_bytes[:8])
        ext = _get_extension(original_name)
        if mime not in ALLOWED_CONTENT_TYPES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.unsupported_file_type(original_name, mime).model_dump(mode="json"),
            )
        if ext not in ALLOWED_EXTENSIONS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.unsupported_file_type(original_name, ext or "none").model_dump(mode="json"),
            )
        safe_name = _sanitize_filename(original_name)
        md5 = compute_md5(file_bytes)

        # ---- Step 3: output directory ------------------------------------
        output_dir = self._resolve_output_dir(output_path, safe_name, started)

        # ---- Step 4: upload preconditions --------------------------------
        community = None
        if upload_to_database:
            community = await self._check_upload_preconditions(community_id, md5)

        logger.info(
            "MultiAnalyze start | org=%s user=%s file=%s size=%d md5=%s upload=%s",
            self._org, self._user_id, safe_name, len(file_bytes), md5, upload_to_database,
        )

        # ---- Step 5–6: analyze and separate ------------------------------
        analysis = await self._analyzer.analyze(file_bytes, safe_name)
        separation: SeparationResult | None = None
        if analysis.success and analysis.is_multi_document:
            separation = await self._analyzer.separate(
                analysis.extracted_text, safe_name, analysis.detected_documents, output_dir,
            )

        # ---- Step 7: materialize -----------------------------------------
        upload: UploadOut | None = None
        if upload_to_database and community is not None:
            if analysis.success:
                upload = await self._materialize(
                    analysis, file_bytes, md5, ext, mime, safe_name, community, client_ip,
                )
            else:
                upload = UploadOut(
                    success=False,
                    community_name=community.name,
                    errors=[f"Text extraction failed: {analysis.error}"],
                )

        # ---- Step 8: report -------------------------------------------------
        response = MultiAnalyzeResponse(
            success=analysis.success,
            is_multi_document=analysis.is_multi_document,
            confidence=analysis.confidence,
            detected_documents=[_detected_out(d) for d in analysis.detected_documents],
            extracted_text_length=len(analysis.extracted_text),
            total_pages=analysis.total_pages,
            total_lines=analysis.total_lines,
            extraction_method=analysis.extraction.method,
            supported_documents=analysis.supported_documents,
            unsupported_documents=analysis.unsupported_documents,
            text_truncated=analysis.text_truncated,
            max_supported_length=analysis.max_supported_length,
            analysis_details=analysis.analysis_details or None,
            error=analysis.error,
            separation=_separation_out(separation) if separation else None,
            upload=upload,
            output_path=str(output_dir),
            original_filename=original_name,
            original_file_size=len(file_bytes),
            timestamp=started,
        )
        response.report_file = await self._write_report(output_dir, response, started)

        logger.info(
            "MultiAnalyze done | org=%s file=%s multi=%s detected=%d children=%d",
            self._org, safe_name, analysis.is_multi_document,
            len(analysis.detected_documents), upload.total_children_created if upload else 0,
        )
        return response

    # ------------------------------------------------------------------
    # process-separated
    # ------------------------------------------------------------------

    async def process_separated(
        self,
        request:   ProcessSeparatedRequest,
        client_ip: str | None = None,
    ) -> ProcessSeparatedResponse:
        """Materialize fragments a user reviewed after a multi-analyze run."""
        community = await self._find_community(request.community_id)

        results: list[ChildDocumentOut] = []
        skipped: list[str] = []
        for index, fragment in enumerate(request.documents, start=1):
            label, member = normalize_document_type(fragment.type)
            if member is None:
                skipped.append(f"{index}: unsupported type '{label}'")
                continue
            if index > 1 and self._config.ai_call_delay_seconds > 0:
                await asyncio.sleep(self._config.ai_call_delay_seconds)
            results.append(await self._create_and_run_child(
                index=index,
                doc_type=member,
                title=fragment.suggested_title or f"{label} document",
                text=fragment.text_fragment,
                confidence=fragment.confidence,
                extraction_method="separated",
                parent_id=None,
                community_id=community.id,
                processing_level=request.processing_level,
                original_filename=request.original_filename,
            ))

        async with self._sessions(self._org) as session:
            await PersistenceService(session).write_audit_log(
                organization_id=self._org,
                user_id=self._user_id,
                action="document.separated_processed",
                resource=f"community:{community.id}",
                metadata={
                    "original_filename": request.original_filename,
                    "submitted": len(request.documents),
                    "created": len(results),
                    "skipped": skipped,
                },
                ip_address=client_ip,
                success=all(r.success for r in results),
            )

        return ProcessSeparatedResponse(
            success=bool(results) and all(r.success for r in results),
            total=len(request.documents),
            processed=len(results),
            skipped=skipped,
            documents=results,
            timestamp=_utcnow(),
        )

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    async def _check_upload_preconditions(self, community_id: str | None, md5: str):
        if not community_id or _as_uuid(community_id) is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_community().model_dump(mode="json"),
            )
        community = await self._find_community(_as_uuid(community_id))

        async with self._sessions(self._org) as session:
            existing = await PersistenceService(session).find_duplicate(self._org, md5)
            if existing is not None:
                await PersistenceService(session).write_audit_log(
                    organization_id=self._org,
                    user_id=self._user_id,
                    action="document.duplicate_rejected",
                    resource=f"document:{existing.id}",
                    metadata={"file_hash": md5},
                    success=False,
                )
        if existing is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=UploadErrors.duplicate_document(md5, existing.id).model_dump(mode="json"),
            )
        return community

    async def _find_community(self, community_id: uuid.UUID):
        async with self._sessions(self._org) as session:
            community = await PersistenceService(session).find_community(community_id, self._org)
        if community is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=UploadErrors.community_not_found(community_id).model_dump(mode="json"),
            )
        return community

    def _resolve_output_dir(self, output_path: str | None, filename: str, now: datetime) -> Path:
        root = Path(self._config.analysis_output_root).resolve()
        if output_path:
            candidate = Path(output_path)
            target = (candidate if candidate.is_absolute() else root / candidate).resolve()
        else:
            stem = filename.rsplit(".", 1)[0] or "document"
            target = root / str(self._org) / f"{stem}-{_stamp(now)}"
        if target != root and root not in target.parents:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_output_path(output_path or "").model_dump(mode="json"),
            )
        return target

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    async def _materialize(
        self,
        analysis:   AnalysisResult,
        file_bytes: bytes,
        md5:        str,
        ext:        str,
        mime:       str,
        safe_name:  str,
        community,
        client_ip:  str | None,
    ) -> UploadOut:
        try:
            stored = await self._storage.put_document(
                file_bytes, md5, ext, mime,
                metadata={"original_filename": safe_name, "uploaded_by": str(self._user_id)},
            )
        except Exception as exc:
            logger.exception("S3 upload failed | org=%s file=%s", self._org, safe_name)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=UploadErrors.storage_error(str(exc)).model_dump(mode="json"),
            ) from exc

        is_bundle = analysis.is_multi_document
        state = StageState.new(BUNDLE_PROCESSING_LEVEL if is_bundle else FULL_PROCESSING_LEVEL)
        try:
            async with self._sessions(self._org) as session:
                document = await PersistenceService(session).create_document(
                    organization_id=self._org,
                    community_id=community.id,
                    uploaded_by=self._user_id,
                    filename=safe_name,
                    original_filename=safe_name,
                    storage_key=stored.key,
                    mime_type=mime,
                    size_bytes=len(file_bytes),
                    file_hash=md5,
                    document_type=DocumentType.MULTIDOCUMENT.value if is_bundle else None,
                    doc_metadata={
                        "detected_documents": len(analysis.detected_documents),
                        "analysis_confidence": analysis.confidence,
                    } if is_bundle else {},
                    **state.all_columns(),
                )
                document_id = document.id
        except IntegrityError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=UploadErrors.duplicate_document(md5).model_dump(mode="json"),
            ) from exc

        # The cascade already ran during analysis; record it instead of re-extracting.
        await self._orchestrator.record_extraction(document_id, self._org, analysis.extraction)

        if not is_bundle:
            run = await self._orchestrator.process_document(document_id, self._org)
            await self._audit_upload(document_id, safe_name, md5, 0, client_ip, run.success)
            return UploadOut(
                success=run.success,
                document_id=document_id,
                community_name=community.name,
                errors=[o.error for o in run.outcomes if o.status == StageStatus.FAILED and o.error],
            )

        # Level 1: the recorded extraction is all the bundle parent needs.
        await self._orchestrator.process_document(document_id, self._org)

        children: list[ChildDocumentOut] = []
        supported = [
            (index, doc) for index, doc in enumerate(analysis.detected_documents, start=1)
            if doc.is_supported and doc.text_fragment.strip()
        ]
        for position, (index, doc) in enumerate(supported):
            if position and self._config.ai_call_delay_seconds > 0:
                await asyncio.sleep(self._config.ai_call_delay_seconds)
            children.append(await self._create_and_run_child(
                index=index,
                doc_type=doc.document_type,
                title=doc.suggested_title,
                text=doc.text_fragment,
                confidence=doc.confidence,
                extraction_method=f"multi-document:{analysis.extraction.method}",
                parent_id=document_id,
                community_id=community.id,
                processing_level=FULL_PROCESSING_LEVEL,
                original_filename=safe_name,
                detected=doc,
            ))

        await self._audit_upload(document_id, safe_name, md5, len(children), client_ip, True)
        return UploadOut(
            success=all(c.success for c in children),
            parent_document_id=document_id,
            child_documents=children,
            total_children_created=sum(1 for c in children if c.id is not None),
            community_name=community.name,
            errors=[f"{c.filename}: {c.error}" for c in children if c.error],
        )

    async def _create_and_run_child(
        self,
        index:             int,
        doc_type:          DocumentType,
        title:             str,
        text:              str,
        confidence:        float,
        extraction_method: str,
        parent_id:         uuid.UUID | None,
        community_id:      uuid.UUID,
        processing_level:  int,
        original_filename: str,
        detected:          DetectedDocument | None = None,
    ) -> ChildDocumentOut:
        filename = child_filename(index, doc_type.value, title)
        fragment_bytes = text.encode("utf-8")
        metadata: dict[str, Any] = {"suggested_title": title, "source_file": original_filename}
        if detected is not None:
            metadata.update(
                lines=detected.lines,
                keywords=detected.keywords,
                detected_confidence=detected.confidence,
            )

        try:
            async with self._sessions(self._org) as session:
                child = await PersistenceService(session).create_document(
                    organization_id=self._org,
                    community_id=community_id,
                    parent_document_id=parent_id,
                    uploaded_by=self._user_id,
                    filename=filename,
                    original_filename=original_filename,
                    mime_type="text/plain",
                    size_bytes=len(fragment_bytes),
                    file_hash=compute_md5(fragment_bytes),
                    doc_metadata=metadata,
                    **StageState.new(processing_level).all_columns(),
                )
                child_id = child.id
        except IntegrityError:
            logger.warning("Child rejected as duplicate | org=%s file=%s", self._org, filename)
            return ChildDocumentOut(
                id=None, filename=filename, type=doc_type.value, title=title,
                success=False, error="An identical fragment already exists in this organization",
            )

        extraction = ExtractionResult(
            success=True,
            text=text,
            method=extraction_method,
            page_count=0,
            confidence=confidence,
        )
        recorded = await self._orchestrator.record_extraction(child_id, self._org, extraction)
        outcomes = [recorded]
        run: PipelineRunResult | None = None
        if recorded.status == StageStatus.COMPLETED:
            run = await self._orchestrator.process_document(child_id, self._org)
            outcomes.extend(run.outcomes)

        failed = [o for o in outcomes if o.status == StageStatus.FAILED]
        return ChildDocumentOut(
            id=child_id,
            filename=filename,
            type=doc_type.value,
            title=title,
            success=not failed and (run is None or run.error is None),
            pipeline=[StageOutcomeOut(stage=o.stage, status=o.status, error=o.error) for o in outcomes],
            error=(failed[0].error if failed else (run.error if run else None)),
        )

    async def _audit_upload(
        self,
        document_id: uuid.UUID,
        filename:    str,
        md5:         str,
        children:    int,
        client_ip:   str | None,
        success:     bool,
    ) -> None:
        async with self._sessions(self._org) as session:
            await PersistenceService(session).write_audit_log(
                organization_id=self._org,
                user_id=self._user_id,
                action="document.bundle_materialized" if children else "document.uploaded",
                resource=f"document:{document_id}",
                metadata={"filename": filename, "file_hash": md5, "children_created": children},
                ip_address=client_ip,
                success=success,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _read_upload(self, file: UploadFile | None) -> bytes:
        if file is None or not file.filename:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(mode="json"),
            )
        data = await file.read()
        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(mode="json"),
            )
        if len(data) > self._config.max_upload_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=UploadErrors.file_too_large(len(data), self._config.max_upload_bytes).model_dump(mode="json"),
            )
        return data

    async def _write_report(
        self, output_dir: Path, response: MultiAnalyzeResponse, now: datetime,
    ) -> str | None:
        path = output_dir / f"analysis-report-{_stamp(now)}.json"
        payload = response.model_dump(mode="json", by_alias=True, exclude={"report_file"})

        def _write() -> None:
            output_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

        try:
            await asyncio.get_running_loop().run_in_executor(None, _write)
        except OSError as exc:
            logger.error("Report write failed | path=%s error=%s", path, exc)
            return None
        return str(path)


# ---------------------------------------------------------------------------
# Response mapping
# ---------------------------------------------------------------------------

def _detected_out(doc: DetectedDocument) -> DetectedDocumentOut:
    return DetectedDocumentOut(
        type=doc.type,
        confidence=doc.confidence,
        is_supported=doc.is_supported,
        suggested_title=doc.suggested_title,
        description=doc.description,
        keywords=doc.keywords,
        start_line=doc.start_line,
        end_line=doc.end_line,
        start_marker=doc.start_marker,
        end_marker=doc.end_marker,
        text_length=len(doc.text_fragment),
        text_fragment=doc.text_fragment,
    )


def _separation_out(separation: SeparationResult) -> SeparationOut:
    return SeparationOut(
        output_files=separation.output_files,
        output_path=separation.output_path,
        log_file=separation.log_file,
        text_files=[SeparatedFileOut(**asdict(f)) for f in separation.text_files],
        summary=separation.summary,
        errors=separation.errors,
    )


def _as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return None


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery .apply_async()
# Injected into the route so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """Sends pipeline tasks to the Celery broker. Import is deferred so the API starts without a broker."""

    async def publish_processing_task(
        self,
        document_id:     uuid.UUID,
        organization_id: uuid.UUID,
        stage:           PipelineStage | None = None,
    ) -> str:
        from app.workers.tasks import process_document

        kwargs = {"document_id": str(document_id), "organization_id": str(organization_id)}
        if stage is not None:
            kwargs["stage"] = stage.value

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(kwargs=kwargs, countdown=1),
        )
        logger.info(
            "Processing task published | doc=%s org=%s stage=%s task=%s",
            document_id, organization_id, stage.value if stage else "-", result.id,
        )
        return result.id
