"""
Celery Tasks — Document Pipeline

Task: process_document(document_id, organization_id, stage=None)
  stage None  → PipelineOrchestrator.process_document (every pending stage)
  stage set   → PipelineOrchestrator.rerun_stage (that stage and the ones after it)

  Systemic DB errors (OperationalError, InterfaceError) propagate out of the
  orchestrator and the task retries with backoff. Stage-level failures are
  already recorded on the document row and do not retry.

Task: requeue_unstarted_documents
  Beat job. Re-queues documents whose extraction is still pending, whose
  processing never started, and which are older than five minutes (the
  original dispatch was lost). Documents stuck in `processing` are left
  alone: re-running them is a manual decision.

Security:
  - Every DB session is opened with the organization from the task kwargs;
    RLS plus the explicit organization filter scope every query.
  - S3 reads go through an organization-bound S3StorageService.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from celery import Task
from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

UNSTARTED_GRACE = timedelta(minutes=5)
SWEEP_BATCH_SIZE = 50


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                return pool.submit(asyncio.run, coro).result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


def _worker_orchestrator():
    from app.db.session import tenant_session
    from app.llm.gateway import build_gateway
    from app.services.pipeline import build_orchestrator

    return build_orchestrator(build_gateway(), session_factory=tenant_session)


# ---------------------------------------------------------------------------
# Pipeline task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.process_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(
    self: Task,
    *,
    document_id:     str,
    organization_id: str,
    stage:           str | None = None,
) -> dict[str, Any]:
    try:
        return run_async(
            _process_document_async(uuid.UUID(document_id), uuid.UUID(organization_id), stage)
        )
    except (OperationalError, InterfaceError) as exc:
        logger.warning(
            "Database unavailable, retrying | doc=%s attempt=%d", document_id, self.request.retries + 1,
        )
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))


async def _process_document_async(
    document_id:     uuid.UUID,
    organization_id: uuid.UUID,
    stage:           str | None,
    orchestrator=None,
) -> dict[str, Any]:
    from app.db.session import tenant_session
    from app.schemas.documents import PipelineStage
    from app.services.persistence import PersistenceService
    from app.services.pipeline import InvalidStageTransition

    orchestrator = orchestrator or _worker_orchestrator()

    if stage is None:
        result = await orchestrator.process_document(document_id, organization_id)
        action = "document.pipeline_completed" if result.success else "document.pipeline_failed"
    else:
        try:
            result = await orchestrator.rerun_stage(document_id, organization_id, PipelineStage(stage))
        except (InvalidStageTransition, ValueError) as exc:
            # Document changed between the API check and the worker picking it up.
            logger.warning("Re-run rejected | doc=%s stage=%s reason=%s", document_id, stage, exc)
            return {"status": "rejected", "document_id": str(document_id), "reason": str(exc)}
        action = "document.stage_rerun_completed" if result.success else "document.stage_rerun_failed"

    if result.error is None:
        async with tenant_session(organization_id) as session:
            await PersistenceService(session).write_audit_log(
                organization_id=organization_id,
                action=action,
                resource=f"document:{document_id}",
                metadata={
                    "stage":    stage,
                    "outcomes": {o.stage.value: o.status.value for o in result.outcomes},
                },
                success=result.success,
            )

    return {
        "status":        "ok" if result.success else "failed",
        "document_id":   str(document_id),
        "document_type": result.document_type,
        "outcomes":      {o.stage.value: o.status.value for o in result.outcomes},
        "error":         result.error,
    }


# ---------------------------------------------------------------------------
# Sweep: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.requeue_unstarted_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_unstarted_documents() -> dict[str, int]:
    return run_async(_requeue_unstarted_async())


async def _requeue_unstarted_async(now: datetime | None = None) -> dict[str, int]:
    from app.db.session import get_admin_db
    from app.models.documents import Document
    from app.schemas.documents import StageStatus

    cutoff = (now or datetime.now(timezone.utc)) - UNSTARTED_GRACE
    async with get_admin_db() as db:
        rows = (await db.execute(
            select(Document.id, Document.organization_id)
            .where(
                Document.extraction_status == StageStatus.PENDING.value,
                Document.processing_started_at.is_(None),
                Document.created_at < cutoff,
            )
            .order_by(Document.created_at)
            .limit(SWEEP_BATCH_SIZE)
        )).all()

    for document_id, organization_id in rows:
        process_document.apply_async(
            kwargs={"document_id": str(document_id), "organization_id": str(organization_id)},
            countdown=5,
        )
        logger.info("Re-queued unstarted document | doc=%s org=%s", document_id, organization_id)

    return {"requeued": len(rows)}
