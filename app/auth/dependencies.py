"""
Composed FastAPI Dependencies

Route handlers import their request context from here: the verified user,
an organization-scoped DB session, organization-scoped storage, and the
pipeline services built around the process-wide LLM gateway.

The gateway lives on app.state (created in the lifespan); everything else
is built per request so no state leaks between organizations.
"""

from __future__ import annotations

from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.token import TokenPayload, get_current_user
from app.db.session import get_db, tenant_session
from app.llm.gateway import LLMGateway
from app.processing.extractor import build_cascade
from app.processing.multi_document import MultiDocumentAnalyzer
from app.services.ingestion import TaskPublisher
from app.services.pipeline import PipelineOrchestrator, SessionFactory, build_orchestrator
from app.storage.s3 import S3StorageService


async def get_tenant_db(
    user: Annotated[TokenPayload, Depends(get_current_user)],
) -> AsyncGenerator[AsyncSession, None]:
    """Session with app.current_organization_id set to the caller's organization."""
    async for session in get_db(user.organization_id):
        yield session


async def get_tenant_storage(
    user: Annotated[TokenPayload, Depends(get_current_user)],
) -> S3StorageService:
    """S3 access confined to tenants/<organization_id>/."""
    return S3StorageService(organization_id=user.organization_id)


def get_gateway(request: Request) -> LLMGateway | None:
    return getattr(request.app.state, "llm_gateway", None)


def get_session_factory() -> SessionFactory:
    """Per-organization transaction factory used by the services."""
    return tenant_session


def get_orchestrator(
    gateway:  Annotated[LLMGateway | None, Depends(get_gateway)],
    sessions: Annotated[SessionFactory, Depends(get_session_factory)],
) -> PipelineOrchestrator:
    return build_orchestrator(gateway, session_factory=sessions)


def get_analyzer(
    gateway: Annotated[LLMGateway | None, Depends(get_gateway)],
) -> MultiDocumentAnalyzer:
    return MultiDocumentAnalyzer(build_cascade(gateway), gateway)


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


TenantDB      = Annotated[AsyncSession,          Depends(get_tenant_db)]
TenantStorage = Annotated[S3StorageService,      Depends(get_tenant_storage)]
Orchestrator  = Annotated[PipelineOrchestrator,  Depends(get_orchestrator)]
Analyzer      = Annotated[MultiDocumentAnalyzer, Depends(get_analyzer)]
Publisher     = Annotated[TaskPublisher,         Depends(get_task_publisher)]
Sessions      = Annotated[SessionFactory,        Depends(get_session_factory)]
CurrentUser   = Annotated[TokenPayload,          Depends(get_current_user)]
