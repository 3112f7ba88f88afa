"""
Test doubles shared by unit and integration tests.

  FakeGateway          scripted stand-in for LLMGateway (invoke_json / invoke_vision)
  InMemoryStore        PersistenceService API backed by dicts and real ORM objects
  fake_session_factory tenant_session replacement; records the organization of every session
"""

from __future__ import annotations

import json
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from app.llm.gateway import GatewayResponse
from app.models.documents import AuditLog, Community, Document, DocumentClassification
from app.models.extracted import EXTRACTED_TABLES
from app.processing.chunking import ChunkResult
from app.services.persistence import PersistenceResult, build_extracted_row, pipeline_status


# ─────────────────────────────────────────────────────────────────────────────
# Gateway
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class GatewayCall:
    kind:          str
    system_prompt: str
    user_prompt:   str
    max_tokens:    int | None = None


class FakeGateway:
    """
    Replays scripted replies in order.

    A reply is a dict (sent as JSON), a str (sent verbatim) or an exception
    instance (raised). `responder(system, user)` is consulted when the queue
    is empty; with neither, the call raises ConnectionError so components
    take their fallback path.
    """

    def __init__(
        self,
        replies:   list[Any] | None = None,
        responder: Callable[[str, str], Any] | None = None,
        tokens:    tuple[int, int] = (120, 40),
    ) -> None:
        self.replies   = deque(replies or [])
        self.responder = responder
        self.tokens    = tokens
        self.calls:    list[GatewayCall] = []

    def queue(self, *replies: Any) -> "FakeGateway":
        self.replies.extend(replies)
        return self

    def _next(self, system_prompt: str, user_prompt: str) -> Any:
        if self.replies:
            return self.replies.popleft()
        if self.responder is not None:
            return self.responder(system_prompt, user_prompt)
        return ConnectionError("no scripted reply")

    def _respond(self, reply: Any) -> GatewayResponse:
        if isinstance(reply, BaseException):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply, ensure_ascii=False)
        return GatewayResponse(
            content=content,
            model_used="fake-model",
            provider="fake",
            input_tokens=self.tokens[0],
            output_tokens=self.tokens[1],
            latency_ms=1.0,
            request_id=str(uuid.uuid4()),
        )

    async def invoke_json(
        self,
        system_prompt:     str,
        user_prompt:       str,
        max_output_tokens: int | None = None,
        organization_id:   UUID | None = None,
    ) -> GatewayResponse:
        self.calls.append(GatewayCall("json", system_prompt, user_prompt, max_output_tokens))
        return self._respond(self._next(system_prompt, user_prompt))

    async def invoke_vision(
        self,
        prompt:          str,
        images_b64:      list[str],
        organization_id: UUID | None = None,
    ) -> GatewayResponse:
        self.calls.append(GatewayCall("vision", prompt, f"{len(images_b64)} images"))
        return self._respond(self._next(prompt, ""))

    @property
    def json_calls(self) -> list[GatewayCall]:
        return [c for c in self.calls if c.kind == "json"]


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_DOCUMENT_DEFAULTS: dict[str, Any] = {
    "needs_review":             False,
    "text_length":              0,
    "processing_level":         4,
    "extraction_status":        "pending",
    "classification_status":    "pending",
    "metadata_status":          "pending",
    "chunking_status":          "pending",
    "chunks_count":             0,
    "total_processing_time_ms": 0,
    "total_tokens_used":        0,
}


@dataclass
class InMemoryStore:
    """
    Same coroutine API as PersistenceService. ORM objects are built but never
    flushed, so every column default is set here explicitly.
    """
    documents:       dict[UUID, Document] = field(default_factory=dict)
    communities:     dict[UUID, Community] = field(default_factory=dict)
    classifications: list[DocumentClassification] = field(default_factory=list)
    extracted:       dict[str, dict[UUID, dict[str, Any]]] = field(default_factory=dict)
    chunks:          dict[UUID, list[ChunkResult]] = field(default_factory=dict)
    audit_log:       list[AuditLog] = field(default_factory=list)
    reject_tables:   dict[str, str] = field(default_factory=dict)

    # ── Fixtures ──

    def add_community(self, community_id: UUID, organization_id: UUID, name: str) -> Community:
        community = Community(id=community_id, organization_id=organization_id, name=name)
        self.communities[community_id] = community
        return community

    def add_document(self, **values: Any) -> Document:
        """Synchronous create for arranging test state."""
        return self._build_document(values)

    def _build_document(self, values: dict[str, Any]) -> Document:
        org, file_hash = values["organization_id"], values["file_hash"]
        if any(d.organization_id == org and d.file_hash == file_hash for d in self.documents.values()):
            raise IntegrityError(
                "INSERT INTO saas.documents", {}, Exception("uq_documents_org_file_hash"),
            )
        now = _utcnow() + timedelta(microseconds=len(self.documents))
        document = Document(**{
            **_DOCUMENT_DEFAULTS,
            "id": uuid.uuid4(),
            "doc_metadata": {},
            "created_at": now,
            "updated_at": now,
            **values,
        })
        self.documents[document.id] = document
        return document

    def audit_actions(self) -> list[str]:
        return [entry.action for entry in self.audit_log]

    # ── PersistenceService API ──

    async def get_document(self, document_id: UUID, organization_id: UUID) -> Document | None:
        document = self.documents.get(document_id)
        if document is None or document.organization_id != organization_id:
            return None
        return document

    async def create_document(self, **values: Any) -> Document:
        return self._build_document(values)

    async def find_duplicate(self, organization_id: UUID, file_hash: str) -> Document | None:
        for document in self.documents.values():
            if document.organization_id == organization_id and document.file_hash == file_hash:
                return document
        return None

    async def find_community(self, community_id: UUID, organization_id: UUID) -> Community | None:
        community = self.communities.get(community_id)
        if community is None or community.organization_id != organization_id:
            return None
        return community

    async def list_documents(
        self,
        organization_id: UUID,
        document_type:   str | None = None,
        community_id:    UUID | None = None,
        limit:           int = 50,
        offset:          int = 0,
    ) -> tuple[list[Document], int]:
        rows = [
            d for d in self.documents.values()
            if d.organization_id == organization_id
            and (not document_type or d.document_type == document_type)
            and (not community_id or d.community_id == community_id)
        ]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def apply_stage_state(
        self, document_id: UUID, organization_id: UUID, columns: dict[str, Any],
    ) -> bool:
        document = await self.get_document(document_id, organization_id)
        if document is None:
            return False
        for name, value in columns.items():
            setattr(document, name, value)
        document.updated_at = _utcnow()
        return True

    async def add_usage(
        self, document_id: UUID, organization_id: UUID, tokens: int = 0, elapsed_ms: int = 0,
    ) -> None:
        document = await self.get_document(document_id, organization_id)
        if document is not None:
            document.total_tokens_used += tokens
            document.total_processing_time_ms += elapsed_ms

    async def record_classification(
        self, document_id: UUID, organization_id: UUID, **values: Any,
    ) -> DocumentClassification:
        record = DocumentClassification(
            id=uuid.uuid4(),
            document_id=document_id,
            organization_id=organization_id,
            is_current=True,
            **values,
        )
        for old in self.classifications:
            if old.document_id == document_id and old.is_current:
                old.is_current = False
                old.superseded_by = record.id
        self.classifications.append(record)
        return record

    async def insert_with_organization(
        self, table: str, document_id: UUID, data: dict[str, Any], method: str = "ai",
    ) -> PersistenceResult:
        if document_id in self.extracted.get(table, {}):
            return PersistenceResult(success=False, error="IntegrityError: duplicate key")
        return await self.upsert_with_organization(table, document_id, data, method)

    async def upsert_with_organization(
        self, table: str, document_id: UUID, data: dict[str, Any], method: str = "ai",
    ) -> PersistenceResult:
        model = EXTRACTED_TABLES.get(table)
        if model is None:
            return PersistenceResult(success=False, error=f"Unknown table: {table}")
        if table in self.reject_tables:
            return PersistenceResult(success=False, error=self.reject_tables[table])
        document = self.documents.get(document_id)
        if document is None:
            return PersistenceResult(success=False, error=f"Document not found: {document_id}")
        row = build_extracted_row(model, document_id, document.organization_id, data, method)
        self.extracted.setdefault(table, {})[document_id] = row
        return PersistenceResult(
            success=True,
            metadata={"document_id": str(document_id), "table": table,
                      "organization_id": str(document.organization_id)},
        )

    async def replace_chunks(
        self, document_id: UUID, organization_id: UUID, chunks: list[ChunkResult],
    ) -> int:
        self.chunks[document_id] = list(chunks)
        return len(chunks)

    async def get_pipeline_status(self, document_id: UUID, organization_id: UUID) -> dict[str, Any] | None:
        document = await self.get_document(document_id, organization_id)
        return pipeline_status(document) if document is not None else None

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
        self.audit_log.append(AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            resource=resource,
            doc_metadata=metadata or {},
            ip_address=ip_address,
            success=success,
        ))


class FakeSessionFactory:
    """Callable like tenant_session(organization_id); yields a placeholder session."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        self.organizations: list[UUID] = []

    def __call__(self, organization_id: UUID):
        return self._session(organization_id)

    @asynccontextmanager
    async def _session(self, organization_id: UUID):
        self.organizations.append(organization_id)
        yield None


def fake_session_factory(store: InMemoryStore) -> FakeSessionFactory:
    return FakeSessionFactory(store)
