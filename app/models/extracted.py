"""
SQLAlchemy ORM Models — Structured extraction records (one table per type)

Every table shares the same envelope (ExtractedRecordMixin):

    id · document_id (UNIQUE, FK documents) · organization_id · payload JSONB
    · extraction_method · created_at · updated_at

plus a handful of typed columns for the fields that are filtered and sorted
on (dates, amounts, counterparties). The full validated field set is always
kept in `payload`, so adding a field to an extractor never needs a migration.

document_id is unique: re-running structured extraction upserts the row for
that document instead of adding a second one.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.documents import Base


class ExtractedRecordMixin:
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
        unique=True,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("saas.organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payload: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=dict, server_default="{}",
    )
    extraction_method: Mapped[str] = mapped_column(
        Text, nullable=False, default="ai", server_default="ai",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )


_SCHEMA = {"schema": "saas"}


# ---------------------------------------------------------------------------
# acta: minutes of a community meeting
# ---------------------------------------------------------------------------

class ExtractedMinutes(ExtractedRecordMixin, Base):
    __tablename__ = "extracted_minutes"
    __table_args__ = (_SCHEMA,)

    document_date:    Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    tipo_reunion:     Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    comunidad_nombre: Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    president_in:     Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    president_out:    Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    administrator:    Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    summary:          Mapped[Optional[str]]  = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# factura: invoice
# ---------------------------------------------------------------------------

class ExtractedInvoice(ExtractedRecordMixin, Base):
    __tablename__ = "extracted_invoices"
    __table_args__ = (_SCHEMA,)

    provider_name:  Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    client_name:    Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    invoice_number: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    issue_date:     Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    due_date:       Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    tax_amount:     Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    total_amount:   Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency:       Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    category:       Mapped[Optional[str]]     = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# contrato: service contract
# ---------------------------------------------------------------------------

class ExtractedContract(ExtractedRecordMixin, Base):
    __tablename__ = "extracted_contracts"
    __table_args__ = (_SCHEMA,)

    titulo_contrato: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    parte_a:         Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    parte_b:         Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    tipo_contrato:   Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    fecha_inicio:    Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    fecha_fin:       Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    fecha_firma:     Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    importe_total:   Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)


# ---------------------------------------------------------------------------
# albaran: delivery note
# ---------------------------------------------------------------------------

class ExtractedDeliveryNote(ExtractedRecordMixin, Base):
    __tablename__ = "extracted_delivery_notes"
    __table_args__ = (_SCHEMA,)

    emisor_name:    Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    receptor_name:  Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    numero_albaran: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    fecha_emision:  Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    cantidad_total: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    estado_entrega: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# comunicado: notice to owners
# ---------------------------------------------------------------------------

class ExtractedCommunication(ExtractedRecordMixin, Base):
    __tablename__ = "extracted_communications"
    __table_args__ = (_SCHEMA,)

    fecha:        Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    comunidad:    Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    remitente:    Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    asunto:       Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    urgencia:     Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    fecha_limite: Mapped[Optional[date]] = mapped_column(Date, nullable=True)


# ---------------------------------------------------------------------------
# escritura: property deed
# ---------------------------------------------------------------------------

class ExtractedPropertyDeed(ExtractedRecordMixin, Base):
    __tablename__ = "extracted_property_deeds"
    __table_args__ = (_SCHEMA,)

    vendedor_nombre:      Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    comprador_nombre:     Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    direccion_inmueble:   Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    referencia_catastral: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    notario_nombre:       Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    fecha_escritura:      Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    precio_venta:         Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)


# ---------------------------------------------------------------------------
# presupuesto: budget / quote
# ---------------------------------------------------------------------------

class ExtractedBudget(ExtractedRecordMixin, Base):
    __tablename__ = "extracted_budgets"
    __table_args__ = (_SCHEMA,)

    numero_presupuesto: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    emisor_name:        Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    cliente_name:       Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    fecha_emision:      Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    fecha_validez:      Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    total:              Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)


EXTRACTED_TABLES: dict[str, type[ExtractedRecordMixin]] = {
    model.__tablename__: model
    for model in (
        ExtractedMinutes,
        ExtractedInvoice,
        ExtractedContract,
        ExtractedDeliveryNote,
        ExtractedCommunication,
        ExtractedPropertyDeed,
        ExtractedBudget,
    )
}
