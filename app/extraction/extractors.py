"""
Type extractors — one per supported DocumentType.

Each class only declares its field spec and its regex fallback; the
AI call, coercion and fallback policy live in BaseDocumentExtractor.
"""

from __future__ import annotations

import re
from typing import Any

from app.extraction.base import (
    AMOUNT_PATTERN,
    DATE_PATTERN,
    NIF_PATTERN,
    BaseDocumentExtractor,
    first_match,
    to_bool,
    to_date,
    to_enum,
    to_int,
    to_list,
    to_number,
    to_string,
    to_text,
)
from app.schemas.documents import DocumentType

_NUMBER_CODE = r"([A-Z0-9][A-Z0-9\-/]*\d[A-Z0-9\-/]*)"
_HONORIFIC = r"(?:(?:dña\.|d\.ª|d\.|sra\.|sr\.)\s*|(?:doña|don)\s+)?"
_NAME = r"([A-ZÁÉÍÓÚÑ][^\n,;]{2,80})"


def _items(limit: int):
    return lambda value: to_list(value, max_items=limit)


def _first_line_with(word: str, text: str) -> str | None:
    for line in text.splitlines():
        if word in line.lower() and len(line.strip()) > len(word):
            return line.strip()
    return None


# ---------------------------------------------------------------------------
# factura
# ---------------------------------------------------------------------------

class InvoiceExtractor(BaseDocumentExtractor):
    document_type   = DocumentType.FACTURA
    table_name      = "extracted_invoices"
    agent_name      = "factura_extractor_v2"
    complex         = True
    required_fields = ("provider_name", "invoice_number", "total_amount")
    instructions    = (
        "products is a list of {description, quantity, unit_price, total}. "
        "category is the expense category (mantenimiento, limpieza, suministros, seguros, otros)."
    )
    fields = {
        "provider_name":   to_string,
        "client_name":     to_string,
        "amount":          to_number,
        "invoice_date":    to_date,
        "category":        to_string,
        "invoice_number":  to_string,
        "issue_date":      to_date,
        "due_date":        to_date,
        "subtotal":        to_number,
        "tax_amount":      to_number,
        "total_amount":    to_number,
        "currency":        to_string,
        "payment_method":  to_string,
        "vendor_tax_id":   to_string,
        "client_tax_id":   to_string,
        "products":        _items(50),
        "products_count":  to_int,
        "payment_terms":   to_text,
        "notes":           to_text,
    }

    def _regex_fallback(self, text: str) -> dict[str, Any]:
        tax_ids = re.findall(NIF_PATTERN, text)
        total = first_match(rf"\btotal(?:\s+factura|\s+a\s+pagar)?\s*:?\s*{AMOUNT_PATTERN}", text)
        return {
            "invoice_number": first_match(rf"factura\s*(?:n[ºo°.]*|n[úu]mero)?\s*[:#]?\s*{_NUMBER_CODE}", text),
            "issue_date":     first_match(rf"fecha(?:\s+de\s+(?:emisi[óo]n|factura))?\s*:?\s*{DATE_PATTERN}", text),
            "due_date":       first_match(rf"vencimiento\s*:?\s*{DATE_PATTERN}", text),
            "subtotal":       first_match(rf"(?:subtotal|base\s+imponible)\s*:?\s*{AMOUNT_PATTERN}", text),
            "tax_amount":     first_match(rf"(?:cuota\s+)?iva(?:\s*\(?\d+\s*%\)?)?\s*:?\s*{AMOUNT_PATTERN}", text),
            "total_amount":   total,
            "amount":         total,
            "vendor_tax_id":  tax_ids[0] if tax_ids else None,
            "client_tax_id":  tax_ids[1] if len(tax_ids) > 1 else None,
            "currency":       "EUR" if re.search(r"€|\beur(?:os)?\b", text, re.IGNORECASE) else None,
        }


# ---------------------------------------------------------------------------
# contrato
# ---------------------------------------------------------------------------

class ContractExtractor(BaseDocumentExtractor):
    document_type   = DocumentType.CONTRATO
    table_name      = "extracted_contracts"
    agent_name      = "contrato_extractor_v1"
    complex         = True
    required_fields = ("parte_a", "parte_b")
    instructions    = (
        "parte_a is the contracting party (usually the community), parte_b the provider. "
        "tipo_contrato is a short label such as mantenimiento, limpieza, obra, seguro."
    )
    fields = {
        "titulo_contrato":               to_string,
        "parte_a":                       to_string,
        "parte_b":                       to_string,
        "objeto_contrato":               to_text,
        "duracion":                      to_string,
        "importe_total":                 to_number,
        "fecha_inicio":                  to_date,
        "fecha_fin":                     to_date,
        "tipo_contrato":                 to_string,
        "parte_a_identificacion_fiscal": to_string,
        "parte_b_identificacion_fiscal": to_string,
        "alcance_servicios":             _items(20),
        "moneda":                        to_string,
        "forma_pago":                    to_string,
        "confidencialidad":              to_bool,
        "fecha_firma":                   to_date,
        "lugar_firma":                   to_string,
        "topic_keywords":                _items(10),
    }

    def _regex_fallback(self, text: str) -> dict[str, Any]:
        parte_a, parte_b = self._parties(text)
        tax_ids = re.findall(NIF_PATTERN, text)
        signed = re.search(rf"en\s+([A-ZÁÉÍÓÚÑ][\wáéíóúñ ]{{1,40}}),\s*a\s+{DATE_PATTERN}", text)
        return {
            "titulo_contrato": _first_line_with("contrato", text),
            "parte_a":         parte_a,
            "parte_b":         parte_b,
            "parte_a_identificacion_fiscal": tax_ids[0] if tax_ids else None,
            "parte_b_identificacion_fiscal": tax_ids[1] if len(tax_ids) > 1 else None,
            "importe_total":   first_match(rf"(?:importe|precio)(?:\s+total)?[^\n\d]{{0,30}}{AMOUNT_PATTERN}", text),
            "fecha_inicio":    first_match(rf"(?:fecha\s+de\s+inicio|a\s+partir\s+del?)\s*:?\s*{DATE_PATTERN}", text),
            "fecha_fin":       first_match(rf"(?:fecha\s+de\s+(?:fin|finalizaci[óo]n)|hasta\s+el)\s*:?\s*{DATE_PATTERN}", text),
            "duracion":        first_match(r"duraci[óo]n\s+de\s+([^\n.,]{3,40})", text),
            "lugar_firma":     signed.group(1).strip() if signed else None,
            "fecha_firma":     signed.group(2) if signed else None,
        }

    @staticmethod
    def _parties(text: str) -> tuple[str | None, str | None]:
        """Counterparties from the usual Spanish contract openings."""
        parte_a = first_match(rf"de\s+una\s+parte,?\s*{_HONORIFIC}{_NAME}", text)
        parte_b = first_match(rf"de\s+otra\s+parte,?\s*{_HONORIFIC}{_NAME}", text)
        if parte_a and parte_b:
            return parte_a, parte_b

        between = re.search(
            rf"\bentre\s+{_HONORIFIC}([^\n,]{{3,80}}?)\s+y\s+{_HONORIFIC}([^\n,.]{{3,80}})",
            text, re.IGNORECASE,
        )
        if between:
            return parte_a or between.group(1).strip(), parte_b or between.group(2).strip()

        return (
            parte_a or first_match(r"(?:el\s+|la\s+)?(?:contratante|cliente)\s*:\s*([^\n]+)", text),
            parte_b or first_match(
                r"(?:el\s+|la\s+)?(?:contratista|prestador(?:a)?(?:\s+del\s+servicio)?|proveedor)\s*:\s*([^\n]+)",
                text,
            ),
        )


# ---------------------------------------------------------------------------
# acta
# ---------------------------------------------------------------------------

class MinutesExtractor(BaseDocumentExtractor):
    document_type   = DocumentType.ACTA
    table_name      = "extracted_minutes"
    agent_name      = "acta_extractor_v2"
    complex         = True
    required_fields = ("document_date", "comunidad_nombre")
    instructions    = (
        "president_in is the president chairing the meeting, president_out the one elected "
        "when it changes. acuerdos lists each agreement reached; orden_del_dia the agenda items. "
        "tipo_reunion is ordinaria or extraordinaria."
    )
    fields = {
        "president_in":     to_string,
        "president_out":    to_string,
        "administrator":    to_string,
        "summary":          to_text,
        "decisions":        to_text,
        "document_date":    to_date,
        "tipo_reunion":     to_enum("ordinaria", "extraordinaria"),
        "lugar":            to_string,
        "comunidad_nombre": to_string,
        "orden_del_dia":    _items(30),
        "acuerdos":         _items(30),
        "topic_keywords":   _items(10),
    }

    def _regex_fallback(self, text: str) -> dict[str, Any]:
        agenda = re.search(r"orden\s+del\s+d[íi]a\s*:?\s*\n((?:\s*\d+[.)\-].+\n?)+)", text, re.IGNORECASE)
        return {
            "document_date":    first_match(rf"(?:fecha|celebrada\s+el(?:\s+d[íi]a)?)\s*:?\s*{DATE_PATTERN}", text)
                                or first_match(DATE_PATTERN, text),
            "tipo_reunion":     first_match(r"junta\s+general\s+(ordinaria|extraordinaria)", text),
            "president_in":     first_match(rf"presidente?a?\s*:?\s*{_HONORIFIC}{_NAME}", text),
            "administrator":    first_match(rf"administrador(?:a)?(?:\s+de\s+fincas)?\s*:?\s*{_HONORIFIC}{_NAME}", text),
            "comunidad_nombre": first_match(r"(comunidad\s+de\s+propietarios\s+[^\n,]+)", text),
            "lugar":            first_match(r"\ben\s+([^\n,]{3,60}?),?\s+(?:siendo|a\s+las)\b", text),
            "orden_del_dia":    [
                re.sub(r"^\s*\d+[.)\-]\s*", "", line).strip()
                for line in agenda.group(1).splitlines() if line.strip()
            ] if agenda else None,
        }


# ---------------------------------------------------------------------------
# albaran
# ---------------------------------------------------------------------------

class DeliveryNoteExtractor(BaseDocumentExtractor):
    document_type   = DocumentType.ALBARAN
    table_name      = "extracted_delivery_notes"
    agent_name      = "albaran_extractor_v1"
    required_fields = ("emisor_name", "receptor_name", "numero_albaran", "fecha_emision")
    instructions    = (
        "mercancia is a list of {descripcion, cantidad, unidad}. "
        "estado_entrega is entregado, parcial or pendiente."
    )
    fields = {
        "emisor_name":        to_string,
        "receptor_name":      to_string,
        "numero_albaran":     to_string,
        "fecha_emision":      to_date,
        "numero_pedido":      to_string,
        "category":           to_string,
        "mercancia":          _items(50),
        "cantidad_total":     to_number,
        "peso_total":         to_number,
        "observaciones":      to_text,
        "estado_entrega":     to_enum("entregado", "parcial", "pendiente"),
        "firma_receptor":     to_bool,
        "transportista":      to_string,
        "vehiculo_matricula": to_string,
    }

    def _regex_fallback(self, text: str) -> dict[str, Any]:
        return {
            "numero_albaran":     first_match(rf"albar[áa]n\s*(?:n[ºo°.]*|n[úu]mero)?\s*[:#]?\s*{_NUMBER_CODE}", text),
            "fecha_emision":      first_match(rf"fecha(?:\s+de\s+(?:emisi[óo]n|entrega))?\s*:?\s*{DATE_PATTERN}", text),
            "numero_pedido":      first_match(rf"pedido\s*(?:n[ºo°.]*|n[úu]mero)?\s*[:#]?\s*{_NUMBER_CODE}", text),
            "emisor_name":        first_match(r"(?:emisor|proveedor|remitente)\s*:\s*([^\n]+)", text),
            "receptor_name":      first_match(r"(?:receptor|destinatario|cliente)\s*:\s*([^\n]+)", text),
            "transportista":      first_match(r"transportista\s*:\s*([^\n]+)", text),
            "vehiculo_matricula": first_match(r"matr[íi]cula\s*:?\s*(\d{4}\s?[A-Z]{3})", text),
            "cantidad_total":     first_match(r"(?:cantidad|unidades)\s+total(?:es)?\s*:?\s*(\d+(?:[.,]\d+)?)", text),
            "firma_receptor":     True if re.search(r"recib[íi]\s+conforme|firma\s+del?\s+receptor", text, re.IGNORECASE) else None,
        }


# ---------------------------------------------------------------------------
# comunicado
# ---------------------------------------------------------------------------

class CommunicationExtractor(BaseDocumentExtractor):
    document_type   = DocumentType.COMUNICADO
    table_name      = "extracted_communications"
    agent_name      = "comunicado_extractor_v1"
    required_fields = ("fecha", "asunto")
    instructions    = "urgencia is baja, media or alta. accion_requerida lists what owners must do."
    fields = {
        "fecha":              to_date,
        "comunidad":          to_string,
        "remitente":          to_string,
        "resumen":            to_text,
        "category":           to_string,
        "asunto":             to_string,
        "tipo_comunicado":    to_string,
        "urgencia":           to_enum("baja", "media", "alta"),
        "destinatarios":      _items(20),
        "fecha_limite":       to_date,
        "requiere_respuesta": to_bool,
        "accion_requerida":   _items(10),
    }

    def _regex_fallback(self, text: str) -> dict[str, Any]:
        urgent = re.search(r"\burgente\b|\bimportante\b", text, re.IGNORECASE)
        return {
            "fecha":        first_match(rf"fecha\s*:?\s*{DATE_PATTERN}", text) or first_match(DATE_PATTERN, text),
            "asunto":       first_match(r"asunto\s*:\s*([^\n]+)", text),
            "comunidad":    first_match(r"(comunidad\s+de\s+propietarios\s+[^\n,]+)", text),
            "remitente":    first_match(r"(?:atentamente|fdo\.?)[,:]?\s*\n?\s*([^\n]+)", text),
            "urgencia":     "alta" if urgent else None,
            "fecha_limite": first_match(rf"(?:antes\s+del?|plazo\s+(?:hasta|m[áa]ximo)?[^\n\d]{{0,20}})\s*{DATE_PATTERN}", text),
        }


# ---------------------------------------------------------------------------
# escritura
# ---------------------------------------------------------------------------

class PropertyDeedExtractor(BaseDocumentExtractor):
    document_type   = DocumentType.ESCRITURA
    table_name      = "extracted_property_deeds"
    agent_name      = "escritura_extractor_v1"
    complex         = True
    required_fields = ("vendedor_nombre", "comprador_nombre", "direccion_inmueble")
    fields = {
        "vendedor_nombre":      to_string,
        "comprador_nombre":     to_string,
        "direccion_inmueble":   to_string,
        "precio_venta":         to_number,
        "fecha_escritura":      to_date,
        "notario_nombre":       to_string,
        "referencia_catastral": to_string,
        "vendedor_dni":         to_string,
        "comprador_dni":        to_string,
        "tipo_inmueble":        to_string,
        "superficie_util":      to_number,
        "registro_propiedad":   to_string,
        "libre_cargas":         to_bool,
        "fecha_entrega":        to_date,
        "valor_catastral":      to_number,
    }

    def _regex_fallback(self, text: str) -> dict[str, Any]:
        return {
            "notario_nombre":       first_match(rf"notari[oa]\s*(?:del\s+ilustre[^,\n]*,\s*)?:?\s*{_HONORIFIC}{_NAME}", text),
            "referencia_catastral": first_match(r"referencia\s+catastral\s*:?\s*([0-9A-Z]{14,20})", text),
            "precio_venta":         first_match(rf"precio(?:\s+de\s+(?:la\s+)?(?:venta|compraventa))?[^\n\d]{{0,40}}{AMOUNT_PATTERN}", text),
            "vendedor_nombre":      first_match(rf"(?:parte\s+)?vendedora?\s*:\s*{_HONORIFIC}([^\n]+)", text),
            "comprador_nombre":     first_match(rf"(?:parte\s+)?compradora?\s*:\s*{_HONORIFIC}([^\n]+)", text),
            "direccion_inmueble":   first_match(r"(?:sit[oa]\s+en|finca\s+(?:urbana\s+)?sita\s+en)\s+([^\n.]{5,120})", text),
            "fecha_escritura":      first_match(rf"\ba\s+{DATE_PATTERN}", text) or first_match(DATE_PATTERN, text),
            "superficie_util":      first_match(r"superficie\s+[úu]til\s+de\s+(\d+(?:[.,]\d+)?)\s*m", text),
            "libre_cargas":         True if re.search(r"libre\s+de\s+cargas", text, re.IGNORECASE) else None,
        }


# ---------------------------------------------------------------------------
# presupuesto
# ---------------------------------------------------------------------------

class BudgetExtractor(BaseDocumentExtractor):
    document_type   = DocumentType.PRESUPUESTO
    table_name      = "extracted_budgets"
    agent_name      = "presupuesto_extractor_v1"
    required_fields = ("emisor_name", "total")
    fields = {
        "numero_presupuesto":    to_string,
        "emisor_name":           to_string,
        "cliente_name":          to_string,
        "fecha_emision":         to_date,
        "fecha_validez":         to_date,
        "total":                 to_number,
        "titulo":                to_string,
        "subtotal":              to_number,
        "impuestos":             to_number,
        "porcentaje_impuestos":  to_number,
        "moneda":                to_string,
        "descripcion_servicios": _items(30),
        "condiciones_pago":      to_text,
        "plazos_entrega":        to_string,
        "garantia":              to_string,
    }

    def _regex_fallback(self, text: str) -> dict[str, Any]:
        return {
            "numero_presupuesto": first_match(rf"presupuesto\s*(?:n[ºo°.]*|n[úu]mero)?\s*[:#]?\s*{_NUMBER_CODE}", text),
            "fecha_emision":      first_match(rf"fecha\s*:?\s*{DATE_PATTERN}", text),
            "fecha_validez":      first_match(rf"v[áa]lid[oae]z?\s+(?:hasta(?:\s+el)?)?\s*:?\s*{DATE_PATTERN}", text),
            "total":              first_match(rf"\btotal(?:\s+presupuesto)?\s*:?\s*{AMOUNT_PATTERN}", text),
            "subtotal":           first_match(rf"(?:subtotal|base\s+imponible)\s*:?\s*{AMOUNT_PATTERN}", text),
            "porcentaje_impuestos": first_match(r"iva\s*\(?\s*(\d{1,2})\s*%", text),
            "emisor_name":        first_match(r"(?:empresa|emisor|proveedor)\s*:\s*([^\n]+)", text),
            "cliente_name":       first_match(r"(?:cliente|destinatario)\s*:\s*([^\n]+)", text),
            "moneda":             "EUR" if re.search(r"€|\beur(?:os)?\b", text, re.IGNORECASE) else None,
        }


ALL_EXTRACTORS: tuple[type[BaseDocumentExtractor], ...] = (
    MinutesExtractor,
    InvoiceExtractor,
    ContractExtractor,
    DeliveryNoteExtractor,
    CommunicationExtractor,
    PropertyDeedExtractor,
    BudgetExtractor,
)
