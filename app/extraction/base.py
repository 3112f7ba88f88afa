"""
Structured Extraction — base class and field coercers
══════════════════════════════════════════════════════

Every supported document type has one extractor. An extractor turns a
document's text into a flat dict of typed fields:

    process_metadata(document_id, text)
        │
        ├─ one JSON call to the gateway (bounded by agent_timeout_seconds)
        │     reply → coerce every declared field → drop empty values
        │
        └─ on timeout / provider error / unreadable JSON / nothing usable:
              _regex_fallback(text) → coerce → drop empty values

    success ⇔ at least one declared field has a value

Coercion is deliberately lenient: a value that does not fit its field type
becomes None and is dropped, the rest of the record is kept. Required
fields only affect logging; the row is still stored.
"""

from __future__ import annotations

import asyncio
import logging
import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Callable

from app.core.config import Settings, settings as default_settings
from app.llm.gateway import MalformedResponseError
from app.schemas.documents import DocumentType

if TYPE_CHECKING:
    from app.llm.gateway import LLMGateway

logger = logging.getLogger(__name__)

Coercer = Callable[[Any], Any]

MAX_PROMPT_CHARS = 12000


class ExtractionMethod:
    AI             = "ai"
    REGEX_FALLBACK = "regex-fallback"


@dataclass
class ExtractorOutcome:
    success:     bool
    data:        dict[str, Any] = field(default_factory=dict)
    error:       str | None = None
    method:      str = ExtractionMethod.AI
    tokens_used: int = 0
    agent_name:  str = ""
    missing_required: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Coercers
# ---------------------------------------------------------------------------

_DMY_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})$")
_ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")

_MONTHS_ES = {
    "enero": 1, "febrero": 2, "marzo": 3, "abril": 4, "mayo": 5, "junio": 6,
    "julio": 7, "agosto": 8, "septiembre": 9, "setiembre": 9, "octubre": 10,
    "noviembre": 11, "diciembre": 12,
}
_LONG_DATE_RE = re.compile(
    r"^(\d{1,2})\s+de\s+([a-záéíóú]+)\s+(?:de|del)\s+(\d{4})$", re.IGNORECASE,
)


def to_date(value: Any) -> str | None:
    """ISO, d/m/Y (also - and .) or "5 de marzo de 2024" → "YYYY-MM-DD"."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    raw = str(value).strip()
    if not raw:
        return None

    iso = _ISO_RE.match(raw)
    dmy = _DMY_RE.match(raw)
    long_form = _LONG_DATE_RE.match(raw)
    try:
        if iso:
            y, mo, d = int(iso.group(1)), int(iso.group(2)), int(iso.group(3))
        elif dmy:
            d, mo, y = int(dmy.group(1)), int(dmy.group(2)), int(dmy.group(3))
            if y < 100:
                y += 2000
        elif long_form:
            month = _MONTHS_ES.get(_strip_accents(long_form.group(2).lower()))
            if month is None:
                return None
            d, mo, y = int(long_form.group(1)), month, int(long_form.group(3))
        else:
            return None
        return date(y, mo, d).isoformat()
    except ValueError:
        return None


def to_number(value: Any, integer: bool = False) -> float | int | None:
    """
    Numbers as models and Spanish documents write them.

        1234.56  "1234.56"  "1.234,56 €"  "1234,5"  "EUR 1,234.56"
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        raw = re.sub(r"[^\d,.\-]", "", str(value))
        if not raw or raw in {"-", ".", ","}:
            return None
        if "," in raw and "." in raw:
            if raw.rfind(",") > raw.rfind("."):
                raw = raw.replace(".", "").replace(",", ".")
            else:
                raw = raw.replace(",", "")
        elif "," in raw:
            raw = raw.replace(",", ".")
        elif raw.count(".") > 1:
            raw = raw.replace(".", "")
        elif re.fullmatch(r"-?\d{1,3}\.\d{3}", raw):
            # "1.234" is a thousands separator in Spanish text
            raw = raw.replace(".", "")
        try:
            number = float(raw)
        except ValueError:
            return None
    return int(round(number)) if integer else round(number, 2)


def to_int(value: Any) -> int | None:
    return to_number(value, integer=True)


def to_string(value: Any, max_length: int = 200) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    if not text or text.lower() in {"null", "none", "n/a", "-"}:
        return None
    return text[:max_length]


def to_text(value: Any) -> str | None:
    return to_string(value, max_length=4000)


def to_list(value: Any, max_items: int = 20) -> list[Any] | None:
    if value is None:
        return None
    if isinstance(value, str):
        items: list[Any] = [p.strip() for p in re.split(r"[;\n]|,\s", value) if p.strip()]
    elif isinstance(value, list):
        items = [
            v if isinstance(v, dict) else to_string(v)
            for v in value
        ]
        items = [v for v in items if v]
    else:
        return None
    return items[:max_items] or None


def to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    lowered = _strip_accents(str(value).strip().lower())
    if lowered in {"true", "yes", "si", "1"}:
        return True
    if lowered in {"false", "no", "0"}:
        return False
    return None


def to_enum(*choices: str, default: str | None = None) -> Coercer:
    allowed = {_strip_accents(c.lower()): c for c in choices}

    def coerce(value: Any) -> str | None:
        if value is None:
            return default
        return allowed.get(_strip_accents(str(value).strip().lower()), default)

    return coerce


def _strip_accents(value: str) -> str:
    return "".join(
        ch for ch in unicodedata.normalize("NFKD", value) if not unicodedata.combining(ch)
    )


# ---------------------------------------------------------------------------
# Base extractor
# ---------------------------------------------------------------------------

class BaseDocumentExtractor(ABC):
    """
    Subclasses declare what to extract; this class handles the call,
    coercion and fallback.

    Class attributes:
        document_type:   DocumentType handled
        table_name:      saas.<table> receiving the record
        agent_name:      versioned name logged and stored with the record
        fields:          field name → coercer
        required_fields: fields every document of this type should carry
        complex:         larger output budget (llm_max_tokens_complex)
        instructions:    type-specific guidance appended to the prompt
    """

    document_type:   DocumentType
    table_name:      str
    agent_name:      str
    fields:          dict[str, Coercer]
    required_fields: tuple[str, ...] = ()
    complex:         bool = False
    instructions:    str = ""

    def __init__(self, gateway: LLMGateway | None, config: Settings | None = None) -> None:
        self._gateway = gateway
        self._config  = config or default_settings

    async def process_metadata(self, document_id: str, text: str) -> ExtractorOutcome:
        if not text or not text.strip():
            return ExtractorOutcome(
                success=False, error="No text to extract from", agent_name=self.agent_name,
            )

        ai_error: str | None = None
        tokens = 0
        if self._gateway is not None:
            try:
                response = await asyncio.wait_for(
                    self._gateway.invoke_json(
                        self.system_prompt(),
                        self.user_prompt(text),
                        max_output_tokens=self._max_tokens(),
                    ),
                    timeout=self._config.agent_timeout_seconds,
                )
                tokens = response.total_tokens
                data = self.coerce(response.json())
                if data:
                    return self._outcome(document_id, data, ExtractionMethod.AI, tokens)
                ai_error = "AI reply contained no usable fields"
            except asyncio.TimeoutError:
                ai_error = f"AI extraction timed out after {self._config.agent_timeout_seconds}s"
            except MalformedResponseError as exc:
                ai_error = f"Unreadable AI reply: {exc}"
            except Exception as exc:
                ai_error = f"AI extraction failed: {exc}"
            logger.warning(
                "Extractor | agent=%s doc=%s %s — trying regex fallback",
                self.agent_name, document_id, ai_error,
            )

        data = self.coerce(self._regex_fallback(text))
        if data:
            return self._outcome(document_id, data, ExtractionMethod.REGEX_FALLBACK, tokens)

        error = ai_error or "No fields found"
        logger.warning("Extractor | agent=%s doc=%s extraction failed: %s", self.agent_name, document_id, error)
        return ExtractorOutcome(
            success=False,
            error=error,
            method=ExtractionMethod.REGEX_FALLBACK,
            tokens_used=tokens,
            agent_name=self.agent_name,
        )

    def coerce(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Apply the field spec; unknown keys and empty values are dropped."""
        data: dict[str, Any] = {}
        for name, coercer in self.fields.items():
            if name not in raw:
                continue
            try:
                value = coercer(raw[name])
            except (TypeError, ValueError):
                value = None
            if value is not None and value != "" and value != []:
                data[name] = value
        return data

    def system_prompt(self) -> str:
        field_list = ", ".join(self.fields)
        return (
            f"You extract structured data from a Spanish '{self.document_type.value}' document "
            "managed by a homeowners' community administrator. "
            f"Return one JSON object with these keys: {field_list}. "
            "Use null for anything not present in the text; never invent values. "
            "Dates as YYYY-MM-DD, amounts as plain numbers without currency symbols. "
            f"{self.instructions}"
        ).strip()

    def user_prompt(self, text: str) -> str:
        return f"DOCUMENT TEXT:\n{text[:MAX_PROMPT_CHARS]}"

    @abstractmethod
    def _regex_fallback(self, text: str) -> dict[str, Any]:
        """Best-effort pulls used when the AI call is unavailable or unusable."""

    def _max_tokens(self) -> int:
        return self._config.llm_max_tokens_complex if self.complex else self._config.llm_max_tokens

    def _outcome(self, document_id: str, data: dict[str, Any], method: str, tokens: int) -> ExtractorOutcome:
        missing = [f for f in self.required_fields if f not in data]
        logger.info(
            "Extractor | agent=%s doc=%s method=%s fields=%d missing_required=%s",
            self.agent_name, document_id, method, len(data), missing or "-",
        )
        return ExtractorOutcome(
            success=True,
            data=data,
            method=method,
            tokens_used=tokens,
            agent_name=self.agent_name,
            missing_required=missing,
        )


# ---------------------------------------------------------------------------
# Regex helpers shared by the type extractors
# ---------------------------------------------------------------------------

DATE_PATTERN = r"(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{4}-\d{2}-\d{2}|\d{1,2}\s+de\s+[a-záéíóú]+\s+de\s+\d{4})"
AMOUNT_PATTERN = r"(-?\d+(?:\.\d{3})*(?:[.,]\d{1,2})?)\s*(?:€|eur|euros)?"
NIF_PATTERN = r"\b([A-HJ-NP-SUVW]\d{7}[0-9A-J]|\d{8}[A-Z]|[XYZ]\d{7}[A-Z])\b"


def first_match(pattern: str, text: str, group: int = 1, flags: int = re.IGNORECASE) -> str | None:
    match = re.search(pattern, text, flags)
    if match is None:
        return None
    value = match.group(group)
    return value.strip() if value else None
