"""
LLM Gateway — the single AI client handed to every pipeline component

  ┌─────────────────────────────────────────────────────┐
  │  LLMGateway.invoke() / invoke_json() / invoke_vision│
  │       │                                             │
  │       ▼                                             │
  │  ModelRouter.candidates()    ← eligible models      │
  │       │                                             │
  │       ▼                                             │
  │  FallbackChain.ainvoke       ← auto-failover        │
  │       │                                             │
  │       ▼                                             │
  │  GatewayResponse (content, model, token counts)     │
  └─────────────────────────────────────────────────────┘

Construct one gateway per process (app lifespan / worker start) and pass it
into the cascade, analyzer, classifier and extractors. Tests substitute a
fake with the same three coroutine methods.

Token counts come from the provider's usage metadata when present and are
estimated (4 chars ≈ 1 token) otherwise. The pipeline adds them to
documents.total_tokens_used.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from app.core.config import settings
from app.llm.fallback import FallbackChain
from app.llm.router import ModelRequirements, ModelRouter, RoutingStrategy

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Token usage estimation (approximate: real count from API response)
# ---------------------------------------------------------------------------

def _estimate_tokens(messages: list[BaseMessage]) -> int:
    """Rough token count: 4 chars ≈ 1 token (OpenAI heuristic)."""
    total_chars = sum(len(m.content) for m in messages if isinstance(m.content, str))
    return max(1, total_chars // 4)


# ---------------------------------------------------------------------------
# JSON replies
# ---------------------------------------------------------------------------

class MalformedResponseError(ValueError):
    """The model reply could not be read as a JSON object."""


def parse_json_object(content: str) -> dict[str, Any]:
    """
    Parse a model reply into a dict.

    Accepts replies wrapped in ``` fences or with prose around the object;
    the outermost {...} span is used.

    Raises:
        MalformedResponseError: no JSON object could be decoded.
    """
    cleaned = _FENCE_RE.sub("", content.strip()).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise MalformedResponseError(f"no JSON object in reply: {content[:120]!r}")
    try:
        parsed = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"invalid JSON in reply: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError("reply JSON is not an object")
    return parsed


# ---------------------------------------------------------------------------
# Response dataclass
# ---------------------------------------------------------------------------

@dataclass
class GatewayResponse:
    """The result of a single gateway call."""
    content:       str
    model_used:    str
    provider:      str
    input_tokens:  int
    output_tokens: int
    latency_ms:    float
    request_id:    str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def json(self) -> dict[str, Any]:
        return parse_json_object(self.content)


# ---------------------------------------------------------------------------
# LLMGateway
# ---------------------------------------------------------------------------

class LLMGateway:
    """
    Provider-agnostic LLM interface with routing and fallback.

    All public methods are async and safe for concurrent use.
    """

    def __init__(
        self,
        router:              ModelRouter | None = None,
        per_attempt_timeout: float | None       = None,
    ) -> None:
        self._router  = router or ModelRouter()
        self._timeout = per_attempt_timeout or settings.llm_attempt_timeout_seconds

    async def invoke(
        self,
        messages:        list[BaseMessage],
        organization_id: UUID | None              = None,
        requirements:    ModelRequirements | None = None,
    ) -> GatewayResponse:
        """
        Invoke a model with automatic provider fallback.

        Args:
            messages:        LangChain message list.
            organization_id: Logged with the call for per-tenant accounting.
            requirements:    Routing constraints. Defaults to LOWEST_COST.
        """
        reqs  = requirements or ModelRequirements()
        chain = FallbackChain(self._router, reqs, per_attempt_timeout=self._timeout)

        t0 = time.perf_counter()
        message, spec = await chain.ainvoke(messages)
        latency = (time.perf_counter() - t0) * 1000

        content = message.content if isinstance(message.content, str) else json.dumps(message.content)
        usage = getattr(message, "usage_metadata", None) or {}

        response = GatewayResponse(
            content       = content,
            model_used    = spec.model_id,
            provider      = spec.provider.value,
            input_tokens  = usage.get("input_tokens") or _estimate_tokens(messages),
            output_tokens = usage.get("output_tokens") or max(1, len(content) // 4),
            latency_ms    = latency,
            request_id    = str(uuid.uuid4()),
        )

        logger.info(
            "LLMGateway | org=%s model=%s provider=%s tokens_in=%d tokens_out=%d latency_ms=%.1f",
            organization_id, response.model_used, response.provider,
            response.input_tokens, response.output_tokens, response.latency_ms,
        )
        return response

    async def invoke_json(
        self,
        system_prompt:     str,
        user_prompt:       str,
        max_output_tokens: int | None  = None,
        organization_id:   UUID | None = None,
    ) -> GatewayResponse:
        """Single-turn call in JSON response mode. Parsing is left to the caller."""
        requirements = ModelRequirements(
            strategy=RoutingStrategy.LOWEST_COST,
            max_input_tokens=(len(system_prompt) + len(user_prompt)) // 4 + 1,
            max_output_tokens=max_output_tokens,
            require_json_mode=True,
        )
        return await self.invoke(
            self.build_messages(system_prompt, user_prompt),
            organization_id=organization_id,
            requirements=requirements,
        )

    async def invoke_vision(
        self,
        prompt:          str,
        images_b64:      list[str],
        organization_id: UUID | None = None,
    ) -> GatewayResponse:
        """Send PNG page images (base64) with an instruction; returns plain text."""
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        content.extend(
            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{img}"}}
            for img in images_b64
        )
        requirements = ModelRequirements(
            strategy=RoutingStrategy.HIGHEST_QUALITY,
            max_output_tokens=settings.llm_max_tokens_complex,
            require_vision=True,
        )
        return await self.invoke(
            [HumanMessage(content=content)],
            organization_id=organization_id,
            requirements=requirements,
        )

    @staticmethod
    def build_messages(system_prompt: str, user_prompt: str) -> list[BaseMessage]:
        """Build a standard [SystemMessage, HumanMessage] list."""
        return [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ]


def build_gateway() -> LLMGateway | None:
    """None when no provider is configured; AI steps then use their rule-based fallbacks."""
    if not (settings.openai_api_key or settings.azure_openai_api_key):
        logger.warning("No LLM provider configured — AI steps will use their fallbacks")
        return None
    return LLMGateway()
