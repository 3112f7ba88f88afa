"""
LLM Model Router — Model Selection per Call Purpose

The router answers "which model should this call use?" for the three kinds
of call the pipeline makes:

  ┌────────────────────────┬──────────────────────┬───────────────────────┐
  │ call                   │ needs                │ default strategy      │
  ├────────────────────────┼──────────────────────┼───────────────────────┤
  │ boundary detection     │ JSON, long context   │ LOWEST_COST           │
  │ classification         │ JSON                 │ LOWEST_COST           │
  │ structured extraction  │ JSON                 │ LOWEST_COST           │
  │ page transcription     │ vision               │ HIGHEST_QUALITY       │
  └────────────────────────┴──────────────────────┴───────────────────────┘

Hard constraints (filters):
  max_input_tokens   → must fit in model's context window
  require_json_mode  → only models supporting JSON response format
  require_vision     → only models accepting image content blocks

Design principles:
  - Selection is pure Python (no I/O, no network) — fast and testable.
  - Provider credentials are resolved from settings when the LangChain
    model is built, never at import time.

Adding a new model:
  Add a ModelSpec to _REGISTERED_MODELS and it becomes immediately eligible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.runnables import Runnable

from app.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RoutingStrategy(str, Enum):
    """Model selection optimisation objective."""
    LOWEST_COST     = "lowest_cost"
    LOWEST_LATENCY  = "lowest_latency"
    HIGHEST_QUALITY = "highest_quality"


class Provider(str, Enum):
    OPENAI        = "openai"
    AZURE_OPENAI  = "azure_openai"


# ---------------------------------------------------------------------------
# ModelSpec: metadata for each registered model
# ---------------------------------------------------------------------------

@dataclass
class ModelSpec:
    """
    Static metadata for one model/provider combination.

    cost_input_per_1k:   USD per 1 000 input tokens
    context_window:      Maximum total tokens (input + output)
    p50_latency_ms:      Approximate median latency in ms
    quality_score:       Subjective 0-10 quality ranking (for HIGHEST_QUALITY)
    """
    model_id:            str
    provider:            Provider
    context_window:      int
    cost_input_per_1k:   float
    cost_output_per_1k:  float
    p50_latency_ms:      int
    quality_score:       float
    supports_json_mode:  bool = True
    supports_vision:     bool = False


# ---------------------------------------------------------------------------
# Registered model catalogue
# ---------------------------------------------------------------------------

_REGISTERED_MODELS: list[ModelSpec] = [
    ModelSpec(
        model_id           = "gpt-4o-mini",
        provider           = Provider.OPENAI,
        context_window     = 128_000,
        cost_input_per_1k  = 0.00015,
        cost_output_per_1k = 0.0006,
        p50_latency_ms     = 400,
        quality_score      = 8.0,
        supports_vision    = True,
    ),
    ModelSpec(
        model_id           = "gpt-4o",
        provider           = Provider.OPENAI,
        context_window     = 128_000,
        cost_input_per_1k  = 0.0025,
        cost_output_per_1k = 0.01,
        p50_latency_ms     = 900,
        quality_score      = 9.5,
        supports_vision    = True,
    ),
    # Azure OpenAI: same model family, EU endpoint; failover target
    ModelSpec(
        model_id           = "gpt-4o",             # deployment name on Azure
        provider           = Provider.AZURE_OPENAI,
        context_window     = 128_000,
        cost_input_per_1k  = 0.0025,
        cost_output_per_1k = 0.01,
        p50_latency_ms     = 1_100,
        quality_score      = 9.4,
        supports_vision    = True,
    ),
]


def registered_models() -> list[ModelSpec]:
    return list(_REGISTERED_MODELS)


# ---------------------------------------------------------------------------
# ModelRequirements: caller-specified constraints
# ---------------------------------------------------------------------------

@dataclass
class ModelRequirements:
    """
    Constraints provided by the caller to influence model selection.

    max_output_tokens overrides settings.llm_max_tokens for this call.
    """
    strategy:           RoutingStrategy = RoutingStrategy.LOWEST_COST
    max_input_tokens:   int             = 4_096
    max_output_tokens:  int | None      = None
    require_json_mode:  bool            = False
    require_vision:     bool            = False

    def accepts(self, spec: ModelSpec) -> bool:
        return (
            spec.context_window >= self.max_input_tokens
            and (not self.require_json_mode or spec.supports_json_mode)
            and (not self.require_vision or spec.supports_vision)
        )


# ---------------------------------------------------------------------------
# ModelRouter
# ---------------------------------------------------------------------------

class ModelRouter:
    """
    Pure-Python routing logic.  No I/O — fast and fully unit-testable.

    Usage::

        router = ModelRouter()
        spec   = router.select(ModelRequirements(require_json_mode=True))
        llm    = router.build_llm(spec, max_tokens=1000, json_mode=True)
    """

    def __init__(self, models: list[ModelSpec] | None = None) -> None:
        self._models = models if models is not None else registered_models()

    def candidates(self, requirements: ModelRequirements) -> list[ModelSpec]:
        """All models satisfying the requirements, best first."""
        eligible = [spec for spec in self._models if requirements.accepts(spec)]

        if requirements.strategy == RoutingStrategy.LOWEST_COST:
            eligible.sort(key=lambda s: (s.cost_input_per_1k, s.cost_output_per_1k))
        elif requirements.strategy == RoutingStrategy.LOWEST_LATENCY:
            eligible.sort(key=lambda s: s.p50_latency_ms)
        else:   # HIGHEST_QUALITY
            eligible.sort(key=lambda s: s.quality_score, reverse=True)
        return eligible

    def select(self, requirements: ModelRequirements) -> ModelSpec:
        """
        Select the best ModelSpec for the given requirements.

        Raises:
            RuntimeError: If no registered model satisfies all constraints.
        """
        eligible = self.candidates(requirements)
        if not eligible:
            raise RuntimeError(
                f"No LLM satisfies constraints: tokens={requirements.max_input_tokens}, "
                f"json={requirements.require_json_mode}, vision={requirements.require_vision}"
            )

        selected = eligible[0]
        logger.info(
            "ModelRouter | selected model_id=%s provider=%s strategy=%s",
            selected.model_id, selected.provider, requirements.strategy,
        )
        return selected

    def build_llm(
        self,
        spec: ModelSpec,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> BaseChatModel | Runnable:
        """
        Instantiate the LangChain chat model for a given ModelSpec.

        With json_mode the model is bound to the JSON response format so the
        reply is a single JSON object.
        """
        max_tokens = max_tokens or settings.llm_max_tokens

        if spec.provider == Provider.OPENAI:
            llm = self._build_openai(spec, max_tokens)
        elif spec.provider == Provider.AZURE_OPENAI:
            llm = self._build_azure_openai(spec, max_tokens)
        else:
            raise ValueError(f"Unsupported provider: {spec.provider}")   # pragma: no cover

        if json_mode and spec.supports_json_mode:
            return llm.bind(response_format={"type": "json_object"})
        return llm

    # -----------------------------------------------------------------------
    # Provider-specific builders
    # -----------------------------------------------------------------------

    @staticmethod
    def _build_openai(spec: ModelSpec, max_tokens: int) -> BaseChatModel:
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=spec.model_id,
            api_key=settings.openai_api_key,
            temperature=settings.llm_temperature,
            max_tokens=max_tokens,
        )

    @staticmethod
    def _build_azure_openai(spec: ModelSpec, max_tokens: int) -> BaseChatModel:
        from langchain_openai import AzureChatOpenAI
        return AzureChatOpenAI(
            azure_deployment=settings.azure_openai_deployment or spec.model_id,
            azure_endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,   # type: ignore[arg-type]
            api_version=settings.azure_openai_api_version,
            temperature=settings.llm_temperature,
            max_tokens=max_tokens,
        )
