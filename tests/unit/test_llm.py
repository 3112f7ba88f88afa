"""
Unit Tests — LLM Gateway, Router and Fallback Chain
════════════════════════════════════════════════════
No provider is called: a router subclass hands out scripted chat models.

Coverage targets:
  ✅ parse_json_object()  → fences, surrounding prose, non-object, invalid JSON
  ✅ ModelRouter          → strategy ordering, vision / context filters
  ✅ FallbackChain        → failover on retryable errors and timeouts,
                            non-retryable errors raised, circuit breaker
  ✅ LLMGateway           → token counts from usage metadata or estimated
  ✅ build_gateway()      → None without credentials
"""

from __future__ import annotations

import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from app.llm.fallback import AllProvidersFailedError, FallbackChain, reset_circuits
from app.llm.gateway import LLMGateway, MalformedResponseError, build_gateway, parse_json_object
from app.llm.router import (
    ModelRequirements,
    ModelRouter,
    ModelSpec,
    Provider,
    RoutingStrategy,
)

MINI = ModelSpec("gpt-4o-mini", Provider.OPENAI, 128_000, 0.00015, 0.0006, 400, 8.0, supports_vision=True)
FULL = ModelSpec("gpt-4o", Provider.OPENAI, 128_000, 0.0025, 0.01, 900, 9.5, supports_vision=True)
AZURE = ModelSpec("gpt-4o", Provider.AZURE_OPENAI, 128_000, 0.0025, 0.01, 1_100, 9.4, supports_vision=True)
SMALL = ModelSpec("tiny", Provider.OPENAI, 8_000, 0.0001, 0.0001, 200, 5.0, supports_json_mode=False)


class RateLimitError(Exception):
    pass


class BadRequestError(Exception):
    pass


class _ScriptedModel:
    def __init__(self, outcome) -> None:
        self.outcome = outcome

    async def ainvoke(self, messages):
        if isinstance(self.outcome, float):
            await asyncio.sleep(self.outcome)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


class StubRouter(ModelRouter):
    """Routes like ModelRouter; build_llm returns scripted models keyed by (provider, model_id)."""

    def __init__(self, models: list[ModelSpec], outcomes: dict) -> None:
        super().__init__(models)
        self.outcomes = outcomes
        self.built: list[tuple[str, str, int | None, bool]] = []

    def build_llm(self, spec, max_tokens=None, json_mode=False):
        self.built.append((spec.provider.value, spec.model_id, max_tokens, json_mode))
        return _ScriptedModel(self.outcomes[(spec.provider, spec.model_id)])


def _reply(content: str = '{"ok": true}', usage: dict | None = None) -> AIMessage:
    if usage:
        return AIMessage(content=content, usage_metadata=usage)
    return AIMessage(content=content)


@pytest.fixture(autouse=True)
def clean_circuits():
    reset_circuits()
    yield
    reset_circuits()


# ─────────────────────────────────────────────────────────────────────────────
# JSON replies
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestParseJsonObject:

    @pytest.mark.parametrize("content", [
        '{"document_type": "acta"}',
        '```json\n{"document_type": "acta"}\n```',
        'Claro, aquí está: {"document_type": "acta"} ¿algo más?',
    ])
    def test_accepted_shapes(self, content):
        assert parse_json_object(content) == {"document_type": "acta"}

    @pytest.mark.parametrize("content", ["", "sin json", '["acta"]', '{"a": }'])
    def test_rejected(self, content):
        with pytest.raises(MalformedResponseError):
            parse_json_object(content)


# ─────────────────────────────────────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestModelRouter:

    def test_lowest_cost(self):
        router = ModelRouter([FULL, MINI, AZURE])
        assert router.select(ModelRequirements(require_json_mode=True)) is MINI

    def test_highest_quality_with_vision(self):
        router = ModelRouter([MINI, AZURE, FULL, SMALL])
        requirements = ModelRequirements(strategy=RoutingStrategy.HIGHEST_QUALITY, require_vision=True)
        assert router.candidates(requirements) == [FULL, AZURE, MINI]

    def test_lowest_latency(self):
        router = ModelRouter([FULL, AZURE, SMALL])
        assert router.select(ModelRequirements(strategy=RoutingStrategy.LOWEST_LATENCY)) is SMALL

    def test_filters_json_mode_and_context(self):
        router = ModelRouter([SMALL, MINI])
        assert router.candidates(ModelRequirements(require_json_mode=True)) == [MINI]
        assert router.candidates(ModelRequirements(max_input_tokens=50_000)) == [MINI]

    def test_nothing_eligible(self):
        with pytest.raises(RuntimeError, match="No LLM satisfies"):
            ModelRouter([SMALL]).select(ModelRequirements(require_vision=True))


# ─────────────────────────────────────────────────────────────────────────────
# Fallback chain
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestFallbackChain:

    def test_order_is_primary_then_quality(self):
        router = StubRouter([MINI, AZURE, FULL], {})
        chain = FallbackChain(router, ModelRequirements(require_json_mode=True))
        assert chain.specs == [MINI, FULL, AZURE]

    async def test_retryable_error_moves_to_next_model(self):
        router = StubRouter([MINI, AZURE], {
            (Provider.OPENAI, "gpt-4o-mini"): RateLimitError("429"),
            (Provider.AZURE_OPENAI, "gpt-4o"): _reply("hola"),
        })

        message, spec = await FallbackChain(router).ainvoke([HumanMessage(content="hi")])

        assert message.content == "hola"
        assert spec is AZURE

    async def test_timeout_moves_to_next_model(self):
        router = StubRouter([MINI, AZURE], {
            (Provider.OPENAI, "gpt-4o-mini"): 1.0,
            (Provider.AZURE_OPENAI, "gpt-4o"): _reply(),
        })

        _, spec = await FallbackChain(router, per_attempt_timeout=0.01).ainvoke([HumanMessage(content="hi")])

        assert spec is AZURE

    async def test_non_retryable_error_is_raised(self):
        router = StubRouter([MINI, AZURE], {
            (Provider.OPENAI, "gpt-4o-mini"): BadRequestError("bad schema"),
            (Provider.AZURE_OPENAI, "gpt-4o"): _reply(),
        })

        with pytest.raises(BadRequestError):
            await FallbackChain(router).ainvoke([HumanMessage(content="hi")])

    async def test_all_failed(self):
        router = StubRouter([MINI, AZURE], {
            (Provider.OPENAI, "gpt-4o-mini"): RateLimitError("429"),
            (Provider.AZURE_OPENAI, "gpt-4o"): RateLimitError("429"),
        })

        with pytest.raises(AllProvidersFailedError) as exc:
            await FallbackChain(router).ainvoke([HumanMessage(content="hi")])

        assert len(exc.value.errors) == 2

    async def test_circuit_opens_after_repeated_failures(self):
        router = StubRouter([MINI, AZURE], {
            (Provider.OPENAI, "gpt-4o-mini"): RateLimitError("429"),
            (Provider.AZURE_OPENAI, "gpt-4o"): _reply(),
        })

        for _ in range(3):
            await FallbackChain(router).ainvoke([HumanMessage(content="hi")])
        router.built.clear()
        await FallbackChain(router).ainvoke([HumanMessage(content="hi")])

        assert [b[0] for b in router.built] == ["azure_openai"]


# ─────────────────────────────────────────────────────────────────────────────
# Gateway
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestLLMGateway:

    async def test_invoke_json_uses_reported_usage(self):
        router = StubRouter([MINI], {
            (Provider.OPENAI, "gpt-4o-mini"): _reply(
                '{"document_type": "factura"}',
                {"input_tokens": 310, "output_tokens": 12, "total_tokens": 322},
            ),
        })

        response = await LLMGateway(router, per_attempt_timeout=5).invoke_json(
            "Classify", "FACTURA Nº 1", max_output_tokens=300,
        )

        assert response.json() == {"document_type": "factura"}
        assert response.model_used == "gpt-4o-mini"
        assert response.provider == "openai"
        assert response.total_tokens == 322
        assert router.built == [("openai", "gpt-4o-mini", 300, True)]

    async def test_tokens_estimated_without_usage(self):
        router = StubRouter([MINI], {(Provider.OPENAI, "gpt-4o-mini"): _reply("x" * 40)})

        response = await LLMGateway(router, per_attempt_timeout=5).invoke_json("s" * 40, "u" * 40)

        assert response.input_tokens == 20
        assert response.output_tokens == 10

    async def test_invoke_vision_requires_vision_model(self):
        router = StubRouter([SMALL, FULL], {(Provider.OPENAI, "gpt-4o"): _reply("Texto de la página")})

        response = await LLMGateway(router, per_attempt_timeout=5).invoke_vision("Transcribe", ["aGVsbG8="])

        assert response.content == "Texto de la página"
        assert router.built[0][:2] == ("openai", "gpt-4o")

    def test_build_gateway_without_credentials(self, monkeypatch):
        from app.core.config import settings

        monkeypatch.setattr(settings, "openai_api_key", "")
        monkeypatch.setattr(settings, "azure_openai_api_key", "")
        assert build_gateway() is None

        monkeypatch.setattr(settings, "openai_api_key", "sk-test")
        assert isinstance(build_gateway(), LLMGateway)
