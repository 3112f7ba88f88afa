"""
LLM Fallback Chain — Automatic Provider Failover

When a provider returns a transient error (rate limit, 5xx, connection
reset) or does not answer within the per-attempt timeout, the chain tries
the next eligible model until one succeeds or all are exhausted.

Retry policy:
  - Retryable:     RateLimitError, InternalServerError, APITimeoutError,
                   APIConnectionError, httpx timeouts, per-attempt timeout
  - Non-retryable: bad request, auth failure — raised immediately

Circuit breaker:
  A provider that fails OPEN_THRESHOLD times in a row is skipped for
  RESET_SECONDS. In-process only; every worker keeps its own counters.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from langchain_core.messages import AIMessage, BaseMessage

from app.llm.router import ModelRequirements, ModelRouter, ModelSpec, Provider

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Retryable exception detection
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)


def is_retryable(exc: BaseException) -> bool:
    """True if the exception class name suggests a transient provider error."""
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


class AllProvidersFailedError(RuntimeError):
    """Every eligible model failed with a retryable error."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(
            "All LLM providers failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )


# ---------------------------------------------------------------------------
# Circuit breaker (in-process)
# ---------------------------------------------------------------------------

@dataclass
class _CircuitState:
    failures:       int   = 0
    open_until:     float = 0.0        # monotonic time after which to retry
    OPEN_THRESHOLD: int   = 3
    RESET_SECONDS:  int   = 60


_CIRCUIT_STATES: dict[Provider, _CircuitState] = {p: _CircuitState() for p in Provider}


def _is_circuit_open(provider: Provider) -> bool:
    state = _CIRCUIT_STATES[provider]
    if state.failures < state.OPEN_THRESHOLD:
        return False
    if time.monotonic() >= state.open_until:
        state.failures = 0
        return False
    return True


def _record_failure(provider: Provider) -> None:
    state = _CIRCUIT_STATES[provider]
    state.failures  += 1
    state.open_until = time.monotonic() + state.RESET_SECONDS
    logger.warning(
        "Circuit breaker | provider=%s failures=%d open_until=+%ds",
        provider, state.failures, state.RESET_SECONDS,
    )


def _record_success(provider: Provider) -> None:
    _CIRCUIT_STATES[provider].failures = 0


def reset_circuits() -> None:
    for state in _CIRCUIT_STATES.values():
        state.failures = 0
        state.open_until = 0.0


# ---------------------------------------------------------------------------
# FallbackChain
# ---------------------------------------------------------------------------

class FallbackChain:
    """
    Ordered list of eligible models with automatic failover.

    Usage::

        chain = FallbackChain(router, ModelRequirements(require_json_mode=True))
        message, spec = await chain.ainvoke(messages)
    """

    def __init__(
        self,
        router:              ModelRouter,
        requirements:        ModelRequirements | None = None,
        per_attempt_timeout: float = 30.0,
    ) -> None:
        self._router              = router
        self._requirements        = requirements or ModelRequirements()
        self._per_attempt_timeout = per_attempt_timeout
        self._specs               = self._build_fallback_list()

    @property
    def specs(self) -> list[ModelSpec]:
        return list(self._specs)

    def _build_fallback_list(self) -> list[ModelSpec]:
        """Router's pick first, then every other eligible model by quality."""
        primary = self._router.select(self._requirements)
        others  = [
            s for s in self._router.candidates(self._requirements)
            if s.model_id != primary.model_id or s.provider != primary.provider
        ]
        others.sort(key=lambda s: s.quality_score, reverse=True)
        return [primary, *others]

    async def ainvoke(self, messages: list[BaseMessage]) -> tuple[AIMessage, ModelSpec]:
        """
        Invoke the chain with automatic fallback.

        Returns the model's AIMessage and the spec that produced it.

        Raises:
            AllProvidersFailedError: every eligible model failed transiently.
        """
        errors: list[str] = []

        for spec in self._specs:
            if _is_circuit_open(spec.provider):
                logger.debug("Skipping provider=%s (circuit open)", spec.provider)
                continue

            llm = self._router.build_llm(
                spec,
                max_tokens=self._requirements.max_output_tokens,
                json_mode=self._requirements.require_json_mode,
            )
            try:
                logger.debug("FallbackChain | trying provider=%s model=%s", spec.provider, spec.model_id)
                message = await asyncio.wait_for(
                    llm.ainvoke(messages),
                    timeout=self._per_attempt_timeout,
                )
                _record_success(spec.provider)
                return message, spec

            except asyncio.TimeoutError:
                err = f"{spec.provider.value}/{spec.model_id}: timed out after {self._per_attempt_timeout}s"
                logger.warning("FallbackChain | %s", err)
                _record_failure(spec.provider)
                errors.append(err)

            except Exception as exc:
                if not is_retryable(exc):
                    raise
                err = f"{spec.provider.value}/{spec.model_id}: {type(exc).__name__}: {exc}"
                logger.warning("FallbackChain | retryable error — %s", err)
                _record_failure(spec.provider)
                errors.append(err)

        raise AllProvidersFailedError(errors)
