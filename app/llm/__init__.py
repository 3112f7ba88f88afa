"""
LLM Gateway Package

Provider-agnostic access to the models the ingestion pipeline calls:
  - OpenAI           (gpt-4o-mini for JSON tasks, gpt-4o for page transcription)
  - Azure OpenAI     (same models, EU endpoint; failover target)

Public API::

    from app.llm import LLMGateway

    gateway = LLMGateway()
    response = await gateway.invoke_json(system_prompt, user_prompt, max_output_tokens=1000)
    data = response.json()
"""

from app.llm.gateway import GatewayResponse, LLMGateway, MalformedResponseError, build_gateway, parse_json_object
from app.llm.router import ModelRequirements, ModelSpec, RoutingStrategy

__all__ = [
    "GatewayResponse",
    "LLMGateway",
    "MalformedResponseError",
    "build_gateway",
    "ModelRequirements",
    "ModelSpec",
    "RoutingStrategy",
    "parse_json_object",
]
