"""
Agent Router - Prioritized Model Routing

Decides which backend model serves a chat request. Rules are evaluated in a
fixed priority order and the first satisfied rule wins:

1. Topic summarizer -> orchestrator "haiku" tier (never falls through)
2. Detected sub-agent with an entry in agent_model_map
3. Tier substring (haiku, sonnet, opus) of the requested model name
4. Otherwise UnresolvedRouteError with the full routing context
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from graph.agents import detect_agent_type
from services.errors import ConfigInvariantError, UnresolvedRouteError

logger = logging.getLogger("agent-router.graph")

TOPIC_SUMMARIZER_PHRASE = "Analyze if this message indicates a new conversation topic"

# Checked in this order; a name containing several tiers takes the first.
TIERS = ("haiku", "sonnet", "opus")

RoutingReason = Literal["agent", "orchestrator", "topic-summarizer"]
SystemPrompt = Union[str, List[Dict[str, Any]], None]


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of the routing policy for one request."""
    target_model: str
    reason: RoutingReason
    agent_type: Optional[str] = None


def is_topic_summarizer(system: SystemPrompt) -> bool:
    """True when the system prompt is the internal new-topic classification call."""
    if not system:
        return False
    if isinstance(system, str):
        return TOPIC_SUMMARIZER_PHRASE in system
    if isinstance(system, list):
        return any(
            isinstance(item, dict)
            and item.get("type") == "text"
            and isinstance(item.get("text"), str)
            and TOPIC_SUMMARIZER_PHRASE in item["text"]
            for item in system
        )
    return False


def _routing_context(original_model: str, agent_type: Optional[str], orchestrator_model_map: Mapping[str, str]) -> str:
    return ", ".join([
        f"model={original_model}",
        f"agentDetectionAttempted={'yes' if agent_type else 'no'}",
        f"agentDetected={agent_type or 'none'}",
        f"orchestratorHaiku={orchestrator_model_map.get('haiku') or 'missing'}",
        f"orchestratorSonnet={orchestrator_model_map.get('sonnet') or 'missing'}",
        f"orchestratorOpus={orchestrator_model_map.get('opus') or 'missing'}",
    ])


def determine_routing(
    original_model: str,
    system: SystemPrompt = None,
    messages: Optional[List[Any]] = None,
    agent_model_map: Optional[Mapping[str, str]] = None,
    orchestrator_model_map: Optional[Mapping[str, str]] = None,
) -> RoutingDecision:
    """
    Resolve the target model for a request.

    Pure function: the routing tables are passed in, nothing is read from
    global state. Raises ConfigInvariantError when the topic summarizer
    fires without a haiku tier, UnresolvedRouteError when nothing matches.
    """
    agent_model_map = agent_model_map or {}
    orchestrator_model_map = orchestrator_model_map or {}
    original_model = original_model or ""

    # --- Priority 1: topic summarizer ---
    if is_topic_summarizer(system):
        haiku = orchestrator_model_map.get("haiku")
        if not haiku:
            raise ConfigInvariantError(["orchestrator_model_map.haiku is not defined"])
        return RoutingDecision(target_model=haiku, reason="topic-summarizer")

    # --- Priority 2: sub-agent override ---
    agent_type = detect_agent_type(messages)
    if agent_type and agent_model_map.get(agent_type):
        return RoutingDecision(
            target_model=agent_model_map[agent_type],
            reason="agent",
            agent_type=agent_type,
        )

    # --- Priority 3: orchestrator tiers ---
    model_lower = original_model.lower()
    for tier in TIERS:
        if tier in model_lower and orchestrator_model_map.get(tier):
            return RoutingDecision(target_model=orchestrator_model_map[tier], reason="orchestrator")

    # --- Priority 4: unresolved ---
    context = _routing_context(original_model, agent_type, orchestrator_model_map)
    logger.debug(f"Unresolved route: {context}")
    raise UnresolvedRouteError(f"Unknown model: {original_model} ({context})")
