"""
Test Routing Policy priority order.

Verifies:
- Topic summarizer always goes to the haiku tier
- Detected agents override tier matching
- Tier substrings are checked haiku, sonnet, opus
- Unresolved routes fail with a self-describing message
"""
import pytest

from graph.router import RoutingDecision, determine_routing, is_topic_summarizer
from services.errors import ConfigInvariantError, UnresolvedRouteError

TOPIC_PROMPT = "You are a helper. Analyze if this message indicates a new conversation topic. Reply in JSON."
AGENT_MARKER = "SubagentStart hook additional context: Agent oh-my-claudecode:{} started"

AGENTS = {"explore": "fast-model", "planner": "big-model"}
TIERS = {"haiku": "haiku-target", "sonnet": "sonnet-target", "opus": "opus-target"}


def agent_messages(agent):
    return [{"role": "user", "content": AGENT_MARKER.format(agent)}]


class TestTopicSummarizer:

    def test_string_system_prompt(self):
        decision = determine_routing("claude-opus-4", TOPIC_PROMPT, None, AGENTS, TIERS)
        assert decision == RoutingDecision(target_model="haiku-target", reason="topic-summarizer")

    def test_segmented_system_prompt(self):
        system = [{"type": "text", "text": "prefix"}, {"type": "text", "text": TOPIC_PROMPT}]
        decision = determine_routing("claude-sonnet-4", system, None, AGENTS, TIERS)
        assert decision.reason == "topic-summarizer"

    def test_beats_agent_detection(self):
        decision = determine_routing("claude-opus-4", TOPIC_PROMPT, agent_messages("planner"), AGENTS, TIERS)
        assert decision.target_model == "haiku-target"
        assert decision.agent_type is None

    def test_missing_haiku_tier_is_config_error(self):
        with pytest.raises(ConfigInvariantError):
            determine_routing("claude-sonnet-4", TOPIC_PROMPT, None, AGENTS, {"sonnet": "sonnet-target"})

    def test_non_text_segments_ignored(self):
        system = [{"type": "image", "text": TOPIC_PROMPT}]
        assert is_topic_summarizer(system) is False

    @pytest.mark.parametrize("system", [None, "", [], "You are a coding assistant."])
    def test_not_topic_summarizer(self, system):
        assert is_topic_summarizer(system) is False


class TestAgentRouting:

    def test_agent_mapping_wins_over_tier(self):
        decision = determine_routing("claude-sonnet-4-6", None, agent_messages("planner"), AGENTS, TIERS)
        assert decision == RoutingDecision(target_model="big-model", reason="agent", agent_type="planner")

    def test_unmapped_agent_falls_through_to_tier(self):
        decision = determine_routing("claude-opus-4-6", None, agent_messages("writer"), AGENTS, TIERS)
        assert decision == RoutingDecision(target_model="opus-target", reason="orchestrator")


class TestTierFallback:

    @pytest.mark.parametrize("model,target", [
        ("claude-3-5-haiku", "haiku-target"),
        ("Claude-SONNET-4", "sonnet-target"),
        ("claude-opus-4-6", "opus-target"),
    ])
    def test_tier_substring(self, model, target):
        decision = determine_routing(model, None, None, AGENTS, TIERS)
        assert decision.target_model == target
        assert decision.reason == "orchestrator"

    def test_haiku_checked_before_sonnet_and_opus(self):
        decision = determine_routing("opus-sonnet-haiku", None, None, AGENTS, TIERS)
        assert decision.target_model == "haiku-target"

    def test_unmapped_tier_tries_next_tier(self):
        decision = determine_routing("haiku-or-sonnet", None, None, AGENTS, {"sonnet": "sonnet-target"})
        assert decision.target_model == "sonnet-target"


class TestUnresolved:

    def test_error_message_carries_context(self):
        with pytest.raises(UnresolvedRouteError) as exc:
            determine_routing("gpt-4o", None, None, AGENTS, {"haiku": "haiku-target"})
        msg = str(exc.value)
        assert msg.startswith("Unknown model: gpt-4o (")
        assert "model=gpt-4o" in msg
        assert "agentDetectionAttempted=no" in msg
        assert "agentDetected=none" in msg
        assert "orchestratorHaiku=haiku-target" in msg
        assert "orchestratorSonnet=missing" in msg
        assert "orchestratorOpus=missing" in msg

    def test_error_reports_detected_agent(self):
        with pytest.raises(UnresolvedRouteError) as exc:
            determine_routing("gpt-4o", None, agent_messages("writer"), AGENTS, TIERS)
        assert "agentDetectionAttempted=yes" in str(exc.value)
        assert "agentDetected=writer" in str(exc.value)

    def test_tier_present_but_table_empty(self):
        with pytest.raises(UnresolvedRouteError):
            determine_routing("claude-sonnet-4", None, None, None, None)
