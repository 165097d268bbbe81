"""
Agent detection.

Sub-agents launched by the orchestration hooks announce themselves in the
transcript with a line such as::

    SubagentStart hook additional context: Agent oh-my-claudecode:explore started

The classifier scans the transcript for that marker and returns the agent
name when it belongs to the known set.
"""

import re
from typing import Any, Iterable, Iterator, Optional

VALID_AGENT_TYPES = frozenset({
    "analyst",
    "architect",
    "build-fixer",
    "code-reviewer",
    "code-simplifier",
    "critic",
    "debugger",
    "deep-executor",
    "designer",
    "document-specialist",
    "executor",
    "explore",
    "git-master",
    "planner",
    "qa-tester",
    "quality-reviewer",
    "scientist",
    "security-reviewer",
    "test-engineer",
    "verifier",
    "writer",
})

# The namespace prefix is optional and never part of the captured name.
SUBAGENT_START_PATTERN = re.compile(
    r"SubagentStart hook additional context:\s*Agent\s+(?:oh-my-claudecode:)?(\S+)\s+started",
    re.I,
)


def match_agent(text: str) -> Optional[str]:
    """Return the known agent announced in ``text``, or None."""
    match = SUBAGENT_START_PATTERN.search(text)
    if not match:
        return None
    agent = match.group(1).lower()
    return agent if agent in VALID_AGENT_TYPES else None


def _texts(content: Any) -> Iterator[str]:
    if isinstance(content, str):
        yield content
    elif isinstance(content, list):
        for part in content:
            # Only text parts are searched; images, tool calls etc. are skipped.
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                yield part["text"]


def detect_agent_type(messages: Optional[Iterable[Any]] = None) -> Optional[str]:
    """
    Scan the transcript in order and return the first known agent.

    A marker naming an unknown agent does not stop the scan; later messages
    may still carry a valid one.
    """
    if not isinstance(messages, (list, tuple)):
        return None

    for message in messages:
        if not isinstance(message, dict):
            continue
        for text in _texts(message.get("content")):
            agent = match_agent(text)
            if agent:
                return agent
    return None
