"""Code-generation agents that write tests into a workspace."""

from __future__ import annotations

from typing import Dict, Mapping, Type

from ..storage.schema import AiProvider
from .base import DEFAULT_TIMEOUT_S, AgentTarget, CodeAgent, build_prompt
from .claude import ClaudeAgent
from .codex import CodexAgent

AGENTS: Dict[AiProvider, Type[CodeAgent]] = {
    AiProvider.CLAUDE: ClaudeAgent,
    AiProvider.OPENAI: CodexAgent,
}


def get_agent(
    provider: AiProvider | str,
    *,
    timeout: float = DEFAULT_TIMEOUT_S,
    env: Mapping[str, str] | None = None,
) -> CodeAgent:
    """Instantiate the agent registered for ``provider``."""

    try:
        key = AiProvider(provider)
    except ValueError as error:
        known = ", ".join(item.value for item in AiProvider)
        raise ValueError(f"Unknown AI provider {provider!r}; expected one of: {known}") from error
    return AGENTS[key](timeout=timeout, env=env)


__all__ = [
    "AGENTS",
    "AgentTarget",
    "ClaudeAgent",
    "CodeAgent",
    "CodexAgent",
    "build_prompt",
    "get_agent",
]
