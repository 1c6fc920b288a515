"""Agent capabilities — what each supported coding-agent CLI can do.

The supervisor consults this table when deciding how a prompt or image
reaches the agent, whether a pseudo-terminal is needed, and how usage
counters should be interpreted.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable

ImageArgsBuilder = Callable[[str], list[str]]
PromptArgsBuilder = Callable[[str], list[str]]


@dataclass(frozen=True)
class AgentCapabilities:
    """Feature flags for one agent CLI. Unknown agents get the all-off defaults."""

    supports_stream_json_input: bool = False
    supports_images: bool = False
    supports_resume: bool = False
    supports_session_id: bool = False
    supports_slash_commands: bool = False
    supports_usage_stats: bool = False
    supports_result_messages: bool = False
    requires_pty: bool = False
    requires_prompt_to_start: bool = False
    # Codex and Claude report running totals rather than per-turn deltas
    usage_is_cumulative: bool = False
    no_prompt_separator: bool = False
    # "prompt-embed": during resume, list image paths in the prompt text
    image_resume_mode: str | None = None
    image_args: ImageArgsBuilder | None = None
    prompt_args: PromptArgsBuilder | None = None
    default_context_window: int = 0


DEFAULT_CAPABILITIES = AgentCapabilities()

AGENT_CAPABILITIES: dict[str, AgentCapabilities] = {
    "claude-code": AgentCapabilities(
        supports_stream_json_input=True,
        supports_images=True,
        supports_resume=True,
        supports_session_id=True,
        supports_slash_commands=True,
        supports_usage_stats=True,
        supports_result_messages=True,
        usage_is_cumulative=True,
        default_context_window=200_000,
    ),
    "codex": AgentCapabilities(
        supports_images=True,
        supports_resume=True,
        supports_session_id=True,
        supports_usage_stats=True,
        requires_prompt_to_start=True,
        usage_is_cumulative=True,
        image_resume_mode="prompt-embed",
        image_args=lambda path: ["-i", path],
        default_context_window=200_000,
    ),
    "opencode": AgentCapabilities(
        supports_images=True,
        supports_resume=True,
        supports_session_id=True,
        supports_usage_stats=True,
        supports_result_messages=True,
        no_prompt_separator=True,
        image_args=lambda path: ["-f", path],
    ),
    "terminal": AgentCapabilities(requires_pty=True),
}


def get_capabilities(tool_type: str) -> AgentCapabilities:
    """Return the capability table for ``tool_type`` (defaults if unknown)."""
    return AGENT_CAPABILITIES.get(tool_type, DEFAULT_CAPABILITIES)


def with_overrides(caps: AgentCapabilities, **overrides: object) -> AgentCapabilities:
    """Copy ``caps`` replacing only the non-None overrides."""
    changes = {k: v for k, v in overrides.items() if v is not None}
    return replace(caps, **changes) if changes else caps
