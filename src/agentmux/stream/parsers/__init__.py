"""Per-agent output parsers."""

from __future__ import annotations

from agentmux.stream.parsers.base import (
    OutputParser,
    ParsedEvent,
    ParsedUsage,
    ToolUseBlock,
)
from agentmux.stream.parsers.claude import ClaudeOutputParser
from agentmux.stream.parsers.codex import CodexOutputParser

_PARSERS: dict[str, type[OutputParser]] = {
    "claude-code": ClaudeOutputParser,
    "codex": CodexOutputParser,
}


def get_output_parser(tool_type: str) -> OutputParser | None:
    """A fresh parser for ``tool_type``; parsers carry per-process state."""
    parser_cls = _PARSERS.get(tool_type)
    return parser_cls() if parser_cls else None


__all__ = [
    "ClaudeOutputParser",
    "CodexOutputParser",
    "OutputParser",
    "ParsedEvent",
    "ParsedUsage",
    "ToolUseBlock",
    "get_output_parser",
]
