"""Parser interface shared by every agent's line-delimited JSON output."""

from __future__ import annotations

import abc
import json
from dataclasses import dataclass, field
from typing import Any

from agentmux.stream.error_patterns import (
    AgentError,
    AgentErrorType,
    get_error_patterns,
    match_error_pattern,
)


@dataclass
class ParsedUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0
    context_window: int = 0
    reasoning_tokens: int = 0


@dataclass
class ToolUseBlock:
    name: str
    id: str | None = None
    input: Any = None


@dataclass
class ParsedEvent:
    """One normalized event decoded from an agent output line.

    ``type`` is one of: init, text, tool_use, result, usage, system, error.
    """

    type: str
    text: str | None = None
    session_id: str | None = None
    is_partial: bool = False
    tool_name: str | None = None
    tool_state: dict[str, Any] | None = None
    tool_use_blocks: list[ToolUseBlock] = field(default_factory=list)
    slash_commands: list[Any] | None = None
    usage: ParsedUsage | None = None
    raw: Any = None


def error_message_from(field_value: Any) -> str | None:
    """Best human-readable text from an ``error`` field of any shape."""
    if isinstance(field_value, str):
        return field_value
    if isinstance(field_value, (bool, int, float)):
        return str(field_value)
    if isinstance(field_value, dict):
        message = field_value.get("message")
        if isinstance(message, str):
            return message
        return json.dumps(field_value)
    return None


class OutputParser(abc.ABC):
    """Translate an agent's JSON lines into :class:`ParsedEvent` values."""

    agent_id: str = ""

    def __init__(self) -> None:
        self._error_patterns = get_error_patterns(self.agent_id)

    @abc.abstractmethod
    def parse_json_line(self, line: str) -> ParsedEvent | None: ...

    @abc.abstractmethod
    def detect_error_from_line(self, line: str) -> AgentError | None: ...

    def is_result_message(self, event: ParsedEvent) -> bool:
        return event.type == "result"

    def extract_session_id(self, event: ParsedEvent) -> str | None:
        return event.session_id or None

    def extract_usage(self, event: ParsedEvent) -> ParsedUsage | None:
        return event.usage

    def extract_slash_commands(self, event: ParsedEvent) -> list[Any] | None:
        return event.slash_commands

    def detect_error_from_exit(
        self, exit_code: int, stderr: str, stdout: str
    ) -> AgentError | None:
        """Classify a non-zero exit; ``agent_crashed`` when nothing matches."""
        if exit_code == 0:
            return None
        raw = {"exit_code": exit_code, "stderr": stderr, "stdout": stdout}
        matched = self._pattern_error(f"{stderr}\n{stdout}", raw)
        if matched:
            return matched
        return AgentError(
            type=AgentErrorType.AGENT_CRASHED,
            message=f"Agent exited with code {exit_code}",
            recoverable=True,
            agent_id=self.agent_id,
            raw=raw,
        )

    # -- helpers for subclasses ------------------------------------------

    def _pattern_error(
        self, text: str, raw: dict[str, Any], parsed_json: Any = None
    ) -> AgentError | None:
        match = match_error_pattern(self._error_patterns, text)
        if match is None:
            return None
        return AgentError(
            type=match.type,
            message=match.message,
            recoverable=match.recoverable,
            agent_id=self.agent_id,
            raw=raw,
            parsed_json=parsed_json,
        )

    def _unknown_error(
        self, text: str, raw: dict[str, Any], parsed_json: Any
    ) -> AgentError:
        return AgentError(
            type=AgentErrorType.UNKNOWN,
            message=text,
            recoverable=True,
            agent_id=self.agent_id,
            raw=raw,
            parsed_json=parsed_json,
        )
