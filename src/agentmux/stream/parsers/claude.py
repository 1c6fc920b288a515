"""Parser for Claude Code's ``--output-format stream-json`` events."""

from __future__ import annotations

import json
import logging
from typing import Any

from agentmux.stream.error_patterns import AgentError
from agentmux.stream.parsers.base import (
    OutputParser,
    ParsedEvent,
    ParsedUsage,
    ToolUseBlock,
    error_message_from,
)
from agentmux.stream.usage import aggregate_model_usage

logger = logging.getLogger(__name__)


def _has_usage(msg: dict[str, Any]) -> bool:
    return bool(msg.get("modelUsage") or msg.get("usage")) or "total_cost_usd" in msg


class ClaudeOutputParser(OutputParser):
    agent_id = "claude-code"

    def parse_json_line(self, line: str) -> ParsedEvent | None:
        if not line.strip():
            return None
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            return ParsedEvent(type="text", text=line, raw=line)
        if not isinstance(msg, dict):
            return ParsedEvent(type="system", raw=msg)
        return self._transform(msg)

    def _transform(self, msg: dict[str, Any]) -> ParsedEvent:
        msg_type = msg.get("type")
        session_id = msg.get("session_id")

        if msg_type == "system" and msg.get("subtype") == "init":
            return ParsedEvent(
                type="init",
                session_id=session_id,
                slash_commands=msg.get("slash_commands"),
                raw=msg,
            )

        if msg_type == "result":
            text = msg.get("result") or self._text_blocks(msg)
            return ParsedEvent(
                type="result",
                text=text or None,
                session_id=session_id,
                usage=self._usage(msg),
                raw=msg,
            )

        if msg_type == "assistant":
            # Thinking takes priority so the UI can show reasoning as it streams
            text = self._thinking_blocks(msg) or self._text_blocks(msg)
            return ParsedEvent(
                type="text",
                text=text,
                session_id=session_id,
                is_partial=True,
                tool_use_blocks=self._tool_use_blocks(msg),
                raw=msg,
            )

        if _has_usage(msg):
            return ParsedEvent(
                type="usage", session_id=session_id, usage=self._usage(msg), raw=msg
            )

        return ParsedEvent(type="system", session_id=session_id, raw=msg)

    @staticmethod
    def _content(msg: dict[str, Any]) -> Any:
        message = msg.get("message")
        if isinstance(message, dict):
            return message.get("content")
        return None

    def _text_blocks(self, msg: dict[str, Any]) -> str:
        content = self._content(msg)
        if isinstance(content, str):
            return content
        if not isinstance(content, list):
            return ""
        return "".join(
            b["text"] for b in content if b.get("type") == "text" and b.get("text")
        )

    def _thinking_blocks(self, msg: dict[str, Any]) -> str:
        content = self._content(msg)
        if not isinstance(content, list):
            return ""
        return "".join(
            b["thinking"]
            for b in content
            if b.get("type") == "thinking" and b.get("thinking")
        )

    def _tool_use_blocks(self, msg: dict[str, Any]) -> list[ToolUseBlock]:
        content = self._content(msg)
        if not isinstance(content, list):
            return []
        return [
            ToolUseBlock(name=b["name"], id=b.get("id"), input=b.get("input"))
            for b in content
            if b.get("type") == "tool_use" and b.get("name")
        ]

    def _usage(self, msg: dict[str, Any]) -> ParsedUsage | None:
        if not _has_usage(msg):
            return None
        stats = aggregate_model_usage(
            msg.get("modelUsage"), msg.get("usage") or {}, msg.get("total_cost_usd") or 0.0
        )
        return ParsedUsage(
            input_tokens=stats.input_tokens,
            output_tokens=stats.output_tokens,
            cache_read_tokens=stats.cache_read_input_tokens,
            cache_creation_tokens=stats.cache_creation_input_tokens,
            cost_usd=stats.total_cost_usd,
            context_window=stats.context_window,
        )

    # -- error detection ---------------------------------------------------

    @staticmethod
    def _structured_error(parsed: Any) -> str | None:
        if not isinstance(parsed, dict):
            return None
        msg_type = parsed.get("type") if isinstance(parsed.get("type"), str) else ""
        message = parsed.get("message") if isinstance(parsed.get("message"), str) else None
        error_field = parsed.get("error")

        if msg_type == "error" and message:
            return message
        if msg_type in ("turn.failed", "turn_failed", "error"):
            text = error_message_from(error_field)
            if text:
                return text
        if error_field:
            return error_message_from(error_field)
        return None

    def _error_from_mixed_line(self, line: str) -> tuple[str | None, Any]:
        """Find a JSON object embedded after a plain-text prefix."""
        start = line.find("{")
        if start == -1:
            return None, None
        try:
            parsed = json.loads(line[start:])
        except json.JSONDecodeError:
            return None, None
        text = self._structured_error(parsed)
        return (text, parsed) if text else (None, None)

    def detect_error_from_line(self, line: str) -> AgentError | None:
        if not line.strip():
            return None
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            text, parsed_json = self._error_from_mixed_line(line)
        else:
            text = self._structured_error(parsed)
            parsed_json = parsed if text else None

        if not text:
            return None

        raw = {"error_line": line}
        matched = self._pattern_error(text, raw, parsed_json)
        if matched:
            return matched
        if parsed_json is not None:
            return self._unknown_error(text, raw, parsed_json)
        return None

    def detect_error_from_exit(
        self, exit_code: int, stderr: str, stdout: str
    ) -> AgentError | None:
        if exit_code == 0:
            return None
        raw = {"exit_code": exit_code, "stderr": stderr, "stdout": stdout}
        text, parsed_json = self._error_from_mixed_line(stderr)
        if text:
            matched = self._pattern_error(text, raw, parsed_json)
            if matched:
                return matched
        matched = self._pattern_error(f"{stderr}\n{stdout}", raw, parsed_json)
        if matched:
            return matched
        if text and parsed_json is not None:
            return self._unknown_error(text, raw, parsed_json)
        return super().detect_error_from_exit(exit_code, stderr, stdout)
