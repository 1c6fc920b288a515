"""Parser for Codex ``exec --json`` output.

Codex has shipped two line formats: flat ``{"type": "thread.started"}``
style events, and ``{"id": ..., "msg": {"type": ...}}`` envelopes. Both
are accepted.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from agentmux.stream.error_patterns import AgentError
from agentmux.stream.parsers.base import (
    OutputParser,
    ParsedEvent,
    ParsedUsage,
    error_message_from,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 400_000
MAX_TOOL_OUTPUT_LENGTH = 10_000


def _error_text(error: Any, fallback: str = "Unknown error") -> str:
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return fallback


def _truncate(output: str) -> str:
    if len(output) > MAX_TOOL_OUTPUT_LENGTH:
        return (
            output[:MAX_TOOL_OUTPUT_LENGTH]
            + f"\n... [output truncated, {len(output)} chars total]"
        )
    return output


def _format_reasoning(text: str) -> str:
    # Bold headings start new paragraphs
    return re.sub(r"(\*\*[^*]+\*\*)", r"\n\n\1", text) if text else text


class CodexOutputParser(OutputParser):
    agent_id = "codex"

    def __init__(self, context_window: int = DEFAULT_CONTEXT_WINDOW) -> None:
        super().__init__()
        self.context_window = context_window
        self._last_tool_name: str | None = None
        self._tool_names_by_call: dict[str, str] = {}

    def parse_json_line(self, line: str) -> ParsedEvent | None:
        if not line.strip():
            return None
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            return ParsedEvent(type="text", text=line, raw=line)
        if not isinstance(parsed, dict):
            return ParsedEvent(type="system", raw=parsed)

        msg = parsed.get("msg")
        if isinstance(msg, dict) and msg.get("type"):
            return self._envelope(parsed, msg)
        if isinstance(parsed.get("type"), str) or isinstance(parsed.get("error"), str):
            return self._flat(parsed)
        return ParsedEvent(type="system", raw=parsed)

    def is_result_message(self, event: ParsedEvent) -> bool:
        return event.type == "result" and bool(event.text)

    def extract_slash_commands(self, event: ParsedEvent) -> list[Any] | None:
        return None

    # -- envelope format -------------------------------------------------

    def _envelope(self, envelope: dict[str, Any], msg: dict[str, Any]) -> ParsedEvent:
        kind = msg["type"]
        if kind == "task_started":
            if msg.get("model_context_window"):
                self.context_window = int(msg["model_context_window"])
            return ParsedEvent(type="system", raw=envelope)
        if kind == "agent_reasoning":
            return ParsedEvent(
                type="text",
                text=_format_reasoning(msg.get("text") or ""),
                is_partial=True,
                raw=envelope,
            )
        if kind == "agent_reasoning_section_break":
            return ParsedEvent(type="text", text="\n\n", is_partial=True, raw=envelope)
        if kind == "agent_message":
            return ParsedEvent(type="result", text=msg.get("message") or "", raw=envelope)
        if kind == "exec_command_begin":
            command = msg.get("command") or []
            tool_name = command[0] if command else None
            if tool_name is None and msg.get("parsed_cmd"):
                tool_name = msg["parsed_cmd"][0].get("cmd")
            if msg.get("call_id") and tool_name:
                self._tool_names_by_call[msg["call_id"]] = tool_name
            return ParsedEvent(
                type="tool_use",
                tool_name=tool_name,
                tool_state={
                    "status": "running",
                    "input": {"command": command, "cwd": msg.get("cwd")},
                },
                raw=envelope,
            )
        if kind == "exec_command_end":
            tool_name = self._tool_names_by_call.pop(msg.get("call_id") or "", None)
            output = (
                msg.get("aggregated_output")
                or msg.get("stdout")
                or msg.get("formatted_output")
                or ""
            )
            return ParsedEvent(
                type="tool_use",
                tool_name=tool_name,
                tool_state={
                    "status": "completed",
                    "output": _truncate(output),
                    "exit_code": msg.get("exit_code"),
                },
                raw=envelope,
            )
        if kind == "token_count":
            info = msg.get("info") or {}
            total = info.get("total_token_usage")
            if not total:
                return ParsedEvent(type="usage", raw=envelope)
            if info.get("model_context_window"):
                self.context_window = int(info["model_context_window"])
            return ParsedEvent(type="usage", usage=self._usage(total), raw=envelope)
        return ParsedEvent(type="system", raw=envelope)

    # -- flat format -----------------------------------------------------

    def _flat(self, msg: dict[str, Any]) -> ParsedEvent:
        kind = msg.get("type")
        if kind == "thread.started":
            return ParsedEvent(type="init", session_id=msg.get("thread_id"), raw=msg)
        if kind == "item.completed" and isinstance(msg.get("item"), dict):
            return self._item_completed(msg["item"], msg)
        if kind == "turn.completed":
            usage = msg.get("usage")
            return ParsedEvent(
                type="usage", usage=self._usage(usage) if usage else None, raw=msg
            )
        if kind == "turn.failed":
            return ParsedEvent(
                type="error", text=_error_text(msg.get("error"), "Turn failed"), raw=msg
            )
        if kind == "error" or msg.get("error"):
            return ParsedEvent(type="error", text=_error_text(msg.get("error")), raw=msg)
        return ParsedEvent(type="system", raw=msg)

    def _item_completed(self, item: dict[str, Any], msg: dict[str, Any]) -> ParsedEvent:
        kind = item.get("type")
        if kind == "reasoning":
            return ParsedEvent(
                type="text",
                text=_format_reasoning(item.get("text") or ""),
                is_partial=True,
                raw=msg,
            )
        if kind == "agent_message":
            return ParsedEvent(type="result", text=item.get("text") or "", raw=msg)
        if kind == "tool_call":
            self._last_tool_name = item.get("tool")
            return ParsedEvent(
                type="tool_use",
                tool_name=item.get("tool"),
                tool_state={"status": "running", "input": item.get("args")},
                raw=msg,
            )
        if kind == "tool_result":
            tool_name, self._last_tool_name = self._last_tool_name, None
            output = item.get("output")
            if isinstance(output, list):
                output = bytes(output).decode("utf-8", errors="replace")
            return ParsedEvent(
                type="tool_use",
                tool_name=tool_name,
                tool_state={"status": "completed", "output": _truncate(str(output or ""))},
                raw=msg,
            )
        return ParsedEvent(type="system", raw=msg)

    def _usage(self, usage: dict[str, Any]) -> ParsedUsage:
        reasoning = int(usage.get("reasoning_output_tokens") or 0)
        return ParsedUsage(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0) + reasoning,
            cache_read_tokens=int(usage.get("cached_input_tokens") or 0),
            context_window=self.context_window,
            reasoning_tokens=reasoning,
        )

    # -- error detection -------------------------------------------------

    def detect_error_from_line(self, line: str) -> AgentError | None:
        if not line.strip():
            return None
        text: str | None = None
        parsed_json: Any = None
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None

        if parsed.get("type") in ("error", "turn.failed") or parsed.get("error"):
            parsed_json = parsed
            text = _error_text(parsed.get("error"))
            if text == "Unknown error":
                text = None
        msg = parsed.get("msg")
        if not text and isinstance(msg, dict) and msg.get("type") == "error":
            text = error_message_from(msg.get("error") or msg.get("message"))
            parsed_json = parsed if text else parsed_json

        if not text:
            return None
        raw = {"error_line": line}
        matched = self._pattern_error(text, raw, parsed_json)
        if matched:
            return matched
        if parsed_json is not None:
            return self._unknown_error(text, raw, parsed_json)
        return None
