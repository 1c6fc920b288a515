"""Stdout handling — decode raw agent output into structured signals."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from agentmux.agents import get_capabilities
from agentmux.events import ProcessWire
from agentmux.process.buffer import append_to_buffer
from agentmux.process.types import ManagedProcess, UsageStats
from agentmux.stream.data_buffer import DataBufferManager
from agentmux.stream.error_patterns import (
    AgentError,
    AgentErrorType,
    match_ssh_error_pattern,
)
from agentmux.stream.parsers import OutputParser, ParsedUsage
from agentmux.stream.usage import (
    DEFAULT_CONTEXT_WINDOW,
    aggregate_model_usage,
    normalize_cumulative_usage,
)

logger = logging.getLogger(__name__)


def remote_auth_message(host: str) -> str:
    return (
        f'Authentication failed on remote host "{host}". '
        'SSH into the remote and run "claude login" to re-authenticate.'
    )


class StdoutHandler:
    """Routes stdout chunks by regime: stream-json, batch, or plain text."""

    def __init__(
        self,
        processes: dict[str, ManagedProcess],
        wire: ProcessWire,
        buffer_manager: DataBufferManager,
        max_buffer_chars: int = 100_000,
    ) -> None:
        self._processes = processes
        self._wire = wire
        self._buffer_manager = buffer_manager
        self._max_buffer_chars = max_buffer_chars

    def handle_data(
        self, session_id: str, output: str, owner: ManagedProcess | None = None
    ) -> None:
        process = self._processes.get(session_id)
        if process is None or (owner is not None and process is not owner):
            return

        if process.is_stream_json_mode:
            self._handle_stream_json(session_id, process, output)
        elif process.is_batch_mode:
            process.json_buffer += output
            logger.debug(
                "Accumulated batch output for %s (%d chars)",
                session_id,
                len(process.json_buffer),
            )
        else:
            self._buffer_manager.emit_data_buffered(session_id, output)

    def _handle_stream_json(
        self, session_id: str, process: ManagedProcess, output: str
    ) -> None:
        process.json_buffer += output
        *lines, process.json_buffer = process.json_buffer.split("\n")
        for line in lines:
            if not line.strip():
                continue
            process.stdout_buffer = append_to_buffer(
                process.stdout_buffer, line + "\n", self._max_buffer_chars
            )
            self.process_line(session_id, process, line)

    def process_line(self, session_id: str, process: ManagedProcess, line: str) -> None:
        """Handle one complete output line (also used for batch-mode output)."""
        parser = process.output_parser

        if parser is not None and not process.error_emitted:
            agent_error = parser.detect_error_from_line(line)
            if agent_error is not None:
                process.error_emitted = True
                agent_error.session_id = session_id
                if (
                    agent_error.type is AgentErrorType.AUTH_EXPIRED
                    and process.ssh_remote_host
                ):
                    agent_error.message = remote_auth_message(process.ssh_remote_host)
                logger.debug(
                    "Error detected in output of %s: %s (%s)",
                    session_id,
                    agent_error.type.value,
                    agent_error.message,
                )
                self._wire.send_agent_error(session_id, agent_error)
                return

        if not process.error_emitted and process.ssh_remote_id:
            ssh_error = match_ssh_error_pattern(line)
            if ssh_error is not None:
                process.error_emitted = True
                logger.debug("SSH error detected in output of %s", session_id)
                self._wire.send_agent_error(
                    session_id,
                    AgentError(
                        type=ssh_error.type,
                        message=ssh_error.message,
                        recoverable=ssh_error.recoverable,
                        agent_id=process.tool_type,
                        session_id=session_id,
                        raw={"error_line": line},
                    ),
                )
                return

        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            self._buffer_manager.emit_data_buffered(session_id, line)
            return

        if parser is not None:
            self._handle_parsed_event(session_id, process, line, parser)
        elif isinstance(msg, dict):
            self._handle_legacy_message(session_id, process, msg)

    def _handle_parsed_event(
        self,
        session_id: str,
        process: ManagedProcess,
        line: str,
        parser: OutputParser,
    ) -> None:
        event = parser.parse_json_line(line)
        if event is None:
            return

        usage = parser.extract_usage(event)
        if usage is not None:
            stats = self._build_usage_stats(process, usage)
            if get_capabilities(process.tool_type).usage_is_cumulative:
                stats = normalize_cumulative_usage(process, stats)
            self._wire.send_usage(session_id, stats)

        agent_session_id = parser.extract_session_id(event)
        if agent_session_id and not process.session_id_emitted:
            process.session_id_emitted = True
            self._wire.send_session_id(session_id, agent_session_id)

        slash_commands = parser.extract_slash_commands(event)
        if slash_commands:
            self._wire.send_slash_commands(session_id, slash_commands)

        if event.type == "text" and event.is_partial and event.text:
            self._wire.send_thinking_chunk(session_id, event.text)
            process.streamed_text += event.text

        if event.type == "tool_use" and event.tool_name:
            self._wire.send_tool_execution(
                session_id, event.tool_name, event.tool_state, time.time()
            )
        for block in event.tool_use_blocks:
            self._wire.send_tool_execution(
                session_id,
                block.name,
                {"status": "running", "input": block.input},
                time.time(),
            )

        # Errors were already classified by detect_error_from_line
        if event.type == "error":
            return

        if parser.is_result_message(event) and not process.result_emitted:
            process.result_emitted = True
            result_text = event.text or process.streamed_text
            if result_text:
                self._buffer_manager.emit_data_buffered(session_id, result_text)

    def _handle_legacy_message(
        self, session_id: str, process: ManagedProcess, msg: dict[str, Any]
    ) -> None:
        if msg.get("type") == "error" or msg.get("error"):
            return

        if msg.get("type") == "result" and msg.get("result") and not process.result_emitted:
            process.result_emitted = True
            self._buffer_manager.emit_data_buffered(session_id, str(msg["result"]))

        if msg.get("session_id") and not process.session_id_emitted:
            process.session_id_emitted = True
            self._wire.send_session_id(session_id, str(msg["session_id"]))

        if (
            msg.get("type") == "system"
            and msg.get("subtype") == "init"
            and msg.get("slash_commands")
        ):
            self._wire.send_slash_commands(session_id, msg["slash_commands"])

        if msg.get("modelUsage") or msg.get("usage") or "total_cost_usd" in msg:
            stats = aggregate_model_usage(
                msg.get("modelUsage"), msg.get("usage") or {}, msg.get("total_cost_usd") or 0.0
            )
            self._wire.send_usage(session_id, stats)

    @staticmethod
    def _build_usage_stats(process: ManagedProcess, usage: ParsedUsage) -> UsageStats:
        return UsageStats(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_input_tokens=usage.cache_read_tokens,
            cache_creation_input_tokens=usage.cache_creation_tokens,
            total_cost_usd=usage.cost_usd,
            context_window=usage.context_window
            or process.context_window
            or DEFAULT_CONTEXT_WINDOW,
            reasoning_tokens=usage.reasoning_tokens,
        )
