"""Stderr handling — error detection plus agent-specific noise suppression."""

from __future__ import annotations

import json
import logging
import re

from agentmux.events import ProcessWire
from agentmux.process.buffer import append_to_buffer, strip_ansi
from agentmux.process.types import ManagedProcess
from agentmux.stream.error_patterns import AgentError, match_ssh_error_pattern
from agentmux.stream.stdout import StdoutHandler

logger = logging.getLogger(__name__)

_NOISE_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "codex": (
        # Timestamped tracing output from the Rust core
        re.compile(r"^\[?\d{4}-\d{2}-\d{2}T[\d:.]+Z?\]?\s+(TRACE|DEBUG|INFO|WARN)\b"),
        re.compile(r"^Reading prompt from stdin\.\.\.$"),
        re.compile(r"^(OpenAI Codex|workdir|model|provider|approval|sandbox|reasoning \w+|session id)\b[:v ]"),
        re.compile(r"^-{4,}$"),
        re.compile(r"codex_\w+::"),
    ),
    "claude-code": (
        re.compile(r"^\(node:\d+\) \w*Warning"),
        re.compile(r"^\(Use `node --trace-\w+ \.\.\.` to show where"),
        re.compile(r"ExperimentalWarning"),
    ),
}

# Stream-json event types that belong on stdout even when they show up here
_CONTENT_TYPES = frozenset({"assistant", "result", "item.completed", "turn.completed"})


def is_noise(tool_type: str, line: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return True
    return any(p.search(stripped) for p in _NOISE_PATTERNS.get(tool_type, ()))


def _is_misrouted_content(line: str) -> bool:
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return False
    if not isinstance(parsed, dict):
        return False
    if parsed.get("type") in _CONTENT_TYPES:
        return True
    msg = parsed.get("msg")
    return isinstance(msg, dict) and msg.get("type") in ("agent_message", "agent_reasoning")


class StderrHandler:
    def __init__(
        self,
        processes: dict[str, ManagedProcess],
        wire: ProcessWire,
        stdout_handler: StdoutHandler,
        max_buffer_chars: int = 100_000,
    ) -> None:
        self._processes = processes
        self._wire = wire
        self._stdout_handler = stdout_handler
        self._max_buffer_chars = max_buffer_chars

    def handle_data(
        self, session_id: str, data: str, owner: ManagedProcess | None = None
    ) -> None:
        process = self._processes.get(session_id)
        if process is None or (owner is not None and process is not owner):
            return

        process.stderr_buffer = append_to_buffer(
            process.stderr_buffer, data, self._max_buffer_chars
        )

        forwarded: list[str] = []
        for line in strip_ansi(data).splitlines():
            if self._detect_error(session_id, process, line):
                continue
            if process.is_stream_json_mode and _is_misrouted_content(line):
                self._stdout_handler.process_line(session_id, process, line)
                continue
            if is_noise(process.tool_type, line):
                continue
            forwarded.append(line)

        if forwarded:
            self._wire.send_stderr(session_id, "\n".join(forwarded))

    def _detect_error(self, session_id: str, process: ManagedProcess, line: str) -> bool:
        if process.error_emitted or not line.strip():
            return False

        parser = process.output_parser
        agent_error = parser.detect_error_from_line(line) if parser else None

        if agent_error is None and process.ssh_remote_id:
            ssh_error = match_ssh_error_pattern(line)
            if ssh_error is not None:
                agent_error = AgentError(
                    type=ssh_error.type,
                    message=ssh_error.message,
                    recoverable=ssh_error.recoverable,
                    agent_id=process.tool_type,
                    raw={"stderr_line": line},
                )

        if agent_error is None:
            return False

        process.error_emitted = True
        agent_error.session_id = session_id
        logger.debug(
            "Error detected on stderr of %s: %s", session_id, agent_error.type.value
        )
        self._wire.send_agent_error(session_id, agent_error)
        return True
