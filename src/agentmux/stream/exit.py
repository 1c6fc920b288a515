"""Exit handling — final drain, batch parsing, and teardown of a session."""

from __future__ import annotations

import logging

from agentmux.events import ProcessWire
from agentmux.process.images import cleanup_temp_files
from agentmux.process.types import ManagedProcess
from agentmux.stream.data_buffer import DataBufferManager
from agentmux.stream.stdout import StdoutHandler

logger = logging.getLogger(__name__)


class ExitHandler:
    def __init__(
        self,
        processes: dict[str, ManagedProcess],
        wire: ProcessWire,
        buffer_manager: DataBufferManager,
        stdout_handler: StdoutHandler,
    ) -> None:
        self._processes = processes
        self._wire = wire
        self._buffer_manager = buffer_manager
        self._stdout_handler = stdout_handler

    def handle_exit(
        self, session_id: str, code: int, owner: ManagedProcess | None = None
    ) -> None:
        """The process closed all its streams with ``code``.

        ``owner`` is the process the exit belongs to. When the session has
        since been killed or respawned the exit is stale and dropped.
        """
        process = self._processes.get(session_id)
        if process is None or (owner is not None and process is not owner):
            logger.debug("Dropping stale exit (code=%s) for %s", code, session_id)
            return

        remainder = process.json_buffer.strip()
        process.json_buffer = ""
        if remainder and (process.is_stream_json_mode or process.is_batch_mode):
            # Last stream-json line without a trailing newline, or the whole
            # accumulated batch response
            self._stdout_handler.process_line(session_id, process, remainder)

        self._buffer_manager.flush(session_id)

        parser = process.output_parser
        if code != 0 and parser is not None and not process.error_emitted:
            agent_error = parser.detect_error_from_exit(
                code, process.stderr_buffer, process.stdout_buffer
            )
            if agent_error is not None:
                process.error_emitted = True
                agent_error.session_id = session_id
                self._wire.send_agent_error(session_id, agent_error)

        logger.info("Session %s exited (code=%s)", session_id, code)
        self._wire.send_exit(session_id, code)
        self._teardown(session_id, process)

    def handle_error(
        self, session_id: str, error: BaseException, owner: ManagedProcess | None = None
    ) -> None:
        """The process failed at the OS level (spawn or pipe failure)."""
        process = self._processes.get(session_id)
        if owner is not None and process is not owner:
            logger.debug("Dropping stale error for %s: %s", session_id, error)
            return
        logger.error("Process error for session %s: %s", session_id, error)
        self._buffer_manager.flush(session_id)
        self._wire.send_error(session_id, str(error))
        if process is not None:
            self._teardown(session_id, process)

    def _teardown(self, session_id: str, process: ManagedProcess) -> None:
        if process.temp_image_files:
            cleanup_temp_files(process.temp_image_files)
        if self._processes.get(session_id) is process:
            del self._processes[session_id]
