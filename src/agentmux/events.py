"""Wire channels — decouple the supervisor core from whoever consumes it.

Each component publishes on its own typed channel instead of a shared
global emitter: the process layer on a :class:`ProcessWire`, the account
layer on an :class:`AccountWire`. Consumers (CLI, UI bridge, the
:class:`agentmux.service.AgentMux` facade) subscribe and drain queues.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class ProcessEventType(enum.Enum):
    DATA = "data"
    STDERR = "stderr"
    EXIT = "exit"
    COMMAND_EXIT = "command-exit"
    ERROR = "error"
    USAGE = "usage"
    SESSION_ID = "session-id"
    SLASH_COMMANDS = "slash-commands"
    THINKING_CHUNK = "thinking-chunk"
    TOOL_EXECUTION = "tool-execution"
    AGENT_ERROR = "agent-error"


class AccountEventType(enum.Enum):
    AUTH_RECOVERY_STARTED = "auth-recovery-started"
    AUTH_RECOVERY_COMPLETED = "auth-recovery-completed"
    AUTH_RECOVERY_FAILED = "auth-recovery-failed"
    SWITCH_RESPAWN = "switch-respawn"
    ASSIGNED = "assigned"
    THROTTLED = "throttled"
    SWITCH_PROMPT = "switch-prompt"
    SWITCH_EXECUTE = "switch-execute"
    STATUS_CHANGED = "status-changed"
    RECOVERY_AVAILABLE = "recovery-available"


@dataclass
class WireEvent:
    """An event on a wire."""

    type: ProcessEventType | AccountEventType
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: one producer component -> many subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed


def drain(q: asyncio.Queue[WireEvent | None]) -> list[WireEvent]:
    """Pop every event currently queued (non-blocking), dropping sentinels."""
    events: list[WireEvent] = []
    while not q.empty():
        event = q.get_nowait()
        if event is not None:
            events.append(event)
    return events


class ProcessWire(Wire):
    """Signals emitted by the process supervisor and output processor."""

    def _emit(self, kind: ProcessEventType, session_id: str, **data: Any) -> None:
        self.send(WireEvent(type=kind, session_id=session_id, data=data))

    def send_data(self, session_id: str, data: str) -> None:
        self._emit(ProcessEventType.DATA, session_id, data=data)

    def send_stderr(self, session_id: str, data: str) -> None:
        self._emit(ProcessEventType.STDERR, session_id, data=data)

    def send_exit(self, session_id: str, code: int) -> None:
        self._emit(ProcessEventType.EXIT, session_id, code=code)

    def send_command_exit(self, session_id: str, code: int) -> None:
        self._emit(ProcessEventType.COMMAND_EXIT, session_id, code=code)

    def send_error(self, session_id: str, error: str) -> None:
        self._emit(ProcessEventType.ERROR, session_id, error=error)

    def send_usage(self, session_id: str, usage: Any) -> None:
        self._emit(ProcessEventType.USAGE, session_id, usage=usage)

    def send_session_id(self, session_id: str, agent_session_id: str) -> None:
        self._emit(
            ProcessEventType.SESSION_ID, session_id, agent_session_id=agent_session_id
        )

    def send_slash_commands(self, session_id: str, commands: list[Any]) -> None:
        self._emit(ProcessEventType.SLASH_COMMANDS, session_id, commands=commands)

    def send_thinking_chunk(self, session_id: str, text: str) -> None:
        self._emit(ProcessEventType.THINKING_CHUNK, session_id, text=text)

    def send_tool_execution(
        self, session_id: str, tool_name: str, state: Any, timestamp: float
    ) -> None:
        self._emit(
            ProcessEventType.TOOL_EXECUTION,
            session_id,
            tool_name=tool_name,
            state=state,
            timestamp=timestamp,
        )

    def send_agent_error(self, session_id: str, error: Any) -> None:
        self._emit(ProcessEventType.AGENT_ERROR, session_id, error=error)


class AccountWire(Wire):
    """Notifications emitted by the account layer (multiplexer, throttle, recovery)."""

    def notify(
        self, kind: AccountEventType, session_id: str | None = None, **data: Any
    ) -> None:
        self.send(WireEvent(type=kind, session_id=session_id, data=data))

    def send_status_changed(
        self, account_id: str, old_status: str, new_status: str
    ) -> None:
        self.notify(
            AccountEventType.STATUS_CHANGED,
            account_id=account_id,
            old_status=old_status,
            new_status=new_status,
        )
