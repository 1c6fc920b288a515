"""Tests for agentmux.process.supervisor (ProcessSupervisor, wants_pty)."""

from __future__ import annotations

import asyncio
import sys

import pytest

from agentmux.events import ProcessEventType, WireEvent
from agentmux.process.supervisor import ProcessSupervisor, wants_pty
from agentmux.process.types import SpawnConfig

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX processes")


def _config(session_id: str = "s1", **kwargs) -> SpawnConfig:
    kwargs.setdefault("tool_type", "custom")
    kwargs.setdefault("command", "sleep")
    kwargs.setdefault("args", ["30"])
    kwargs.setdefault("cwd", "/tmp")
    return SpawnConfig(session_id=session_id, **kwargs)


async def _next(queue: asyncio.Queue[WireEvent | None], kind: ProcessEventType) -> WireEvent:
    while True:
        event = await asyncio.wait_for(queue.get(), 5.0)
        assert event is not None
        if event.type is kind:
            return event


# ---------------------------------------------------------------------------
# wants_pty
# ---------------------------------------------------------------------------


class TestWantsPty:
    def test_terminal(self) -> None:
        assert wants_pty(_config(tool_type="terminal")) is True

    def test_prompt_never_gets_pty(self) -> None:
        assert wants_pty(_config(tool_type="terminal", prompt="ls")) is False

    def test_explicit_flag(self) -> None:
        assert wants_pty(_config(tool_type="claude-code", requires_pty=True)) is True
        assert wants_pty(_config(tool_type="claude-code", requires_pty=False)) is False

    def test_capability_default(self) -> None:
        assert wants_pty(_config(tool_type="claude-code")) is False


# ---------------------------------------------------------------------------
# Session table
# ---------------------------------------------------------------------------


class TestSessionTable:
    async def test_spawn_replaces_existing(self) -> None:
        supervisor = ProcessSupervisor()
        first = await supervisor.spawn(_config())
        second = await supervisor.spawn(_config())
        assert first.success and second.success
        assert first.pid != second.pid
        assert len(supervisor) == 1
        assert supervisor.get("s1").pid == second.pid  # type: ignore[union-attr]
        supervisor.kill_all()

    async def test_kill(self) -> None:
        supervisor = ProcessSupervisor()
        await supervisor.spawn(_config())
        assert supervisor.kill("s1") is True
        assert supervisor.get("s1") is None
        assert supervisor.kill("s1") is False

    async def test_killed_session_reports_no_exit(self) -> None:
        supervisor = ProcessSupervisor()
        q = supervisor.wire.subscribe()
        await supervisor.spawn(_config())
        handle = supervisor.processes["s1"].handle
        supervisor.kill("s1")
        await asyncio.wait_for(
            asyncio.gather(*handle.tasks, return_exceptions=True), 5.0  # type: ignore[union-attr]
        )
        kinds = [e.type for e in _drain(q)]
        assert ProcessEventType.EXIT not in kinds

    async def test_respawn_over_slow_exiting_agent(self) -> None:
        supervisor = ProcessSupervisor()
        q = supervisor.wire.subscribe()
        slow = "trap 'sleep 0.3; echo stale; exit 3' TERM; while :; do sleep 0.05; done"
        await supervisor.spawn(_config(command="sh", args=["-c", slow]))
        second = await supervisor.spawn(_config())
        await asyncio.sleep(1.0)
        current = supervisor.get("s1")
        assert current is not None
        assert current.pid == second.pid
        events = _drain(q)
        assert ProcessEventType.EXIT not in [e.type for e in events]
        assert not any("stale" in str(e.data.get("data", "")) for e in events)
        supervisor.kill_all()

    async def test_kill_all_twice(self) -> None:
        supervisor = ProcessSupervisor()
        await supervisor.spawn(_config("a"))
        await supervisor.spawn(_config("b"))
        assert len(supervisor) == 2
        supervisor.kill_all()
        supervisor.kill_all()
        assert len(supervisor) == 0

    async def test_list_sessions(self) -> None:
        supervisor = ProcessSupervisor()
        await supervisor.spawn(_config())
        sessions = supervisor.list_sessions()
        assert len(sessions) == 1
        assert sessions[0]["session_id"] == "s1"
        assert sessions[0]["terminal"] is False
        assert sessions[0]["tool_type"] == "custom"
        supervisor.kill_all()

    async def test_kill_removes_temp_images(self, tmp_path) -> None:
        supervisor = ProcessSupervisor()
        await supervisor.spawn(_config())
        image = tmp_path / "img.png"
        image.write_bytes(b"x")
        supervisor.processes["s1"].temp_image_files.append(str(image))
        supervisor.kill("s1")
        assert not image.exists()


# ---------------------------------------------------------------------------
# Input routing
# ---------------------------------------------------------------------------


class TestInputRouting:
    async def test_unknown_session(self) -> None:
        supervisor = ProcessSupervisor()
        assert supervisor.write("nope", "x") is False
        assert supervisor.interrupt("nope") is False
        assert supervisor.resize("nope", 80, 24) is False

    async def test_resize_needs_pty(self) -> None:
        supervisor = ProcessSupervisor()
        await supervisor.spawn(_config())
        assert supervisor.resize("s1", 80, 24) is False
        supervisor.kill_all()

    async def test_write_to_child(self) -> None:
        supervisor = ProcessSupervisor()
        q = supervisor.wire.subscribe()
        await supervisor.spawn(_config(command="head", args=["-n", "1"]))
        assert supervisor.write("s1", "echoed\n") is True
        event = await _next(q, ProcessEventType.DATA)
        assert event.data["data"] == "echoed\n"
        exit_event = await _next(q, ProcessEventType.EXIT)
        assert exit_event.data["code"] == 0

    async def test_interrupt_child(self) -> None:
        supervisor = ProcessSupervisor()
        q = supervisor.wire.subscribe()
        await supervisor.spawn(_config())
        assert supervisor.interrupt("s1") is True
        event = await _next(q, ProcessEventType.EXIT)
        assert event.data["code"] != 0


def _drain(queue: asyncio.Queue[WireEvent | None]) -> list[WireEvent]:
    events: list[WireEvent] = []
    while not queue.empty():
        event = queue.get_nowait()
        if event is not None:
            events.append(event)
    return events
