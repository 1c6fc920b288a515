"""Tests for agentmux.stream.data_buffer (DataBufferManager)."""

from __future__ import annotations

import asyncio

from agentmux.events import ProcessEventType, ProcessWire, drain
from agentmux.stream.data_buffer import DataBufferManager


class TestDataBufferManager:
    async def test_coalesces_until_timer(self) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        manager = DataBufferManager(wire, flush_interval=0.01)
        manager.emit_data_buffered("s1", "a")
        manager.emit_data_buffered("s1", "b")
        assert q.empty()
        assert manager.pending("s1") == "ab"
        await asyncio.sleep(0.05)
        events = drain(q)
        assert len(events) == 1
        assert events[0].type is ProcessEventType.DATA
        assert events[0].data["data"] == "ab"

    async def test_size_threshold_flushes_immediately(self) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        manager = DataBufferManager(wire, flush_interval=10, max_bytes=4)
        manager.emit_data_buffered("s1", "abc")
        assert q.empty()
        manager.emit_data_buffered("s1", "de")
        events = drain(q)
        assert [e.data["data"] for e in events] == ["abcde"]
        assert manager.pending("s1") == ""

    async def test_flush_delivers_pending(self) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        manager = DataBufferManager(wire, flush_interval=10)
        manager.emit_data_buffered("s1", "tail")
        manager.flush("s1")
        assert [e.data["data"] for e in drain(q)] == ["tail"]
        # Nothing left for a second flush
        manager.flush("s1")
        assert q.empty()

    async def test_sessions_are_independent(self) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        manager = DataBufferManager(wire, flush_interval=10)
        manager.emit_data_buffered("s1", "one")
        manager.emit_data_buffered("s2", "two")
        manager.flush_all()
        events = drain(q)
        assert {(e.session_id, e.data["data"]) for e in events} == {
            ("s1", "one"),
            ("s2", "two"),
        }

    async def test_empty_data_ignored(self) -> None:
        wire = ProcessWire()
        q = wire.subscribe()
        manager = DataBufferManager(wire)
        manager.emit_data_buffered("s1", "")
        manager.flush_all()
        assert q.empty()
