"""Output coalescing — batch small writes before they reach consumers."""

from __future__ import annotations

import asyncio
import logging

from agentmux.events import ProcessWire

logger = logging.getLogger(__name__)


class DataBufferManager:
    """Per-session text buffer flushed on a short timer or a size threshold.

    Agents often write a few bytes at a time; forwarding each write as its
    own ``data`` signal floods the consumer. Pending text is delivered when
    the flush interval elapses or ``max_bytes`` is exceeded, whichever
    comes first. :meth:`flush` must be called on exit so trailing output
    is never lost.
    """

    def __init__(
        self,
        wire: ProcessWire,
        flush_interval: float = 0.05,
        max_bytes: int = 8192,
    ) -> None:
        self._wire = wire
        self._flush_interval = flush_interval
        self._max_bytes = max_bytes
        self._pending: dict[str, list[str]] = {}
        self._sizes: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def emit_data_buffered(self, session_id: str, data: str) -> None:
        if not data:
            return
        self._pending.setdefault(session_id, []).append(data)
        self._sizes[session_id] = self._sizes.get(session_id, 0) + len(
            data.encode("utf-8", errors="replace")
        )

        if self._sizes[session_id] > self._max_bytes:
            self.flush(session_id)
            return

        if session_id not in self._timers:
            loop = asyncio.get_running_loop()
            self._timers[session_id] = loop.call_later(
                self._flush_interval, self.flush, session_id
            )

    def flush(self, session_id: str) -> None:
        """Deliver everything pending for ``session_id`` now."""
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        chunks = self._pending.pop(session_id, None)
        self._sizes.pop(session_id, None)
        if chunks:
            self._wire.send_data(session_id, "".join(chunks))

    def flush_all(self) -> None:
        for session_id in list(self._pending):
            self.flush(session_id)

    def pending(self, session_id: str) -> str:
        return "".join(self._pending.get(session_id, []))
