"""Tests for agentmux.accounts.poller (RecoveryPoller)."""

from __future__ import annotations

import asyncio

from agentmux.accounts import AccountRegistry, AccountStatus
from agentmux.accounts.models import DEFAULT_TOKEN_WINDOW_S
from agentmux.accounts.poller import RecoveryPoller
from agentmux.events import AccountEventType, AccountWire, drain

THROTTLED_AT = 1000.0
MARGIN = 300.0


def _throttle(registry: AccountRegistry, account_id: str, at: float = THROTTLED_AT) -> None:
    registry.set_status(account_id, AccountStatus.THROTTLED)
    registry.update(account_id, last_throttled_at=at)


def _setup(now: float, *names: str) -> tuple[AccountRegistry, AccountWire, RecoveryPoller, list[str]]:
    registry = AccountRegistry()
    ids = [registry.add(name=n, email=f"{n}@x", config_dir=f"/c/{n}").id for n in names]
    wire = AccountWire()
    poller = RecoveryPoller(registry, wire, safety_margin_s=MARGIN, clock=lambda: now)
    return registry, wire, poller, ids


class TestPoll:
    def test_recovers_after_window_and_margin(self) -> None:
        now = THROTTLED_AT + DEFAULT_TOKEN_WINDOW_S + MARGIN + 1
        registry, wire, poller, (a, b, c) = _setup(now, "a", "b", "c")
        _throttle(registry, a)
        _throttle(registry, b, at=now - 10)
        q = wire.subscribe()

        assert poller.poll() == [a]
        assert registry.get(a).status is AccountStatus.ACTIVE  # type: ignore[union-attr]
        assert registry.get(b).status is AccountStatus.THROTTLED  # type: ignore[union-attr]

        changed, available = drain(q)
        assert changed.type is AccountEventType.STATUS_CHANGED
        assert changed.data == {"account_id": a, "old_status": "throttled", "new_status": "active"}
        assert available.type is AccountEventType.RECOVERY_AVAILABLE
        assert available.session_id is None
        assert available.data == {
            "recovered_account_ids": [a],
            "recovered_count": 1,
            "still_throttled_count": 1,
            "total_accounts": 3,
        }

    def test_exactly_at_boundary_stays_throttled(self) -> None:
        now = THROTTLED_AT + DEFAULT_TOKEN_WINDOW_S + MARGIN
        registry, wire, poller, (a,) = _setup(now, "a")
        _throttle(registry, a)
        q = wire.subscribe()
        assert poller.poll() == []
        assert q.empty()

    def test_never_throttled_timestamp_recovers(self) -> None:
        registry, _, poller, (a,) = _setup(DEFAULT_TOKEN_WINDOW_S + MARGIN + 1, "a")
        _throttle(registry, a, at=0.0)
        assert poller.poll() == [a]

    def test_ignores_other_statuses(self) -> None:
        registry, wire, poller, (a, b) = _setup(1e12, "a", "b")
        registry.set_status(a, AccountStatus.EXPIRED)
        registry.set_status(b, AccountStatus.DISABLED)
        q = wire.subscribe()
        assert poller.poll() == []
        assert q.empty()


class TestPollerLifecycle:
    async def test_start_polls_immediately(self) -> None:
        registry, wire, poller, (a,) = _setup(1e12, "a")
        _throttle(registry, a)
        poller.start()
        await asyncio.sleep(0.01)
        assert registry.get(a).status is AccountStatus.ACTIVE  # type: ignore[union-attr]
        poller.stop()

    async def test_start_and_stop_idempotent(self) -> None:
        _, _, poller, _ = _setup(0.0)
        poller.start()
        task = poller._task
        poller.start()
        assert poller._task is task
        assert poller.running is True
        poller.stop()
        poller.stop()
        assert poller.running is False
