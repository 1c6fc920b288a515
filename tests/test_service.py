"""Tests for agentmux.service (AgentMux)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

from agentmux.accounts import AccountRegistry, AccountStatus
from agentmux.accounts.usage import window_bounds
from agentmux.config import AgentmuxConfig
from agentmux.events import AccountEventType, ProcessEventType, WireEvent, drain
from agentmux.process.types import SpawnConfig, SpawnResult, UsageStats
from agentmux.service import AgentMux
from agentmux.stream.error_patterns import AgentError, AgentErrorType


def _mux(tmp_path) -> tuple[AgentMux, str]:
    config = AgentmuxConfig(accounts={"base_config_dir": str(tmp_path / ".claude")})
    mux = AgentMux(config, registry=AccountRegistry())
    account = mux.registry.add(
        name="work", email="w@x", config_dir=str(tmp_path / ".claude-work")
    )
    return mux, account.id


def _agent_error(kind: AgentErrorType, message: str = "boom") -> WireEvent:
    error = AgentError(type=kind, message=message, recoverable=True, agent_id="claude-code")
    return WireEvent(type=ProcessEventType.AGENT_ERROR, session_id="s1", data={"error": error})


def _window_tokens(mux: AgentMux, account_id: str) -> int:
    start, end = window_bounds(3600)
    return mux.usage_store.get_account_usage_in_window(account_id, start, end).total_tokens


# ---------------------------------------------------------------------------
# Spawn
# ---------------------------------------------------------------------------


class TestSpawn:
    async def test_claude_gets_account(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        spawn = AsyncMock(return_value=SpawnResult(pid=42, success=True))
        config = SpawnConfig(
            session_id="s1", tool_type="claude-code", cwd="/tmp", command="claude"
        )
        with patch.object(mux.supervisor, "spawn", spawn):
            result = await mux.spawn(config)
        assert result.pid == 42
        passed = spawn.call_args.args[0]
        assert passed.custom_env_vars["CLAUDE_CONFIG_DIR"] == str(tmp_path / ".claude-work")
        assert passed.account_id == account_id
        assert mux.registry.get_assignment("s1").account_id == account_id  # type: ignore[union-attr]
        await mux.multiplexer.wait_for_pending_syncs()

    async def test_accounts_can_be_skipped(self, tmp_path) -> None:
        mux, _ = _mux(tmp_path)
        config = SpawnConfig(
            session_id="s1", tool_type="claude-code", cwd="/tmp", command="claude"
        )
        with patch.object(mux.supervisor, "spawn", AsyncMock(return_value=SpawnResult(1, True))):
            await mux.spawn(config, use_accounts=False)
        assert config.custom_env_vars is None
        assert mux.registry.get_assignment("s1") is None

    async def test_other_agents_not_assigned(self, tmp_path) -> None:
        mux, _ = _mux(tmp_path)
        config = SpawnConfig(session_id="s1", tool_type="codex", cwd="/tmp", command="codex")
        with patch.object(mux.supervisor, "spawn", AsyncMock(return_value=SpawnResult(1, True))):
            await mux.spawn(config)
        assert config.account_id is None


# ---------------------------------------------------------------------------
# Event routing
# ---------------------------------------------------------------------------


class TestHandleEvent:
    def test_usage_recorded_against_assigned_account(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        mux.registry.assign_to_session("s1", account_id)
        mux.handle_event(
            WireEvent(
                type=ProcessEventType.USAGE,
                session_id="s1",
                data={"usage": UsageStats(input_tokens=100, output_tokens=20)},
            )
        )
        assert _window_tokens(mux, account_id) == 120

    def test_usage_without_assignment_dropped(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        mux.handle_event(
            WireEvent(
                type=ProcessEventType.USAGE,
                session_id="s1",
                data={"usage": UsageStats(input_tokens=100)},
            )
        )
        assert _window_tokens(mux, account_id) == 0

    def test_rate_limit_throttles(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        mux.registry.assign_to_session("s1", account_id)
        q = mux.account_wire.subscribe()
        mux.handle_event(_agent_error(AgentErrorType.RATE_LIMITED, "429"))
        assert mux.registry.get(account_id).status is AccountStatus.THROTTLED  # type: ignore[union-attr]
        [event] = drain(q)
        assert event.type is AccountEventType.THROTTLED
        assert event.data["reason"] == "rate_limited"
        assert event.data["message"] == "429"

    def test_other_errors_ignored(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        mux.registry.assign_to_session("s1", account_id)
        q = mux.account_wire.subscribe()
        mux.handle_event(_agent_error(AgentErrorType.NETWORK_ERROR))
        assert q.empty()

    async def test_auth_expired_starts_recovery(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        mux.registry.assign_to_session("s1", account_id)
        recover = AsyncMock(return_value=True)
        with patch.object(mux.auth_recovery, "recover_auth", recover):
            mux.handle_event(_agent_error(AgentErrorType.AUTH_EXPIRED))
            await asyncio.sleep(0)
        recover.assert_awaited_once_with("s1", account_id)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_router_forwards_usage(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        mux.registry.assign_to_session("s1", account_id)
        await mux.start(poll=False)
        mux.process_wire.send_usage("s1", UsageStats(output_tokens=7))
        await asyncio.sleep(0.01)
        assert _window_tokens(mux, account_id) == 7

        await mux.shutdown()
        assert mux.process_wire.closed is True
        assert mux.account_wire.closed is True

    async def test_start_with_poller(self, tmp_path) -> None:
        mux, _ = _mux(tmp_path)
        await mux.start()
        assert mux.poller.running is True
        await mux.shutdown()
        assert mux.poller.running is False

    def test_cleanup_session(self, tmp_path) -> None:
        mux, account_id = _mux(tmp_path)
        mux.registry.assign_to_session("s1", account_id)
        mux.cleanup_session("s1")
        assert mux.registry.get_assignment("s1") is None
