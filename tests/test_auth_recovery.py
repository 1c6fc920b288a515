"""Tests for agentmux.accounts.auth_recovery (AuthRecovery)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from agentmux.accounts import AccountRegistry, AccountStatus
from agentmux.accounts.auth_recovery import AuthRecovery
from agentmux.accounts.setup import CREDENTIALS_FILE
from agentmux.config import RecoveryConfig
from agentmux.events import AccountEventType, AccountWire, drain

_EXEC = "agentmux.accounts.auth_recovery.asyncio.create_subprocess_exec"


def _login_proc(returncode: int, on_run=None, hang: bool = False) -> MagicMock:
    """Fake ``claude login`` process; ``on_run`` fires while it "runs"."""
    proc = MagicMock()
    proc.returncode = returncode

    async def communicate():
        if hang:
            await asyncio.sleep(3600)
        if on_run is not None:
            on_run()
        return b"", b"login failed"

    proc.communicate = communicate
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class _Setup:
    def __init__(self, tmp_path, **config) -> None:
        self.config_dir = tmp_path / ".claude-work"
        self.config_dir.mkdir()
        self.base_dir = tmp_path / ".claude"
        self.base_dir.mkdir()
        self.registry = AccountRegistry()
        self.account = self.registry.add(
            name="work", email="w@x", config_dir=str(self.config_dir)
        )
        self.wire = AccountWire()
        self.queue = self.wire.subscribe()
        self.kill = MagicMock(return_value=True)
        config.setdefault("kill_delay_s", 0)
        self.recovery = AuthRecovery(
            self.registry,
            self.wire,
            self.kill,
            config=RecoveryConfig(**config),
            base_dir=str(self.base_dir),
        )

    def write_credentials(self) -> None:
        (self.config_dir / CREDENTIALS_FILE).write_text("{}")

    def status(self) -> AccountStatus:
        return self.registry.get(self.account.id).status  # type: ignore[union-attr]

    def event_types(self) -> list[AccountEventType]:
        return [e.type for e in drain(self.queue)]


# ---------------------------------------------------------------------------
# Successful recovery
# ---------------------------------------------------------------------------


class TestRecoverySuccess:
    async def test_login_succeeds(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        s.recovery.record_last_prompt("s1", "fix the bug")
        with patch(_EXEC, AsyncMock(return_value=_login_proc(0, s.write_credentials))) as exec_:
            assert await s.recovery.recover_auth("s1", s.account.id) is True

        s.kill.assert_called_once_with("s1")
        assert exec_.call_args.args[:2] == ("claude", "login")
        assert exec_.call_args.kwargs["env"]["CLAUDE_CONFIG_DIR"] == str(s.config_dir)
        assert s.status() is AccountStatus.ACTIVE

        events = drain(s.queue)
        assert [e.type for e in events] == [
            AccountEventType.AUTH_RECOVERY_STARTED,
            AccountEventType.AUTH_RECOVERY_COMPLETED,
            AccountEventType.SWITCH_RESPAWN,
        ]
        respawn = events[-1].data
        assert respawn["last_prompt"] == "fix the bug"
        assert respawn["reason"] == "auth-recovery"
        assert respawn["to_account_id"] == s.account.id
        assert respawn["config_dir"] == str(s.config_dir)
        assert s.recovery.is_recovering("s1") is False

    async def test_zero_exit_without_credentials_falls_back_to_sync(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        (s.base_dir / CREDENTIALS_FILE).write_text('{"token": "fresh"}')
        with patch(_EXEC, AsyncMock(return_value=_login_proc(0))):
            assert await s.recovery.recover_auth("s1", s.account.id) is True
        assert (s.config_dir / CREDENTIALS_FILE).read_text() == '{"token": "fresh"}'
        assert s.status() is AccountStatus.ACTIVE

    async def test_login_failure_falls_back_to_sync(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        (s.base_dir / CREDENTIALS_FILE).write_text("{}")
        with patch(_EXEC, AsyncMock(return_value=_login_proc(1))):
            assert await s.recovery.recover_auth("s1", s.account.id) is True
        assert AccountEventType.SWITCH_RESPAWN in s.event_types()

    async def test_login_cannot_start(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        (s.base_dir / CREDENTIALS_FILE).write_text("{}")
        with patch(_EXEC, AsyncMock(side_effect=FileNotFoundError("claude"))):
            assert await s.recovery.recover_auth("s1", s.account.id) is True
        assert s.status() is AccountStatus.ACTIVE


# ---------------------------------------------------------------------------
# Failed recovery
# ---------------------------------------------------------------------------


class TestRecoveryFailure:
    async def test_login_and_sync_fail(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        with patch(_EXEC, AsyncMock(return_value=_login_proc(1))):
            assert await s.recovery.recover_auth("s1", s.account.id) is False

        assert s.status() is AccountStatus.EXPIRED
        events = drain(s.queue)
        assert [e.type for e in events] == [
            AccountEventType.AUTH_RECOVERY_STARTED,
            AccountEventType.AUTH_RECOVERY_FAILED,
        ]
        failed = events[-1].data
        assert failed["account_name"] == "work"
        assert failed["error"] == "Re-authentication failed"
        assert failed["login_command"] == f"CLAUDE_CONFIG_DIR={s.config_dir} claude login"

    async def test_login_timeout_terminates(self, tmp_path) -> None:
        s = _Setup(tmp_path, login_timeout_s=0.05)
        proc = _login_proc(0, hang=True)
        with patch(_EXEC, AsyncMock(return_value=proc)):
            assert await s.recovery.recover_auth("s1", s.account.id) is False
        proc.terminate.assert_called_once()
        proc.wait.assert_awaited()
        assert s.status() is AccountStatus.EXPIRED

    async def test_login_ignoring_sigterm_is_killed(self, tmp_path) -> None:
        s = _Setup(tmp_path, login_timeout_s=0.05, terminate_grace_s=0.05)
        killed = asyncio.Event()

        async def wait():
            await killed.wait()
            return -9

        proc = _login_proc(0, hang=True)
        proc.wait = wait
        proc.kill = MagicMock(side_effect=killed.set)
        with patch(_EXEC, AsyncMock(return_value=proc)):
            result = await asyncio.wait_for(
                s.recovery.recover_auth("s1", s.account.id), timeout=5.0
            )
        assert result is False
        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()
        assert s.recovery.is_recovering("s1") is False

    async def test_throttled_account_stays_throttled(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        s.registry.set_status(s.account.id, AccountStatus.THROTTLED)
        with patch(_EXEC, AsyncMock(return_value=_login_proc(0, s.write_credentials))):
            assert await s.recovery.recover_auth("s1", s.account.id) is True
        assert s.status() is AccountStatus.THROTTLED

    async def test_unknown_account(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        assert await s.recovery.recover_auth("s1", "missing") is False
        s.kill.assert_not_called()
        assert s.queue.empty()

    async def test_crash_reports_failure(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        s.kill.side_effect = RuntimeError("supervisor gone")
        assert await s.recovery.recover_auth("s1", s.account.id) is False
        events = drain(s.queue)
        assert events[-1].type is AccountEventType.AUTH_RECOVERY_FAILED
        assert events[-1].data["error"] == "supervisor gone"
        assert s.recovery.is_recovering("s1") is False


# ---------------------------------------------------------------------------
# Concurrency and per-session state
# ---------------------------------------------------------------------------


class TestRecoveryGuard:
    async def test_second_call_rejected_while_running(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        release = asyncio.Event()

        async def communicate():
            await release.wait()
            s.write_credentials()
            return b"", b""

        proc = _login_proc(0)
        proc.communicate = communicate
        with patch(_EXEC, AsyncMock(return_value=proc)):
            first = asyncio.create_task(s.recovery.recover_auth("s1", s.account.id))
            await asyncio.sleep(0.01)
            assert s.recovery.is_recovering("s1") is True
            assert await s.recovery.recover_auth("s1", s.account.id) is False
            release.set()
            assert await first is True
        assert s.kill.call_count == 1

    async def test_cleanup_forgets_last_prompt(self, tmp_path) -> None:
        s = _Setup(tmp_path)
        s.recovery.record_last_prompt("s1", "hello")
        s.recovery.cleanup_session("s1")
        with patch(_EXEC, AsyncMock(return_value=_login_proc(0, s.write_credentials))):
            await s.recovery.recover_auth("s1", s.account.id)
        respawn = drain(s.queue)[-1]
        assert respawn.type is AccountEventType.SWITCH_RESPAWN
        assert respawn.data["last_prompt"] is None
