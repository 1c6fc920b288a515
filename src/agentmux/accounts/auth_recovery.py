"""Auth Recovery — re-authenticate an account whose credentials expired.

Flow for one session:
    expired -> kill agent -> wait -> ``claude login`` (bounded) -> verify
    credentials file -> active + respawn
with a credential sync from the base profile as the fallback when login
fails or times out. At most one recovery runs per session id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from agentmux.accounts.models import AccountProfile, AccountStatus
from agentmux.accounts.registry import AccountRegistry
from agentmux.accounts.setup import (
    build_login_command,
    has_credentials,
    sync_credentials_from_base,
)
from agentmux.config import RecoveryConfig
from agentmux.events import AccountEventType, AccountWire
from agentmux.process.env import CREDENTIAL_DIR_VAR, build_child_process_env

logger = logging.getLogger(__name__)


class AuthRecovery:
    def __init__(
        self,
        registry: AccountRegistry,
        wire: AccountWire,
        kill_session: Callable[[str], bool],
        config: RecoveryConfig | None = None,
        claude_binary: str = "claude",
        base_dir: str | None = None,
    ) -> None:
        self._registry = registry
        self._wire = wire
        self._kill_session = kill_session
        self._config = config or RecoveryConfig()
        self._claude_binary = claude_binary
        self._base_dir = base_dir
        self._in_progress: set[str] = set()
        self._last_prompts: dict[str, str] = {}

    def record_last_prompt(self, session_id: str, prompt: str) -> None:
        self._last_prompts[session_id] = prompt

    def is_recovering(self, session_id: str) -> bool:
        return session_id in self._in_progress

    def cleanup_session(self, session_id: str) -> None:
        self._last_prompts.pop(session_id, None)

    async def recover_auth(self, session_id: str, account_id: str) -> bool:
        """Run the recovery flow. False if it failed or one is already running."""
        # Check-then-insert with no await in between
        if session_id in self._in_progress:
            logger.info("Auth recovery already running for %s", session_id)
            return False
        self._in_progress.add(session_id)
        try:
            return await self._recover(session_id, account_id)
        except Exception as e:
            logger.exception("Auth recovery crashed for %s", session_id)
            self._wire.notify(
                AccountEventType.AUTH_RECOVERY_FAILED,
                session_id,
                account_id=account_id,
                account_name=None,
                error=str(e),
            )
            return False
        finally:
            self._in_progress.discard(session_id)

    async def _recover(self, session_id: str, account_id: str) -> bool:
        account = self._registry.get(account_id)
        if account is None:
            logger.error("Auth recovery: account %s not found", account_id)
            return False

        # A throttled account stays throttled; the poller reactivates it
        marked_expired = self._registry.set_status(account_id, AccountStatus.EXPIRED)
        if not self._kill_session(session_id):
            logger.debug("No live process to kill for %s", session_id)

        info = {"account_id": account.id, "account_name": account.name}
        self._wire.notify(AccountEventType.AUTH_RECOVERY_STARTED, session_id, **info)
        await asyncio.sleep(self._config.kill_delay_s)

        recovered = await self._run_login(account)
        if not recovered:
            logger.info("Login did not produce credentials, syncing from base profile")
            result = await asyncio.to_thread(
                sync_credentials_from_base, account.config_dir, self._base_dir
            )
            recovered = result.success
            if not recovered:
                logger.warning("Credential sync failed: %s", result.error)

        if not recovered:
            self._wire.notify(
                AccountEventType.AUTH_RECOVERY_FAILED,
                session_id,
                error="Re-authentication failed",
                login_command=build_login_command(account.config_dir, self._claude_binary),
                **info,
            )
            return False

        if marked_expired:
            self._registry.set_status(account_id, AccountStatus.ACTIVE)
        self._wire.notify(AccountEventType.AUTH_RECOVERY_COMPLETED, session_id, **info)
        self._wire.notify(
            AccountEventType.SWITCH_RESPAWN,
            session_id,
            to_account_id=account.id,
            to_account_name=account.name,
            config_dir=account.config_dir,
            last_prompt=self._last_prompts.get(session_id),
            reason="auth-recovery",
        )
        logger.info("Auth recovered for account %s (session %s)", account.name, session_id)
        return True

    async def _run_login(self, account: AccountProfile) -> bool:
        """Run ``claude login`` for the account. Success needs the credentials file."""
        env = build_child_process_env({CREDENTIAL_DIR_VAR: account.config_dir})
        try:
            proc = await asyncio.create_subprocess_exec(
                self._claude_binary,
                "login",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            logger.error("Could not start login for %s: %s", account.name, e)
            return False

        try:
            _, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._config.login_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Login for %s timed out after %ss", account.name, self._config.login_timeout_s
            )
            await self._stop_login(proc)
            return False

        if proc.returncode != 0:
            logger.warning(
                "Login for %s exited %s: %s",
                account.name,
                proc.returncode,
                stderr.decode("utf-8", errors="replace").strip(),
            )
            return False
        # Exit code alone is not trusted
        return has_credentials(account.config_dir)

    async def _stop_login(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the login process, SIGKILL it if it outlives the grace period."""
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.terminate_grace_s)
            return
        except asyncio.TimeoutError:
            logger.warning("Login process %s ignored SIGTERM, killing it", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
