"""Account Multiplexer — bind each session to a credential profile before spawn."""

from __future__ import annotations

import asyncio
import logging

from agentmux.accounts.models import AccountProfile, AccountStatus
from agentmux.accounts.registry import AccountRegistry
from agentmux.accounts.setup import has_credentials, sync_credentials_from_base
from agentmux.accounts.usage import UsageProvider
from agentmux.events import AccountEventType, AccountWire
from agentmux.process.env import CREDENTIAL_DIR_VAR
from agentmux.process.types import SpawnConfig

logger = logging.getLogger(__name__)


class AccountMultiplexer:
    """Resolves an account per session and injects it into the spawn env.

    Resolution order: explicit id, then the session's sticky assignment
    if that account is still active, then the configured default, then
    capacity-aware selection among active accounts.

    Two sessions resolved concurrently may land on the same account; the
    read and the write of the assignment are not serialized.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        wire: AccountWire,
        usage_provider: UsageProvider | None = None,
        base_dir: str | None = None,
    ) -> None:
        self._registry = registry
        self._wire = wire
        self._usage_provider = usage_provider
        self._base_dir = base_dir
        self._sync_tasks: set[asyncio.Task] = set()

    def resolve_account(
        self, session_id: str, account_id: str | None = None
    ) -> AccountProfile | None:
        if account_id:
            account = self._registry.get(account_id)
            if account is not None:
                return account
            logger.warning("Requested account %s not found for %s", account_id, session_id)

        assignment = self._registry.get_assignment(session_id)
        if assignment is not None:
            account = self._registry.get(assignment.account_id)
            if account is not None and account.status is AccountStatus.ACTIVE:
                return account

        account = self._registry.get_default_account()
        if account is not None:
            return account
        return self._registry.select_next_account(usage_provider=self._usage_provider)

    def prepare_spawn(self, config: SpawnConfig) -> AccountProfile | None:
        """Assign an account to ``config.session_id`` and point the env at it.

        Returns the account, or None when no account is usable (the spawn
        then proceeds with the inherited credentials).
        """
        account = self.resolve_account(config.session_id, config.account_id)
        if account is None:
            logger.debug("No account available for session %s", config.session_id)
            return None

        env = dict(config.custom_env_vars or {})
        if CREDENTIAL_DIR_VAR not in env:
            env[CREDENTIAL_DIR_VAR] = account.config_dir
        config.custom_env_vars = env
        config.account_id = account.id

        if not has_credentials(account.config_dir):
            self._schedule_sync(account)

        self._registry.assign_to_session(config.session_id, account.id)
        self._wire.notify(
            AccountEventType.ASSIGNED,
            session_id=config.session_id,
            account_id=account.id,
            account_name=account.name,
            config_dir=account.config_dir,
        )
        logger.info("Session %s assigned to account %s", config.session_id, account.name)
        return account

    def _schedule_sync(self, account: AccountProfile) -> None:
        """Best-effort credential copy from the base profile; never awaited by spawn."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop; skipping credential sync for %s", account.id)
            return
        task = loop.create_task(
            asyncio.to_thread(sync_credentials_from_base, account.config_dir, self._base_dir)
        )
        self._sync_tasks.add(task)
        task.add_done_callback(self._on_sync_done)

    def _on_sync_done(self, task: asyncio.Task) -> None:
        self._sync_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Credential sync failed: %s", exc)
            return
        result = task.result()
        if not result.success:
            logger.debug("Credential sync skipped: %s", result.error)

    async def wait_for_pending_syncs(self) -> None:
        if self._sync_tasks:
            await asyncio.gather(*self._sync_tasks, return_exceptions=True)
