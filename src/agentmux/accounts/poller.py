"""Recovery Poller — promote throttled accounts back to active on a timer.

When every account is throttled no agent runs, so nothing else would
ever notice a window has passed. This timer does.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from agentmux.accounts.models import AccountStatus
from agentmux.accounts.registry import AccountRegistry
from agentmux.events import AccountEventType, AccountWire

logger = logging.getLogger(__name__)


class RecoveryPoller:
    def __init__(
        self,
        registry: AccountRegistry,
        wire: AccountWire,
        interval_s: float = 60.0,
        safety_margin_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._wire = wire
        self._interval_s = interval_s
        self._safety_margin_s = safety_margin_s
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin polling; the first check runs immediately. No-op if running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Recovery poller started (every %ss)", self._interval_s)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Recovery poller stopped")

    async def _loop(self) -> None:
        while True:
            try:
                self.poll()
            except Exception:
                logger.exception("Recovery poll failed")
            await asyncio.sleep(self._interval_s)

    def poll(self) -> list[str]:
        """One scan. Returns the ids of accounts that went back to active."""
        now = self._clock()
        accounts = self._registry.get_all()
        recovered: list[str] = []
        still_throttled = 0

        for account in accounts:
            if account.status is not AccountStatus.THROTTLED:
                continue
            if now - account.last_throttled_at > account.token_window_s + self._safety_margin_s:
                self._registry.set_status(account.id, AccountStatus.ACTIVE)
                recovered.append(account.id)
                logger.info("Account %s recovered from throttle", account.name)
            else:
                still_throttled += 1

        if recovered:
            for account_id in recovered:
                self._wire.send_status_changed(
                    account_id, AccountStatus.THROTTLED.value, AccountStatus.ACTIVE.value
                )
            self._wire.notify(
                AccountEventType.RECOVERY_AVAILABLE,
                recovered_account_ids=recovered,
                recovered_count=len(recovered),
                still_throttled_count=still_throttled,
                total_accounts=len(accounts),
            )
        return recovered
