"""Account Registry — credential profiles, session assignments, rotation."""

from __future__ import annotations

import logging
import os
import time
from typing import Any

from agentmux.accounts.models import (
    AccountAssignment,
    AccountProfile,
    AccountStatus,
    RegistryData,
    SwitchConfig,
)
from agentmux.accounts.usage import UsageProvider, window_bounds
from agentmux.errors import DuplicateAccountError

logger = logging.getLogger(__name__)


def _transition_allowed(old: AccountStatus, new: AccountStatus) -> bool:
    if old is new:
        return True
    return AccountStatus.ACTIVE in (old, new) or AccountStatus.DISABLED in (old, new)


class AccountRegistry:
    """All known accounts plus which session uses which.

    With a ``path`` every mutation is written back as JSON; without one
    the registry lives in memory only.
    """

    def __init__(self, path: str | None = None) -> None:
        self._path = os.path.expanduser(path) if path else None
        self._data = self._load()

    def _load(self) -> RegistryData:
        if self._path and os.path.exists(self._path):
            with open(self._path) as f:
                return RegistryData.model_validate_json(f.read())
        return RegistryData()

    def _save(self) -> None:
        if not self._path:
            return
        os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        tmp = self._path + ".tmp"
        with open(tmp, "w") as f:
            f.write(self._data.model_dump_json(indent=2))
        os.replace(tmp, self._path)

    # -- accounts -------------------------------------------------------

    def add(
        self,
        name: str,
        email: str,
        config_dir: str,
        agent_type: str = "claude-code",
        auth_method: str = "oauth",
        **extra: Any,
    ) -> AccountProfile:
        if self.find_by_email(email) is not None:
            raise DuplicateAccountError(email)
        profile = AccountProfile(
            name=name,
            email=email,
            config_dir=config_dir,
            agent_type=agent_type,
            auth_method=auth_method,
            is_default=not self._data.accounts,
            **extra,
        )
        self._data.accounts[profile.id] = profile
        self._data.rotation_order.append(profile.id)
        self._save()
        logger.info("Added account %s (%s)", profile.name, profile.id)
        return profile

    def get(self, account_id: str) -> AccountProfile | None:
        return self._data.accounts.get(account_id)

    def get_all(self) -> list[AccountProfile]:
        return list(self._data.accounts.values())

    def find_by_email(self, email: str) -> AccountProfile | None:
        return next((a for a in self._data.accounts.values() if a.email == email), None)

    def find_by_config_dir(self, config_dir: str) -> AccountProfile | None:
        return next(
            (a for a in self._data.accounts.values() if a.config_dir == config_dir), None
        )

    def update(self, account_id: str, **updates: Any) -> AccountProfile | None:
        account = self._data.accounts.get(account_id)
        if account is None:
            return None
        if updates.get("is_default"):
            for other in self._data.accounts.values():
                other.is_default = False
        updated = account.model_copy(update=updates)
        self._data.accounts[account_id] = updated
        self._save()
        return updated

    def remove(self, account_id: str) -> bool:
        if self._data.accounts.pop(account_id, None) is None:
            return False
        self._data.rotation_order = [i for i in self._data.rotation_order if i != account_id]
        self._data.assignments = {
            sid: a for sid, a in self._data.assignments.items() if a.account_id != account_id
        }
        self._save()
        logger.info("Removed account %s", account_id)
        return True

    def set_status(self, account_id: str, status: AccountStatus) -> bool:
        """Move an account to ``status``; returns False when refused.

        Automatic states only change through ACTIVE: a throttled account is
        not marked expired (nor the reverse) until it has recovered. DISABLED
        is a manual override and may be entered or left from any state.
        """
        account = self._data.accounts.get(account_id)
        if account is None:
            return False
        old = account.status
        new = AccountStatus(status)
        if not _transition_allowed(old, new):
            logger.warning(
                "Refusing status change for account %s: %s -> %s",
                account_id,
                old.value,
                new.value,
            )
            return False
        account.status = new
        if new is AccountStatus.THROTTLED:
            account.last_throttled_at = time.time()
        self._save()
        if old is not new:
            logger.info("Account %s status %s -> %s", account_id, old.value, new.value)
        return True

    def touch_last_used(self, account_id: str) -> None:
        account = self._data.accounts.get(account_id)
        if account is not None:
            account.last_used_at = time.time()
            self._save()

    # -- assignments ----------------------------------------------------

    def assign_to_session(self, session_id: str, account_id: str) -> AccountAssignment:
        assignment = AccountAssignment(session_id=session_id, account_id=account_id)
        self._data.assignments[session_id] = assignment
        account = self._data.accounts.get(account_id)
        if account is not None:
            account.last_used_at = time.time()
        self._save()
        return assignment

    def get_assignment(self, session_id: str) -> AccountAssignment | None:
        return self._data.assignments.get(session_id)

    def get_all_assignments(self) -> list[AccountAssignment]:
        return list(self._data.assignments.values())

    def remove_assignment(self, session_id: str) -> None:
        if self._data.assignments.pop(session_id, None) is not None:
            self._save()

    def reconcile_assignments(self, active_session_ids: set[str]) -> int:
        """Drop assignments for sessions that no longer exist. Returns the count."""
        stale = [sid for sid in self._data.assignments if sid not in active_session_ids]
        for sid in stale:
            del self._data.assignments[sid]
        if stale:
            self._save()
            logger.info("Removed %d stale assignments", len(stale))
        return len(stale)

    # -- selection ------------------------------------------------------

    def get_default_account(self) -> AccountProfile | None:
        """The default account if active, else the first active one."""
        active = [a for a in self._data.accounts.values() if a.status is AccountStatus.ACTIVE]
        for account in active:
            if account.is_default:
                return account
        return active[0] if active else None

    def select_next_account(
        self,
        exclude_ids: list[str] | None = None,
        usage_provider: UsageProvider | None = None,
    ) -> AccountProfile | None:
        excluded = set(exclude_ids or ())
        candidates = [
            a
            for a in self._data.accounts.values()
            if a.status is AccountStatus.ACTIVE and a.id not in excluded
        ]
        if not candidates:
            return None

        if self._data.switch_config.selection_strategy == "round-robin":
            return self._next_round_robin({a.id for a in candidates})

        if usage_provider is not None:
            return min(
                candidates,
                key=lambda a: (self._usage_fraction(a, usage_provider), a.last_used_at),
            )
        return min(candidates, key=lambda a: a.last_used_at)

    def _next_round_robin(self, candidate_ids: set[str]) -> AccountProfile | None:
        order = self._data.rotation_order
        for step in range(len(order)):
            index = (self._data.rotation_index + step) % len(order)
            if order[index] in candidate_ids:
                self._data.rotation_index = (index + 1) % len(order)
                self._save()
                return self._data.accounts[order[index]]
        return None

    @staticmethod
    def _usage_fraction(account: AccountProfile, usage_provider: UsageProvider) -> float:
        """Share of the window budget already spent; 0 when there is no budget."""
        if account.token_limit_per_window <= 0:
            return 0.0
        start, end = window_bounds(account.token_window_s)
        used = usage_provider.get_account_usage_in_window(account.id, start, end).total_tokens
        return used / account.token_limit_per_window

    # -- switch policy --------------------------------------------------

    def get_switch_config(self) -> SwitchConfig:
        return self._data.switch_config

    def update_switch_config(self, **updates: Any) -> SwitchConfig:
        self._data.switch_config = self._data.switch_config.model_copy(update=updates)
        self._save()
        return self._data.switch_config
