"""Throttle Handler — react to a rate-limit signal for (session, account)."""

from __future__ import annotations

import logging

from agentmux.accounts.models import AccountStatus
from agentmux.accounts.registry import AccountRegistry
from agentmux.accounts.usage import ThrottleEvent, UsageProvider, window_bounds
from agentmux.events import AccountEventType, AccountWire

logger = logging.getLogger(__name__)


class ThrottleHandler:
    def __init__(
        self,
        registry: AccountRegistry,
        wire: AccountWire,
        usage_provider: UsageProvider | None = None,
    ) -> None:
        self._registry = registry
        self._wire = wire
        self._usage_provider = usage_provider

    def handle_throttle(
        self, session_id: str, account_id: str, reason: str, message: str = ""
    ) -> None:
        """Mark the account throttled and propose or order a switch.

        Never raises: failures are logged and the caller carries on.
        """
        try:
            self._handle(session_id, account_id, reason, message)
        except Exception:
            logger.exception(
                "Throttle handling failed for session %s (account %s)", session_id, account_id
            )

    def _handle(self, session_id: str, account_id: str, reason: str, message: str) -> None:
        account = self._registry.get(account_id)
        if account is None or self._usage_provider is None:
            logger.debug("Throttle for %s ignored: no account or usage source", session_id)
            return

        window_start, window_end = window_bounds(account.token_window_s)
        usage = self._usage_provider.get_account_usage_in_window(
            account_id, window_start, window_end
        )
        tokens = usage.total_tokens
        self._usage_provider.insert_throttle_event(
            ThrottleEvent(
                account_id=account_id,
                session_id=session_id,
                reason=reason,
                tokens_at_throttle=tokens,
                window_start=window_start,
                window_end=window_end,
            )
        )
        self._registry.set_status(account_id, AccountStatus.THROTTLED)
        logger.warning(
            "Account %s throttled (%s) after %d tokens in window", account.name, reason, tokens
        )

        base = {
            "account_id": account_id,
            "account_name": account.name,
            "reason": reason,
            "message": message,
            "tokens_at_throttle": tokens,
        }

        switch_config = self._registry.get_switch_config()
        if not switch_config.enabled or not account.auto_switch_enabled:
            self._wire.notify(
                AccountEventType.THROTTLED, session_id, auto_switch_disabled=True, **base
            )
            return

        replacement = self._registry.select_next_account(
            [account_id], usage_provider=self._usage_provider
        )
        if replacement is None:
            self._wire.notify(
                AccountEventType.THROTTLED, session_id, no_alternatives=True, **base
            )
            return

        switch = {
            "from_account_id": account_id,
            "from_account_name": account.name,
            "to_account_id": replacement.id,
            "to_account_name": replacement.name,
            "reason": reason,
            "tokens_at_throttle": tokens,
        }
        if switch_config.prompt_before_switch:
            self._wire.notify(AccountEventType.SWITCH_PROMPT, session_id, **switch)
        else:
            self._wire.notify(
                AccountEventType.SWITCH_EXECUTE, session_id, automatic=True, **switch
            )
