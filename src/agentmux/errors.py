"""Exception hierarchy for agentmux.

Agent-reported failures (auth expiry, rate limits) are not exceptions; they
travel as :class:`agentmux.stream.error_patterns.AgentError` values on the
process wire. The exceptions here cover misuse of the library itself.
"""

from __future__ import annotations


class AgentmuxError(Exception):
    """Base class for all agentmux errors."""


class AccountError(AgentmuxError):
    """Invalid account registry or account directory operation."""


class DuplicateAccountError(AccountError):
    def __init__(self, email: str) -> None:
        super().__init__(f"Account with email {email} already exists")
        self.email = email
