"""Account layer — credential profiles and the logic that rotates them."""

from agentmux.accounts.models import AccountProfile, AccountStatus, SwitchConfig
from agentmux.accounts.registry import AccountRegistry
from agentmux.accounts.usage import InMemoryUsageStore

__all__ = [
    "AccountProfile",
    "AccountRegistry",
    "AccountStatus",
    "InMemoryUsageStore",
    "SwitchConfig",
]
