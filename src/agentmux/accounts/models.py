"""Account data types — credential profiles, assignments, switching policy."""

from __future__ import annotations

import enum
import time
import uuid
from typing import Literal

from pydantic import BaseModel, Field

DEFAULT_TOKEN_WINDOW_S = 5 * 60 * 60


def _gen_id() -> str:
    return uuid.uuid4().hex[:12]


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    THROTTLED = "throttled"
    EXPIRED = "expired"
    # Manually taken out of rotation; never set automatically
    DISABLED = "disabled"


class AccountProfile(BaseModel):
    """One credential profile: a directory holding a provider login."""

    id: str = Field(default_factory=_gen_id)
    name: str
    email: str
    config_dir: str
    agent_type: str = "claude-code"
    status: AccountStatus = AccountStatus.ACTIVE
    auth_method: Literal["oauth", "api-key"] = "oauth"
    added_at: float = Field(default_factory=time.time)
    last_used_at: float = 0.0
    last_throttled_at: float = 0.0
    # 0 means "no known budget"
    token_limit_per_window: int = 0
    token_window_s: float = DEFAULT_TOKEN_WINDOW_S
    is_default: bool = False
    auto_switch_enabled: bool = True


class AccountAssignment(BaseModel):
    session_id: str
    account_id: str
    assigned_at: float = Field(default_factory=time.time)


class SwitchConfig(BaseModel):
    """Policy for reacting to throttled accounts."""

    enabled: bool = False
    prompt_before_switch: bool = True
    warning_threshold_percent: int = 80
    auto_switch_threshold_percent: int = 95
    selection_strategy: Literal["least-used", "round-robin"] = "least-used"


class RegistryData(BaseModel):
    """On-disk shape of the account registry."""

    accounts: dict[str, AccountProfile] = Field(default_factory=dict)
    assignments: dict[str, AccountAssignment] = Field(default_factory=dict)
    switch_config: SwitchConfig = Field(default_factory=SwitchConfig)
    rotation_order: list[str] = Field(default_factory=list)
    rotation_index: int = 0
