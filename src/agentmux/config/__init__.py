"""Configuration — Pydantic models for agentmux settings."""

from __future__ import annotations

import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ProcessConfig(BaseModel):
    """Process supervision and output buffering."""

    flush_interval_ms: int = Field(
        default=50, description="Max delay before coalesced output is delivered"
    )
    flush_max_bytes: int = Field(
        default=8192, description="Pending output size that forces an immediate flush"
    )
    max_buffer_chars: int = Field(
        default=100_000, description="Bound for per-process raw stdout/stderr buffers"
    )
    pty_cols: int = Field(default=100)
    pty_rows: int = Field(default=30)
    default_shell: str | None = Field(
        default=None, description="Shell for terminal sessions (defaults to $SHELL)"
    )


class AccountsConfig(BaseModel):
    """Credential profile storage."""

    base_config_dir: str = Field(
        default="~/.claude", description="Shared base credential directory"
    )
    registry_path: str = Field(
        default="~/.agentmux/accounts.json",
        description="Where the account registry is persisted",
    )
    token_window_hours: float = Field(default=5.0)
    claude_binary: str = Field(default="claude")


class RecoveryConfig(BaseModel):
    """Auth recovery and throttle recovery timing."""

    kill_delay_s: float = Field(
        default=1.0, description="Grace period between kill and re-authentication"
    )
    login_timeout_s: float = Field(default=120.0)
    terminate_grace_s: float = Field(
        default=5.0, description="Wait after SIGTERM before a timed-out login is killed"
    )
    poll_interval_s: float = Field(default=60.0)
    safety_margin_s: float = Field(
        default=300.0,
        description="Extra time past the window before a throttled account recovers",
    )


class AgentmuxConfig(BaseModel):
    """Top-level agentmux configuration."""

    process: ProcessConfig = Field(default_factory=ProcessConfig)
    accounts: AccountsConfig = Field(default_factory=AccountsConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> AgentmuxConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Files ending in ``.yaml``/``.yml`` are read as YAML, anything else
        as JSON.

        Env vars:
            AGENTMUX_FLUSH_INTERVAL_MS  - Output coalescing interval
            AGENTMUX_FLUSH_MAX_BYTES    - Output size that forces a flush
            AGENTMUX_BASE_CONFIG_DIR    - Shared base credential directory
            AGENTMUX_REGISTRY_PATH      - Account registry file
            AGENTMUX_LOGIN_TIMEOUT      - Re-authentication timeout (seconds)
            AGENTMUX_POLL_INTERVAL      - Recovery poller interval (seconds)
            AGENTMUX_SAFETY_MARGIN      - Throttle recovery margin (seconds)
        """
        # override=True so an edited .env wins over stale exported values
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                if config_path.endswith((".yaml", ".yml")):
                    import yaml  # only needed for YAML configs

                    config_data = yaml.safe_load(f) or {}
                else:
                    import json

                    config_data = json.load(f)

        process = config_data.get("process", {})
        accounts = config_data.get("accounts", {})
        recovery = config_data.get("recovery", {})

        env_flush_interval = os.environ.get("AGENTMUX_FLUSH_INTERVAL_MS")
        if env_flush_interval:
            process["flush_interval_ms"] = int(env_flush_interval)

        env_flush_bytes = os.environ.get("AGENTMUX_FLUSH_MAX_BYTES")
        if env_flush_bytes:
            process["flush_max_bytes"] = int(env_flush_bytes)

        env_base_dir = os.environ.get("AGENTMUX_BASE_CONFIG_DIR")
        if env_base_dir:
            accounts["base_config_dir"] = env_base_dir

        env_registry = os.environ.get("AGENTMUX_REGISTRY_PATH")
        if env_registry:
            accounts["registry_path"] = env_registry

        env_login_timeout = os.environ.get("AGENTMUX_LOGIN_TIMEOUT")
        if env_login_timeout:
            recovery["login_timeout_s"] = float(env_login_timeout)

        env_poll_interval = os.environ.get("AGENTMUX_POLL_INTERVAL")
        if env_poll_interval:
            recovery["poll_interval_s"] = float(env_poll_interval)

        env_margin = os.environ.get("AGENTMUX_SAFETY_MARGIN")
        if env_margin:
            recovery["safety_margin_s"] = float(env_margin)

        if process:
            config_data["process"] = process
        if accounts:
            config_data["accounts"] = accounts
        if recovery:
            config_data["recovery"] = recovery

        return cls.model_validate(config_data)
