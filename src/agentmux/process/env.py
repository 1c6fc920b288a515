"""Environment construction for spawned agent processes.

Precedence, highest first: session vars > global vars > inherited process
environment. A fixed set of variables set by the host runtime, or by an
agent that is itself running us, is always removed so the child never
mistakes its execution context.
"""

from __future__ import annotations

import os
import sys

CREDENTIAL_DIR_VAR = "CLAUDE_CONFIG_DIR"
RESUME_MARKER_VAR = "AGENTMUX_SESSION_RESUMED"

STRIPPED_ENV_VARS = frozenset(
    {
        "ELECTRON_RUN_AS_NODE",
        "ELECTRON_NO_ASAR",
        "ELECTRON_EXTRA_LAUNCH_ARGS",
        "CLAUDECODE",
        "CLAUDE_CODE_ENTRYPOINT",
        "CLAUDE_AGENT_SDK_VERSION",
        "CLAUDE_CODE_ENABLE_SDK_FILE_CHECKPOINTING",
        "NODE_ENV",
    }
)

# Directories agent CLIs are commonly installed into but that GUI-launched
# processes often lack on PATH.
_EXTRA_PATH_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "~/.local/bin",
    "~/.npm-global/bin",
    "~/.bun/bin",
    "~/.cargo/bin",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
)


def expand_tilde(value: str) -> str:
    """Expand a leading ``~/`` only; tildes elsewhere are left alone."""
    if value.startswith("~/"):
        return os.path.join(os.path.expanduser("~"), value[2:])
    return value


def build_expanded_path(base: str | None = None) -> str:
    """Return ``base`` (default: $PATH) with common install dirs appended."""
    parts = [p for p in (base if base is not None else os.environ.get("PATH", "")).split(os.pathsep) if p]
    for extra in _EXTRA_PATH_DIRS:
        expanded = expand_tilde(extra)
        if expanded not in parts:
            parts.append(expanded)
    return os.pathsep.join(parts)


def _apply_vars(env: dict[str, str], extra: dict[str, str] | None) -> None:
    if not extra:
        return
    for key, value in extra.items():
        env[key] = expand_tilde(value)


def build_child_process_env(
    custom_env_vars: dict[str, str] | None = None,
    is_resuming: bool = False,
    global_env_vars: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for a plain (non-PTY) agent process. Inputs are not mutated."""
    env = {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV_VARS}
    env["PATH"] = build_expanded_path()
    _apply_vars(env, global_env_vars)
    _apply_vars(env, custom_env_vars)
    if is_resuming:
        env[RESUME_MARKER_VAR] = "1"
    return env


def build_pty_terminal_env(shell_env_vars: dict[str, str] | None = None) -> dict[str, str]:
    """Curated minimal environment for a PTY session.

    On Unix only a fixed PATH plus identity and locale variables are
    passed through; on Windows the full inherited environment is kept
    because too much breaks without it.
    """
    if sys.platform == "win32":
        env = {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV_VARS}
    else:
        home = os.path.expanduser("~")
        env = {
            "HOME": home,
            "USER": os.environ.get("USER", ""),
            "SHELL": os.environ.get("SHELL", "/bin/sh"),
            "LANG": os.environ.get("LANG", "en_US.UTF-8"),
            "PATH": build_expanded_path(""),
        }
        for key in ("LC_ALL", "LOGNAME", "TMPDIR"):
            if key in os.environ:
                env[key] = os.environ[key]
    env["TERM"] = "xterm-256color"
    _apply_vars(env, shell_env_vars)
    return env


def args_indicate_resume(args: list[str]) -> bool:
    return "--resume" in args or "--session" in args
