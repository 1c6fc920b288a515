"""SSH invocation helpers: argument building, remote commands, error classification."""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass

from agentmux.process.types import SshRemote

DEFAULT_SSH_OPTIONS = (
    "BatchMode=yes",
    "StrictHostKeyChecking=accept-new",
    "ConnectTimeout=10",
)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def build_ssh_args(remote: SshRemote) -> list[str]:
    """Non-interactive ssh arguments, ending with the ``user@host`` target."""
    args: list[str] = []
    if remote.private_key_path:
        args += ["-i", os.path.expanduser(remote.private_key_path)]
    if remote.port:
        args += ["-p", str(remote.port)]
    for option in DEFAULT_SSH_OPTIONS:
        args += ["-o", option]
    args.append(remote.target)
    return args


def build_remote_script(
    command_line: str,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """One shell string for the remote side: ``cd``, inline exports, then ``command_line``.

    ``command_line`` is used verbatim. Variable names that are not valid
    shell identifiers are skipped.
    """
    parts: list[str] = []
    if cwd:
        parts.append(f"cd {shlex.quote(cwd)}")
    for key, value in (env or {}).items():
        if _ENV_NAME.match(key):
            parts.append(f"export {key}={shlex.quote(value)}")
    parts.append(command_line)
    return " && ".join(parts)


def build_remote_command(
    command: str,
    args: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Like :func:`build_remote_script` but for an argv, quoting every word."""
    return build_remote_script(shlex.join([command, *args]), cwd, env)


def build_ssh_invocation(
    remote: SshRemote,
    command: str,
    args: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> list[str]:
    """Full argv (starting with ``ssh``) that runs ``command`` on ``remote``.

    Remote-level variables are applied first so session variables win.
    """
    merged = {**remote.env, **(env or {})}
    return ["ssh", *build_ssh_args(remote), build_remote_command(command, args, cwd, merged)]


@dataclass(frozen=True)
class SshFailure:
    message: str


_CLASSIFIERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"Permission denied", re.I), "Authentication failed. Check the SSH key and username."),
    (re.compile(r"Connection refused", re.I), "Connection refused. Is the SSH server running?"),
    (re.compile(r"Connection timed out|Operation timed out", re.I), "Connection timed out. Check the host and network."),
    (re.compile(r"Could not resolve hostname", re.I), "Could not resolve hostname. Check the host name."),
    (re.compile(r"REMOTE HOST IDENTIFICATION HAS CHANGED", re.I), "SSH host key changed. Remove the stale entry from known_hosts."),
    (re.compile(r"Enter passphrase", re.I), "The SSH key requires a passphrase. Add it to ssh-agent first."),
    (re.compile(r"No route to host", re.I), "No route to host. Check the network."),
)


def classify_ssh_error(stderr: str) -> SshFailure:
    """Map ssh stderr to a readable transport failure."""
    for pattern, message in _CLASSIFIERS:
        if pattern.search(stderr):
            return SshFailure(message)
    text = stderr.strip()
    return SshFailure(text or "Connection failed")
