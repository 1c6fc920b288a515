"""Agent error classification from output text.

Each agent family has a table of regexes that map raw error text to a typed
:class:`AgentError`. SSH transport failures have their own table so a broken
connection is never mistaken for an agent-side failure.
"""

from __future__ import annotations

import enum
import re
import time
from dataclasses import dataclass, field
from typing import Any


class AgentErrorType(enum.Enum):
    AUTH_EXPIRED = "auth_expired"
    TOKEN_EXHAUSTION = "token_exhaustion"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    AGENT_CRASHED = "agent_crashed"
    PERMISSION_DENIED = "permission_denied"
    SESSION_NOT_FOUND = "session_not_found"
    UNKNOWN = "unknown"


@dataclass
class AgentError:
    """An error reported by (or about) an agent process."""

    type: AgentErrorType
    message: str
    recoverable: bool
    agent_id: str
    session_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    raw: dict[str, Any] = field(default_factory=dict)
    parsed_json: Any = None


@dataclass(frozen=True)
class ErrorPattern:
    pattern: re.Pattern[str]
    type: AgentErrorType
    message: str
    recoverable: bool = True


@dataclass(frozen=True)
class ErrorMatch:
    type: AgentErrorType
    message: str
    recoverable: bool


def _p(
    regex: str, kind: AgentErrorType, message: str, recoverable: bool = True
) -> ErrorPattern:
    return ErrorPattern(re.compile(regex, re.IGNORECASE), kind, message, recoverable)


_COMMON_PATTERNS: tuple[ErrorPattern, ...] = (
    _p(
        r"rate limit|too many requests|\b429\b|usage limit|limit reached|try again (later|in)",
        AgentErrorType.RATE_LIMITED,
        "Rate limit reached. Wait before sending more requests or switch accounts.",
    ),
    _p(
        r"overloaded|\b529\b|capacity",
        AgentErrorType.RATE_LIMITED,
        "The service is overloaded. Try again shortly.",
    ),
    _p(
        r"ECONNREFUSED|ENOTFOUND|ETIMEDOUT|network error|connection (reset|refused)|socket hang up",
        AgentErrorType.NETWORK_ERROR,
        "Network error. Check your connection.",
    ),
)

_CLAUDE_PATTERNS: tuple[ErrorPattern, ...] = (
    _p(
        r"invalid api key|authentication[_ ](error|failed)|oauth token (has )?expired|"
        r"token (has )?expired|please run /login|not logged in|\b401\b|unauthorized",
        AgentErrorType.AUTH_EXPIRED,
        'Authentication expired. Run "claude login" to re-authenticate.',
    ),
    _p(
        r"prompt is too long|context (window|length) exceeded|maximum context length",
        AgentErrorType.TOKEN_EXHAUSTION,
        "The conversation exceeded the context window. Start a new session or compact.",
    ),
    _p(
        r"no conversation found|session .*not found",
        AgentErrorType.SESSION_NOT_FOUND,
        "The session to resume no longer exists.",
    ),
    _p(
        r"permission denied|EACCES",
        AgentErrorType.PERMISSION_DENIED,
        "Permission denied.",
        recoverable=False,
    ),
    *_COMMON_PATTERNS,
)

_CODEX_PATTERNS: tuple[ErrorPattern, ...] = (
    _p(
        r"invalid api key|incorrect api key|\b401\b|unauthorized|not logged in|please log ?in",
        AgentErrorType.AUTH_EXPIRED,
        'Authentication failed. Run "codex login" to re-authenticate.',
    ),
    _p(
        r"context[_ ]length[_ ]exceeded|maximum context length",
        AgentErrorType.TOKEN_EXHAUSTION,
        "The conversation exceeded the context window.",
    ),
    _p(
        r"quota|insufficient_quota",
        AgentErrorType.RATE_LIMITED,
        "Quota exhausted for this account.",
    ),
    *_COMMON_PATTERNS,
)

ERROR_PATTERNS: dict[str, tuple[ErrorPattern, ...]] = {
    "claude-code": _CLAUDE_PATTERNS,
    "codex": _CODEX_PATTERNS,
}

SSH_ERROR_PATTERNS: tuple[ErrorPattern, ...] = (
    _p(
        r"Permission denied \(publickey|Permission denied, please try again",
        AgentErrorType.PERMISSION_DENIED,
        "SSH authentication failed. Check the key configured for this remote.",
        recoverable=False,
    ),
    _p(
        r"REMOTE HOST IDENTIFICATION HAS CHANGED|Host key verification failed",
        AgentErrorType.PERMISSION_DENIED,
        "SSH host key changed. Verify the host and update known_hosts.",
        recoverable=False,
    ),
    _p(
        r"ssh: connect to host .* Connection refused",
        AgentErrorType.NETWORK_ERROR,
        "SSH connection refused. Is sshd running on the remote?",
    ),
    _p(
        r"ssh: connect to host .* (Connection timed out|Operation timed out)",
        AgentErrorType.NETWORK_ERROR,
        "SSH connection timed out.",
    ),
    _p(
        r"ssh: Could not resolve hostname",
        AgentErrorType.NETWORK_ERROR,
        "Could not resolve the SSH host name.",
        recoverable=False,
    ),
    _p(
        r"No route to host",
        AgentErrorType.NETWORK_ERROR,
        "No route to the SSH host.",
    ),
    _p(
        r"Connection closed by .* port|client_loop: send disconnect|Broken pipe",
        AgentErrorType.NETWORK_ERROR,
        "The SSH connection was lost.",
    ),
    _p(
        r"(bash|zsh|sh): .*: command not found",
        AgentErrorType.AGENT_CRASHED,
        "The agent binary was not found on the remote host.",
        recoverable=False,
    ),
)


def get_error_patterns(agent_id: str) -> tuple[ErrorPattern, ...]:
    return ERROR_PATTERNS.get(agent_id, _COMMON_PATTERNS)


def match_error_pattern(
    patterns: tuple[ErrorPattern, ...], text: str
) -> ErrorMatch | None:
    """First pattern that matches ``text`` wins."""
    for entry in patterns:
        if entry.pattern.search(text):
            return ErrorMatch(entry.type, entry.message, entry.recoverable)
    return None


def match_ssh_error_pattern(text: str) -> ErrorMatch | None:
    return match_error_pattern(SSH_ERROR_PATTERNS, text)
