"""Tests for agentmux.stream.error_patterns (pattern tables and matching)."""

from __future__ import annotations

from agentmux.stream.error_patterns import (
    AgentErrorType,
    get_error_patterns,
    match_error_pattern,
    match_ssh_error_pattern,
)


class TestAgentPatterns:
    def test_claude_auth(self) -> None:
        match = match_error_pattern(get_error_patterns("claude-code"), "Please run /login")
        assert match is not None
        assert match.type is AgentErrorType.AUTH_EXPIRED
        assert match.recoverable is True

    def test_claude_context_exhaustion(self) -> None:
        match = match_error_pattern(get_error_patterns("claude-code"), "Prompt is too long")
        assert match is not None
        assert match.type is AgentErrorType.TOKEN_EXHAUSTION

    def test_claude_permission_not_recoverable(self) -> None:
        match = match_error_pattern(get_error_patterns("claude-code"), "EACCES: open /x")
        assert match is not None
        assert match.type is AgentErrorType.PERMISSION_DENIED
        assert match.recoverable is False

    def test_overloaded_counts_as_rate_limit(self) -> None:
        match = match_error_pattern(get_error_patterns("claude-code"), "API overloaded (529)")
        assert match is not None
        assert match.type is AgentErrorType.RATE_LIMITED

    def test_unknown_agent_gets_common_patterns(self) -> None:
        patterns = get_error_patterns("opencode")
        match = match_error_pattern(patterns, "connect ECONNREFUSED 127.0.0.1:443")
        assert match is not None
        assert match.type is AgentErrorType.NETWORK_ERROR
        assert match_error_pattern(patterns, "invalid api key") is None

    def test_no_match(self) -> None:
        assert match_error_pattern(get_error_patterns("codex"), "all good") is None


class TestSshPatterns:
    def test_auth_failure(self) -> None:
        match = match_ssh_error_pattern("user@host: Permission denied (publickey).")
        assert match is not None
        assert match.type is AgentErrorType.PERMISSION_DENIED
        assert match.recoverable is False

    def test_connection_refused(self) -> None:
        match = match_ssh_error_pattern("ssh: connect to host box port 22: Connection refused")
        assert match is not None
        assert match.type is AgentErrorType.NETWORK_ERROR
        assert match.recoverable is True

    def test_missing_binary(self) -> None:
        match = match_ssh_error_pattern("bash: claude: command not found")
        assert match is not None
        assert match.type is AgentErrorType.AGENT_CRASHED

    def test_unrelated(self) -> None:
        assert match_ssh_error_pattern("Welcome to Ubuntu") is None
