"""Core process types: spawn configuration and the per-session ManagedProcess."""

from __future__ import annotations

import asyncio
import subprocess
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentmux.agents import ImageArgsBuilder, PromptArgsBuilder
    from agentmux.stream.parsers import OutputParser


@dataclass
class SshRemote:
    """Where a session's agent actually runs when it is not local."""

    id: str
    host: str
    port: int | None = None
    username: str | None = None
    private_key_path: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}" if self.username else self.host


@dataclass
class SpawnConfig:
    """Everything needed to start one session's agent process."""

    session_id: str
    tool_type: str
    cwd: str
    command: str
    args: list[str] = field(default_factory=list)
    requires_pty: bool | None = None
    prompt: str | None = None
    # data: URLs with inline base64 payloads
    images: list[str] = field(default_factory=list)
    send_prompt_via_stdin: bool = False
    send_prompt_via_stdin_raw: bool = False
    ssh_stdin_script: str | None = None
    ssh_remote: SshRemote | None = None
    custom_env_vars: dict[str, str] | None = None
    global_env_vars: dict[str, str] | None = None
    shell: str | None = None
    shell_args: str | None = None
    cols: int | None = None
    rows: int | None = None
    context_window: int | None = None
    account_id: str | None = None
    image_args: ImageArgsBuilder | None = None
    prompt_args: PromptArgsBuilder | None = None
    no_prompt_separator: bool | None = None


@dataclass
class SpawnResult:
    pid: int
    success: bool


@dataclass
class UsageStats:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    total_cost_usd: float = 0.0
    context_window: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_input_tokens
            + self.cache_creation_input_tokens
        )


@dataclass
class UsageTotals:
    """Last cumulative counters seen for a process (for delta computation)."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    reasoning_tokens: int = 0


# ---------------------------------------------------------------------------
# OS handle: exactly one of the two shapes below
# ---------------------------------------------------------------------------


@dataclass
class PtyHandle:
    """A process attached to a pseudo-terminal we own the master side of."""

    proc: subprocess.Popen
    master_fd: int
    pgid: int
    reader_task: asyncio.Task | None = None
    closed: bool = False


@dataclass
class ChildHandle:
    """A plain child process with piped stdio."""

    proc: asyncio.subprocess.Process
    tasks: list[asyncio.Task] = field(default_factory=list)


ProcessHandle = PtyHandle | ChildHandle


@dataclass
class ManagedProcess:
    """One live agent process. Owned exclusively by the supervisor."""

    session_id: str
    tool_type: str
    handle: ProcessHandle
    pid: int
    cwd: str
    command: str = ""
    args: list[str] = field(default_factory=list)
    is_batch_mode: bool = False
    is_stream_json_mode: bool = False
    output_parser: OutputParser | None = None
    context_window: int = 0
    ssh_remote_id: str | None = None
    ssh_remote_host: str | None = None
    start_time: float = field(default_factory=time.time)

    # Output assembly state
    json_buffer: str = ""
    stdout_buffer: str = ""
    stderr_buffer: str = ""
    streamed_text: str = ""

    # Cumulative usage tracking; None means "not yet known"
    last_usage_totals: UsageTotals | None = None
    usage_is_cumulative: bool | None = None

    error_emitted: bool = False
    result_emitted: bool = False
    session_id_emitted: bool = False
    temp_image_files: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.handle, PtyHandle)
