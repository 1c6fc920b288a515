"""Plain child-process spawner — agents driven over piped stdio.

Decides how the prompt reaches the agent (CLI argument, raw stdin, or a
stream-json stdin message), how image attachments are passed, and wires
stdout/stderr into the output stream processor. Exit is reported only
after both output streams hit EOF *and* the process has been reaped, so
no buffered output is ever dropped.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from agentmux.agents import AgentCapabilities, get_capabilities
from agentmux.process.env import args_indicate_resume, build_child_process_env
from agentmux.process.images import (
    build_stream_json_message,
    cleanup_temp_files,
    save_image_to_temp_file,
)
from agentmux.process.ssh import build_ssh_args, build_ssh_invocation
from agentmux.process.types import ChildHandle, ManagedProcess, SpawnConfig, SpawnResult
from agentmux.stream.parsers import get_output_parser

if TYPE_CHECKING:
    from agentmux.stream.exit import ExitHandler
    from agentmux.stream.stderr import StderrHandler
    from agentmux.stream.stdout import StdoutHandler

logger = logging.getLogger(__name__)

INPUT_FORMAT_FLAG = "--input-format"
STREAM_JSON = "stream-json"
KILL_GRACE_SECONDS = 2.0


def has_arg_pair(args: list[str], flag: str, value: str) -> bool:
    """True if ``flag`` is immediately followed by ``value`` (or given as ``flag=value``)."""
    for i, arg in enumerate(args):
        if arg == f"{flag}={value}":
            return True
        if arg == flag and i + 1 < len(args) and args[i + 1] == value:
            return True
    return False


def detect_stream_json_mode(
    args: list[str], config: SpawnConfig, has_images: bool
) -> bool:
    """Whether stdout will be line-delimited JSON events."""

    def contains(pattern: str) -> bool:
        return any(pattern in arg for arg in args)

    return (
        contains("stream-json")
        or contains("--json")
        or (contains("--format") and contains("json"))
        or config.send_prompt_via_stdin
        or bool(config.ssh_stdin_script)
        or (has_images and bool(config.prompt))
    )


@dataclass
class SpawnPlan:
    """The resolved argv-level decisions for one spawn."""

    args: list[str]
    prompt: str | None
    prompt_via_stdin: bool
    stream_json_images: list[str] = field(default_factory=list)
    temp_files: list[str] = field(default_factory=list)


def plan_spawn(
    config: SpawnConfig,
    caps: AgentCapabilities,
    save_image: Callable[[str, int], str | None] = save_image_to_temp_file,
) -> SpawnPlan:
    """Resolve final args and prompt delivery for ``config``.

    Images with a stream-json-capable agent always go through stdin as a
    structured message, which requires ``--input-format stream-json``. An
    ``--output-format stream-json`` pair says nothing about input and
    must not be mistaken for it.
    """
    args = list(config.args)
    prompt = config.prompt
    has_images = bool(config.images) and bool(prompt)
    image_args = config.image_args or caps.image_args
    prompt_args = config.prompt_args or caps.prompt_args
    no_separator = (
        config.no_prompt_separator
        if config.no_prompt_separator is not None
        else caps.no_prompt_separator
    )

    stream_json_images: list[str] = []
    temp_files: list[str] = []

    if has_images and caps.supports_stream_json_input:
        if not has_arg_pair(args, INPUT_FORMAT_FLAG, STREAM_JSON):
            args += [INPUT_FORMAT_FLAG, STREAM_JSON]
        stream_json_images = list(config.images)
    elif config.images and image_args:
        for index, image in enumerate(config.images):
            path = save_image(image, index)
            if path:
                temp_files.append(path)
        embed = caps.image_resume_mode == "prompt-embed" and "resume" in args
        if embed and prompt:
            prompt = f"[Attached images: {', '.join(temp_files)}]\n\n{prompt}"
        else:
            for path in temp_files:
                args += image_args(path)

    prompt_via_stdin = (
        config.send_prompt_via_stdin
        or config.send_prompt_via_stdin_raw
        or has_arg_pair(args, INPUT_FORMAT_FLAG, STREAM_JSON)
    )

    if prompt and not prompt_via_stdin:
        if prompt_args:
            args += prompt_args(prompt)
        elif no_separator:
            args.append(prompt)
        else:
            args += ["--", prompt]

    return SpawnPlan(
        args=args,
        prompt=prompt,
        prompt_via_stdin=prompt_via_stdin,
        stream_json_images=stream_json_images,
        temp_files=temp_files,
    )


class ChildProcessSpawner:
    def __init__(
        self,
        processes: dict[str, ManagedProcess],
        stdout_handler: StdoutHandler,
        stderr_handler: StderrHandler,
        exit_handler: ExitHandler,
    ) -> None:
        self._processes = processes
        self._stdout_handler = stdout_handler
        self._stderr_handler = stderr_handler
        self._exit_handler = exit_handler

    async def spawn(self, config: SpawnConfig) -> SpawnResult:
        session_id = config.session_id
        caps = get_capabilities(config.tool_type)
        plan = plan_spawn(config, caps)
        has_images = bool(config.images) and bool(config.prompt)

        env = build_child_process_env(
            config.custom_env_vars,
            is_resuming=args_indicate_resume(plan.args),
            global_env_vars=config.global_env_vars,
        )

        remote = config.ssh_remote
        cwd = config.cwd
        if remote is not None:
            if config.ssh_stdin_script:
                argv = ["ssh", *build_ssh_args(remote), "/bin/bash -s"]
            else:
                argv = build_ssh_invocation(
                    remote, config.command, plan.args, config.cwd, config.custom_env_vars
                )
            # The working directory only exists on the remote side
            cwd = os.path.expanduser("~")
        else:
            argv = [config.command, *plan.args]

        logger.debug(
            "Spawning %s for %s: %s (%d args)",
            config.tool_type,
            session_id,
            argv[0],
            len(argv) - 1,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("Failed to spawn %s for %s: %s", argv[0], session_id, e)
            cleanup_temp_files(plan.temp_files)
            self._exit_handler.handle_error(session_id, e)
            return SpawnResult(pid=-1, success=False)

        handle = ChildHandle(proc=proc)
        process = ManagedProcess(
            session_id=session_id,
            tool_type=config.tool_type,
            handle=handle,
            pid=proc.pid,
            cwd=config.cwd,
            command=config.command,
            args=plan.args,
            is_batch_mode=bool(config.prompt),
            is_stream_json_mode=detect_stream_json_mode(plan.args, config, has_images),
            output_parser=get_output_parser(config.tool_type),
            context_window=config.context_window or caps.default_context_window,
            ssh_remote_id=remote.id if remote else None,
            ssh_remote_host=remote.host if remote else None,
            temp_image_files=plan.temp_files,
        )
        self._processes[session_id] = process

        handle.tasks = [
            asyncio.create_task(self._watch(session_id, proc, process)),
        ]

        await self._deliver_stdin(config, plan, process)
        return SpawnResult(pid=proc.pid, success=True)

    async def _deliver_stdin(
        self, config: SpawnConfig, plan: SpawnPlan, process: ManagedProcess
    ) -> None:
        assert isinstance(process.handle, ChildHandle)
        stdin = process.handle.proc.stdin
        if stdin is None:
            return

        payload: str | None = None
        if config.ssh_stdin_script:
            payload = config.ssh_stdin_script
        elif plan.prompt_via_stdin and plan.prompt:
            if config.send_prompt_via_stdin_raw:
                payload = plan.prompt
            else:
                payload = build_stream_json_message(plan.prompt, plan.stream_json_images) + "\n"
        elif not process.is_batch_mode:
            # Interactive session: keep stdin open for later writes
            return

        try:
            if payload is not None:
                stdin.write(payload.encode("utf-8"))
                await stdin.drain()
            stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(
                "stdin closed before write completed for %s", config.session_id
            )

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        session_id: str,
        handle_data: Callable[[str, str, ManagedProcess], None],
        owner: ManagedProcess,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    handle_data(session_id, tail, owner)
                break
            text = decoder.decode(chunk)
            if text:
                handle_data(session_id, text, owner)

    async def _watch(
        self, session_id: str, proc: asyncio.subprocess.Process, owner: ManagedProcess
    ) -> None:
        """Drain both streams, then reap; only then report the exit."""
        try:
            await asyncio.gather(
                self._pump(proc.stdout, session_id, self._stdout_handler.handle_data, owner),  # type: ignore[arg-type]
                self._pump(proc.stderr, session_id, self._stderr_handler.handle_data, owner),  # type: ignore[arg-type]
            )
            code = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Stream failure for %s", session_id)
            self._exit_handler.handle_error(session_id, e, owner)
            return
        self._exit_handler.handle_exit(session_id, code, owner)

    # -- input side -----------------------------------------------------

    @staticmethod
    def write(handle: ChildHandle, data: str) -> bool:
        stdin = handle.proc.stdin
        if stdin is None or stdin.is_closing():
            return False
        stdin.write(data.encode("utf-8"))
        return True

    @staticmethod
    def interrupt(handle: ChildHandle) -> None:
        if handle.proc.returncode is None:
            os.killpg(handle.proc.pid, signal.SIGINT)

    @staticmethod
    def kill(handle: ChildHandle) -> None:
        """Stop watching, SIGTERM the process group, SIGKILL it after a grace period.

        The SIGKILL goes to the group even after the leader exits, so tool
        subprocesses holding the pipes go too.
        """
        for task in handle.tasks:
            task.cancel()
        proc = handle.proc
        if proc.returncode is None:
            try:
                os.killpg(proc.pid, signal.SIGTERM)
            except ProcessLookupError:
                return

        def _escalate() -> None:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

        asyncio.get_running_loop().call_later(KILL_GRACE_SECONDS, _escalate)
