"""CLI entry point for agentmux."""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import os
import uuid

import typer

from agentmux.accounts import setup as account_setup
from agentmux.accounts.poller import RecoveryPoller
from agentmux.accounts.registry import AccountRegistry
from agentmux.config import AgentmuxConfig
from agentmux.errors import AccountError
from agentmux.events import AccountEventType, AccountWire, ProcessEventType, ProcessWire, WireEvent, drain
from agentmux.process.runner import CommandRunner
from agentmux.process.types import SpawnConfig, SshRemote

app = typer.Typer(
    name="agentmux",
    help="Run AI coding agents across several accounts, rotating them when throttled.",
    no_args_is_help=True,
)
accounts_app = typer.Typer(help="Manage credential profiles.", no_args_is_help=True)
app.add_typer(accounts_app, name="accounts")

_SESSION_ENDING = frozenset(
    {AccountEventType.SWITCH_RESPAWN, AccountEventType.AUTH_RECOVERY_FAILED}
)

# Binary to launch when --command is not given
DEFAULT_COMMANDS = {
    "claude-code": "claude",
    "codex": "codex",
    "opencode": "opencode",
}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _image_data_url(path: str) -> str:
    mime = mimetypes.guess_type(path)[0] or "image/png"
    with open(path, "rb") as f:
        encoded = base64.b64encode(f.read()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def _ssh_remote(
    host: str | None, user: str | None, port: int | None, key: str | None
) -> SshRemote | None:
    if not host:
        return None
    return SshRemote(id=host, host=host, port=port, username=user, private_key_path=key)


@app.command()
def run(
    agent: str = typer.Argument(help="Agent type: claude-code, codex, opencode or terminal."),
    args: list[str] = typer.Argument(None, help="Extra arguments passed to the agent."),
    prompt: str | None = typer.Option(None, "--prompt", "-p", help="Prompt for a batch run."),
    command: str | None = typer.Option(None, "--command", help="Agent binary to launch."),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory."),
    account: str | None = typer.Option(None, "--account", "-a", help="Account id to use."),
    image: list[str] = typer.Option(None, "--image", "-i", help="Attach an image file."),
    stdin_prompt: bool = typer.Option(
        False, "--stdin", help="Send the prompt as a stream-json message on stdin."
    ),
    ssh_host: str | None = typer.Option(None, "--ssh-host", help="Run on this host."),
    ssh_user: str | None = typer.Option(None, "--ssh-user"),
    ssh_port: int | None = typer.Option(None, "--ssh-port"),
    ssh_key: str | None = typer.Option(None, "--ssh-key"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Run one agent session and stream its output."""
    setup_logging(verbose)
    config = AgentmuxConfig.load(config_file)

    try:
        images = [_image_data_url(p) for p in image or []]
    except OSError as e:
        typer.echo(f"Error: cannot read image: {e}", err=True)
        raise typer.Exit(1)

    spawn_config = SpawnConfig(
        session_id=f"cli-{uuid.uuid4().hex[:8]}",
        tool_type=agent,
        cwd=os.path.abspath(cwd),
        command=command or DEFAULT_COMMANDS.get(agent, agent),
        args=list(args or []),
        prompt=prompt,
        images=images,
        send_prompt_via_stdin=stdin_prompt,
        ssh_remote=_ssh_remote(ssh_host, ssh_user, ssh_port, ssh_key),
        account_id=account,
    )
    code = asyncio.run(_run_session(config, spawn_config))
    raise typer.Exit(code)


async def _run_session(config: AgentmuxConfig, spawn_config: SpawnConfig) -> int:
    from agentmux.service import AgentMux

    mux = AgentMux(config)
    process_queue = mux.process_wire.subscribe()
    account_queue = mux.account_wire.subscribe()
    await mux.start(poll=False)

    async def _consume_accounts() -> None:
        while True:
            event = await account_queue.get()
            if event is None:
                break
            detail = ", ".join(f"{k}={v}" for k, v in event.data.items() if v is not None)
            typer.echo(f"[account] {event.type.value}: {detail}", err=True)
            if event.session_id == spawn_config.session_id and event.type in _SESSION_ENDING:
                # The agent was killed for recovery; no exit signal will follow
                process_queue.put_nowait(None)

    account_task = asyncio.create_task(_consume_accounts())

    result = await mux.spawn(spawn_config)
    exit_code = 1
    if result.success:
        exit_code = await _stream_until_exit(process_queue, spawn_config.session_id)
    else:
        for event in drain(process_queue):
            if event.type is ProcessEventType.ERROR:
                typer.echo(f"Error: {event.data.get('error')}", err=True)

    await mux.shutdown()
    await account_task
    return exit_code


async def _stream_until_exit(queue: asyncio.Queue[WireEvent | None], session_id: str) -> int:
    while True:
        event = await queue.get()
        if event is None:
            return 1
        if event.session_id != session_id:
            continue
        d = event.data

        if event.type is ProcessEventType.DATA:
            print(d["data"], end="", flush=True)

        elif event.type is ProcessEventType.STDERR:
            typer.echo(d["data"], err=True, nl=False)

        elif event.type is ProcessEventType.THINKING_CHUNK:
            logging.getLogger(__name__).debug("thinking: %s", d["text"])

        elif event.type is ProcessEventType.TOOL_EXECUTION:
            typer.echo(f"> {d['tool_name']}", err=True)

        elif event.type is ProcessEventType.SESSION_ID:
            typer.echo(f"[session] {d['agent_session_id']}", err=True)

        elif event.type is ProcessEventType.USAGE:
            usage = d["usage"]
            typer.echo(
                f"[usage] in={usage.input_tokens:,} out={usage.output_tokens:,} "
                f"cost=${usage.total_cost_usd:.4f}",
                err=True,
            )

        elif event.type is ProcessEventType.AGENT_ERROR:
            error = d["error"]
            typer.echo(f"\nERROR ({error.type.value}): {error.message}", err=True)

        elif event.type is ProcessEventType.ERROR:
            typer.echo(f"\nERROR: {d['error']}", err=True)
            return 1

        elif event.type is ProcessEventType.EXIT:
            print(flush=True)
            return int(d["code"] or 0)


@app.command("exec")
def exec_command(
    command: str = typer.Argument(help="Shell command to run to completion."),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory."),
    shell: str | None = typer.Option(None, "--shell", help="Shell to run the command in."),
    timeout: float | None = typer.Option(None, "--timeout", help="Kill after this many seconds."),
    ssh_host: str | None = typer.Option(None, "--ssh-host", help="Run on this host."),
    ssh_user: str | None = typer.Option(None, "--ssh-user"),
    ssh_port: int | None = typer.Option(None, "--ssh-port"),
    ssh_key: str | None = typer.Option(None, "--ssh-key"),
    remote_cwd: str | None = typer.Option(None, "--remote-cwd", help="Directory on the SSH host."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a one-shot command locally or over SSH."""
    setup_logging(verbose)
    remote = _ssh_remote(ssh_host, ssh_user, ssh_port, ssh_key)
    code = asyncio.run(_exec(command, os.path.abspath(cwd), shell, timeout, remote, remote_cwd))
    raise typer.Exit(code)


async def _exec(
    command: str,
    cwd: str,
    shell: str | None,
    timeout: float | None,
    remote: SshRemote | None,
    remote_cwd: str | None = None,
) -> int:
    wire = ProcessWire()
    queue = wire.subscribe()

    async def _consume() -> None:
        while True:
            event = await queue.get()
            if event is None:
                break
            if event.type is ProcessEventType.DATA:
                print(event.data["data"], end="", flush=True)
            elif event.type is ProcessEventType.STDERR:
                typer.echo(event.data["data"], err=True, nl=False)

    consumer = asyncio.create_task(_consume())
    runner = CommandRunner(wire)
    if remote is None:
        result = await runner.run_command("cli-exec", command, cwd, shell=shell, timeout=timeout)
    else:
        result = await runner.run_ssh_command(
            "cli-exec", remote, command, cwd=remote_cwd, timeout=timeout
        )
    wire.close()
    await consumer

    if result.transport_error:
        typer.echo(f"SSH error: {result.transport_error}", err=True)
    if result.timed_out:
        typer.echo(f"Timed out after {timeout}s", err=True)
    return result.exit_code


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------


def _registry(config_file: str | None) -> tuple[AgentmuxConfig, AccountRegistry]:
    config = AgentmuxConfig.load(config_file)
    return config, AccountRegistry(config.accounts.registry_path)


@accounts_app.command("list")
def accounts_list(
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """List registered accounts."""
    _, registry = _registry(config_file)
    accounts = registry.get_all()
    if not accounts:
        typer.echo("No accounts registered.")
        return
    for account in accounts:
        marker = "*" if account.is_default else " "
        typer.echo(
            f"{marker} {account.id}  {account.name:<16} {account.email:<32} "
            f"{account.status.value:<10} {account.config_dir}"
        )


@accounts_app.command("add")
def accounts_add(
    name: str = typer.Argument(help="Account name (directory becomes ~/.claude-<name>)."),
    email: str | None = typer.Option(None, "--email", "-e", help="Login email."),
    config_dir: str | None = typer.Option(
        None, "--config-dir", help="Use an existing directory instead of creating one."
    ),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Register an account, creating its directory if needed."""
    config, registry = _registry(config_file)
    try:
        if config_dir is None:
            config_dir = account_setup.create_account_directory(
                name, base_dir=config.accounts.base_config_dir
            )
        config_dir = os.path.abspath(os.path.expanduser(config_dir))
        email = email or account_setup.read_account_email(config_dir) or f"{name}@unknown"
        profile = registry.add(name=name, email=email, config_dir=config_dir)
    except AccountError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Added {profile.name} ({profile.id}) at {profile.config_dir}")
    if not account_setup.has_credentials(config_dir):
        login = account_setup.build_login_command(config_dir, config.accounts.claude_binary)
        typer.echo(f"Log in with: {login}")


@accounts_app.command("discover")
def accounts_discover(
    register: bool = typer.Option(False, "--register", help="Register what is found."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Find existing ~/.claude-* account directories."""
    _, registry = _registry(config_file)
    found = account_setup.discover_existing_accounts()
    if not found:
        typer.echo("No account directories found.")
        return
    for item in found:
        known = registry.find_by_config_dir(item.config_dir) is not None
        status = "registered" if known else ("auth" if item.has_auth else "no auth")
        typer.echo(f"  {item.name:<16} {item.email or '-':<32} {status}")
        if register and not known and item.email:
            try:
                registry.add(name=item.name, email=item.email, config_dir=item.config_dir)
            except AccountError as e:
                typer.echo(f"  skipped {item.name}: {e}", err=True)


@accounts_app.command("remove")
def accounts_remove(
    account_id: str = typer.Argument(help="Account id."),
    delete_dir: bool = typer.Option(False, "--delete-dir", help="Also delete its directory."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Unregister an account."""
    _, registry = _registry(config_file)
    account = registry.get(account_id)
    if account is None or not registry.remove(account_id):
        typer.echo(f"Error: account not found: {account_id}", err=True)
        raise typer.Exit(1)
    if delete_dir:
        try:
            account_setup.remove_account_directory(account.config_dir)
        except AccountError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
    typer.echo(f"Removed {account.name}")


@app.command()
def poll(
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Run one throttle-recovery check and report what recovered."""
    config, registry = _registry(config_file)
    poller = RecoveryPoller(
        registry, AccountWire(), safety_margin_s=config.recovery.safety_margin_s
    )
    recovered = poller.poll()
    if not recovered:
        typer.echo("No accounts recovered.")
        return
    for account_id in recovered:
        account = registry.get(account_id)
        typer.echo(f"Recovered {account.name if account else account_id}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
