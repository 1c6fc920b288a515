"""AgentMux — the service instance that wires every component together.

All state that would otherwise be module-global (live sessions, recovery
set, last prompts, poller timer) lives on one :class:`AgentMux`, so
independent instances can coexist in one process.
"""

from __future__ import annotations

import asyncio
import logging

from agentmux.accounts.auth_recovery import AuthRecovery
from agentmux.accounts.multiplexer import AccountMultiplexer
from agentmux.accounts.poller import RecoveryPoller
from agentmux.accounts.registry import AccountRegistry
from agentmux.accounts.throttle import ThrottleHandler
from agentmux.accounts.usage import InMemoryUsageStore
from agentmux.config import AgentmuxConfig
from agentmux.events import AccountWire, ProcessEventType, ProcessWire, WireEvent
from agentmux.process.supervisor import ProcessSupervisor
from agentmux.process.types import SpawnConfig, SpawnResult, UsageStats
from agentmux.stream.error_patterns import AgentError, AgentErrorType

logger = logging.getLogger(__name__)

# Agents whose credentials live in a per-account config directory
ACCOUNT_AWARE_AGENTS = frozenset({"claude-code"})

_THROTTLE_ERRORS = frozenset({AgentErrorType.RATE_LIMITED, AgentErrorType.TOKEN_EXHAUSTION})


class AgentMux:
    def __init__(
        self,
        config: AgentmuxConfig | None = None,
        registry: AccountRegistry | None = None,
        usage_store: InMemoryUsageStore | None = None,
    ) -> None:
        self.config = config or AgentmuxConfig()
        accounts = self.config.accounts
        recovery = self.config.recovery

        self.process_wire = ProcessWire()
        self.account_wire = AccountWire()
        self.supervisor = ProcessSupervisor(self.process_wire, self.config.process)
        self.registry = registry or AccountRegistry(accounts.registry_path)
        self.usage_store = usage_store or InMemoryUsageStore()

        self.multiplexer = AccountMultiplexer(
            self.registry, self.account_wire, self.usage_store, accounts.base_config_dir
        )
        self.throttle_handler = ThrottleHandler(
            self.registry, self.account_wire, self.usage_store
        )
        self.auth_recovery = AuthRecovery(
            self.registry,
            self.account_wire,
            self.supervisor.kill,
            config=recovery,
            claude_binary=accounts.claude_binary,
            base_dir=accounts.base_config_dir,
        )
        self.poller = RecoveryPoller(
            self.registry,
            self.account_wire,
            interval_s=recovery.poll_interval_s,
            safety_margin_s=recovery.safety_margin_s,
        )

        self._queue: asyncio.Queue[WireEvent | None] | None = None
        self._router: asyncio.Task | None = None
        self._recoveries: set[asyncio.Task] = set()

    async def start(self, poll: bool = True) -> None:
        """Begin routing process signals to the account layer."""
        if self._router is not None:
            return
        self._queue = self.process_wire.subscribe()
        self._router = asyncio.create_task(self._route(self._queue))
        if poll:
            self.poller.start()

    async def spawn(self, config: SpawnConfig, use_accounts: bool = True) -> SpawnResult:
        if use_accounts and config.tool_type in ACCOUNT_AWARE_AGENTS:
            self.multiplexer.prepare_spawn(config)
        if config.prompt:
            self.auth_recovery.record_last_prompt(config.session_id, config.prompt)
        return await self.supervisor.spawn(config)

    def cleanup_session(self, session_id: str) -> None:
        """Forget everything held for a session that was closed for good."""
        self.supervisor.kill(session_id)
        self.registry.remove_assignment(session_id)
        self.auth_recovery.cleanup_session(session_id)

    async def _route(self, queue: asyncio.Queue[WireEvent | None]) -> None:
        while True:
            event = await queue.get()
            if event is None:
                break
            try:
                self.handle_event(event)
            except Exception:
                logger.exception("Failed to route %s for %s", event.type.value, event.session_id)

    def handle_event(self, event: WireEvent) -> None:
        session_id = event.session_id
        if session_id is None:
            return
        if event.type is ProcessEventType.USAGE:
            self._record_usage(session_id, event.data["usage"])
        elif event.type is ProcessEventType.AGENT_ERROR:
            self._on_agent_error(session_id, event.data["error"])

    def _record_usage(self, session_id: str, usage: UsageStats) -> None:
        assignment = self.registry.get_assignment(session_id)
        if assignment is not None:
            self.usage_store.record_usage(assignment.account_id, usage)

    def _on_agent_error(self, session_id: str, error: AgentError) -> None:
        assignment = self.registry.get_assignment(session_id)
        if assignment is None:
            return
        if error.type in _THROTTLE_ERRORS:
            self.throttle_handler.handle_throttle(
                session_id, assignment.account_id, error.type.value, error.message
            )
        elif error.type is AgentErrorType.AUTH_EXPIRED:
            if self.auth_recovery.is_recovering(session_id):
                return
            task = asyncio.create_task(
                self.auth_recovery.recover_auth(session_id, assignment.account_id)
            )
            self._recoveries.add(task)
            task.add_done_callback(self._recoveries.discard)

    async def shutdown(self) -> None:
        """Stop timers, kill every session and close both wires."""
        self.poller.stop()
        self.supervisor.kill_all()
        self.supervisor.buffer_manager.flush_all()
        for task in list(self._recoveries):
            task.cancel()
        if self._recoveries:
            await asyncio.gather(*self._recoveries, return_exceptions=True)
        await self.multiplexer.wait_for_pending_syncs()
        self.process_wire.close()
        if self._router is not None:
            await self._router
            self._router = None
        self.account_wire.close()
        logger.info("AgentMux shut down")
