"""Tests for agentmux.accounts.multiplexer (AccountMultiplexer)."""

from __future__ import annotations

from agentmux.accounts import AccountRegistry, AccountStatus
from agentmux.accounts.multiplexer import AccountMultiplexer
from agentmux.accounts.setup import CREDENTIALS_FILE
from agentmux.events import AccountEventType, AccountWire, drain
from agentmux.process.env import CREDENTIAL_DIR_VAR
from agentmux.process.types import SpawnConfig


def _spawn(session_id: str = "s1", **kwargs) -> SpawnConfig:
    return SpawnConfig(
        session_id=session_id, tool_type="claude-code", cwd="/tmp", command="claude", **kwargs
    )


def _setup(tmp_path, *names: str) -> tuple[AccountRegistry, AccountMultiplexer, AccountWire, list[str]]:
    registry = AccountRegistry()
    ids = []
    for name in names:
        config_dir = tmp_path / f".claude-{name}"
        config_dir.mkdir()
        (config_dir / CREDENTIALS_FILE).write_text("{}")
        ids.append(registry.add(name=name, email=f"{name}@x", config_dir=str(config_dir)).id)
    wire = AccountWire()
    return registry, AccountMultiplexer(registry, wire), wire, ids


class TestResolveAccount:
    def test_explicit_id_wins(self, tmp_path) -> None:
        registry, mux, _, (a, b) = _setup(tmp_path, "a", "b")
        assert mux.resolve_account("s1", b).id == b  # type: ignore[union-attr]

    def test_unknown_explicit_id_falls_back(self, tmp_path) -> None:
        registry, mux, _, (a, b) = _setup(tmp_path, "a", "b")
        assert mux.resolve_account("s1", "missing").id == a  # type: ignore[union-attr]

    def test_sticky_assignment(self, tmp_path) -> None:
        registry, mux, _, (a, b) = _setup(tmp_path, "a", "b")
        registry.assign_to_session("s1", b)
        assert mux.resolve_account("s1").id == b  # type: ignore[union-attr]

    def test_sticky_assignment_dropped_when_throttled(self, tmp_path) -> None:
        registry, mux, _, (a, b) = _setup(tmp_path, "a", "b")
        registry.assign_to_session("s1", b)
        registry.set_status(b, AccountStatus.THROTTLED)
        assert mux.resolve_account("s1").id == a  # type: ignore[union-attr]

    def test_nothing_active(self, tmp_path) -> None:
        registry, mux, _, (a,) = _setup(tmp_path, "a")
        registry.set_status(a, AccountStatus.EXPIRED)
        assert mux.resolve_account("s1") is None


class TestPrepareSpawn:
    def test_injects_config_dir_and_assigns(self, tmp_path) -> None:
        registry, mux, wire, (a,) = _setup(tmp_path, "a")
        q = wire.subscribe()
        config = _spawn(custom_env_vars={"FOO": "bar"})
        account = mux.prepare_spawn(config)
        assert account is not None and account.id == a
        assert config.custom_env_vars == {"FOO": "bar", CREDENTIAL_DIR_VAR: account.config_dir}
        assert config.account_id == a
        assert registry.get_assignment("s1").account_id == a  # type: ignore[union-attr]
        event = drain(q)[0]
        assert event.type is AccountEventType.ASSIGNED
        assert event.session_id == "s1"
        assert event.data == {
            "account_id": a,
            "account_name": "a",
            "config_dir": account.config_dir,
        }

    def test_existing_config_dir_var_kept(self, tmp_path) -> None:
        _, mux, _, _ = _setup(tmp_path, "a")
        config = _spawn(custom_env_vars={CREDENTIAL_DIR_VAR: "/custom"})
        mux.prepare_spawn(config)
        assert config.custom_env_vars[CREDENTIAL_DIR_VAR] == "/custom"  # type: ignore[index]

    def test_no_account(self) -> None:
        mux = AccountMultiplexer(AccountRegistry(), AccountWire())
        config = _spawn()
        assert mux.prepare_spawn(config) is None
        assert config.custom_env_vars is None
        assert config.account_id is None

    async def test_missing_credentials_synced_from_base(self, tmp_path) -> None:
        base = tmp_path / ".claude"
        base.mkdir()
        (base / CREDENTIALS_FILE).write_text('{"fresh": true}')
        target = tmp_path / ".claude-new"
        target.mkdir()
        registry = AccountRegistry()
        registry.add(name="new", email="n@x", config_dir=str(target))
        mux = AccountMultiplexer(registry, AccountWire(), base_dir=str(base))

        account = mux.prepare_spawn(_spawn())
        assert account is not None
        await mux.wait_for_pending_syncs()
        assert (target / CREDENTIALS_FILE).read_text() == '{"fresh": true}'

    def test_missing_credentials_without_loop(self, tmp_path) -> None:
        target = tmp_path / ".claude-new"
        target.mkdir()
        registry = AccountRegistry()
        registry.add(name="new", email="n@x", config_dir=str(target))
        mux = AccountMultiplexer(registry, AccountWire(), base_dir=str(tmp_path / "none"))
        # Spawn preparation never waits on (or fails because of) the sync
        assert mux.prepare_spawn(_spawn()) is not None
