"""Account directory setup — create, discover, repair and sync credential profiles.

Each account is a ``~/.claude-<name>`` directory. Shared resources
(settings, projects, plugins...) are symlinked from the base ``~/.claude``
so every account sees the same conversations; only credentials differ.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
from dataclasses import dataclass, field
from typing import Any

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agentmux.errors import AccountError
from agentmux.process.env import CREDENTIAL_DIR_VAR

logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = "~/.claude"
ACCOUNT_DIR_PREFIX = ".claude-"
CREDENTIALS_FILE = ".credentials.json"
# Older CLI versions keep the login here instead
LEGACY_AUTH_FILE = ".claude.json"

SHARED_SYMLINKS = (
    "commands",
    "ide",
    "plans",
    "plugins",
    "settings.json",
    "CLAUDE.md",
    "todos",
    "session-env",
    "projects",
)


def _base(base_dir: str | None) -> str:
    return os.path.expanduser(base_dir or DEFAULT_BASE_DIR)


def credentials_path(config_dir: str) -> str:
    return os.path.join(os.path.expanduser(config_dir), CREDENTIALS_FILE)


def has_credentials(config_dir: str) -> bool:
    return os.path.isfile(credentials_path(config_dir))


@dataclass
class BaseDirValidation:
    valid: bool
    base_dir: str
    errors: list[str] = field(default_factory=list)


def validate_base_claude_dir(base_dir: str | None = None) -> BaseDirValidation:
    """Check the shared base directory exists and holds a login."""
    base = _base(base_dir)
    errors: list[str] = []
    if not os.path.exists(base):
        errors.append(f"{base} does not exist. Run 'claude' at least once to create it.")
    elif not os.path.isdir(base):
        errors.append(f"{base} exists but is not a directory")
    if not (
        os.path.isfile(os.path.join(base, CREDENTIALS_FILE))
        or os.path.isfile(os.path.join(base, LEGACY_AUTH_FILE))
    ):
        errors.append(
            f"No {CREDENTIALS_FILE} or {LEGACY_AUTH_FILE} found; the CLI may not be authenticated."
        )
    return BaseDirValidation(valid=not errors, base_dir=base, errors=errors)


def extract_email(data: dict[str, Any]) -> str | None:
    """Find the login email in a CLI auth file; its location varies by version."""
    oauth = data.get("oauthAccount") or {}
    account = data.get("account") or {}
    return (
        data.get("email")
        or data.get("accountEmail")
        or data.get("primaryEmail")
        or oauth.get("emailAddress")
        or oauth.get("email")
        or account.get("email")
        or None
    )


def read_account_email(config_dir: str) -> str | None:
    path = os.path.join(os.path.expanduser(config_dir), LEGACY_AUTH_FILE)
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return extract_email(data) if isinstance(data, dict) else None


@dataclass
class DiscoveredAccount:
    config_dir: str
    name: str
    email: str | None
    has_auth: bool


def discover_existing_accounts(home: str | None = None) -> list[DiscoveredAccount]:
    """Scan ``home`` for ``.claude-*`` account directories."""
    home = home or os.path.expanduser("~")
    found: list[DiscoveredAccount] = []
    for entry in sorted(os.listdir(home)):
        if not entry.startswith(ACCOUNT_DIR_PREFIX):
            continue
        config_dir = os.path.join(home, entry)
        if not os.path.isdir(config_dir):
            continue
        has_auth = os.path.isfile(os.path.join(config_dir, LEGACY_AUTH_FILE))
        found.append(
            DiscoveredAccount(
                config_dir=config_dir,
                name=entry[len(ACCOUNT_DIR_PREFIX):],
                email=read_account_email(config_dir) if has_auth else None,
                has_auth=has_auth,
            )
        )
    return found


def create_account_directory(
    account_name: str, home: str | None = None, base_dir: str | None = None
) -> str:
    """Create ``.claude-<name>`` with shared resources symlinked in.

    Does not log in; run :func:`build_login_command` afterwards.
    """
    home = home or os.path.expanduser("~")
    base = _base(base_dir)
    config_dir = os.path.join(home, f"{ACCOUNT_DIR_PREFIX}{account_name}")

    if os.path.lexists(config_dir):
        raise AccountError(f"Directory {config_dir} already exists")
    validation = validate_base_claude_dir(base)
    if not validation.valid:
        raise AccountError("; ".join(validation.errors))

    os.makedirs(config_dir)
    logger.info("Created account directory: %s", config_dir)
    for resource in SHARED_SYMLINKS:
        source = os.path.join(base, resource)
        if not os.path.exists(source):
            logger.debug("Skipped symlink for %s (source not found)", resource)
            continue
        os.symlink(source, os.path.join(config_dir, resource))
    return config_dir


@dataclass
class SymlinkReport:
    broken: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.broken and not self.missing


def validate_account_symlinks(config_dir: str, base_dir: str | None = None) -> SymlinkReport:
    """Broken links, and links missing although the shared source exists."""
    base = _base(base_dir)
    report = SymlinkReport()
    for resource in SHARED_SYMLINKS:
        target = os.path.join(config_dir, resource)
        if os.path.islink(target):
            if not os.path.exists(target):
                report.broken.append(resource)
        elif not os.path.lexists(target) and os.path.exists(os.path.join(base, resource)):
            report.missing.append(resource)
    return report


def repair_account_symlinks(
    config_dir: str, base_dir: str | None = None
) -> tuple[list[str], list[str]]:
    """Recreate broken or missing links. Returns ``(repaired, errors)``."""
    base = _base(base_dir)
    report = validate_account_symlinks(config_dir, base)
    repaired: list[str] = []
    errors: list[str] = []
    for resource in [*report.broken, *report.missing]:
        target = os.path.join(config_dir, resource)
        try:
            if os.path.islink(target):
                os.unlink(target)
            os.symlink(os.path.join(base, resource), target)
            repaired.append(resource)
        except OSError as e:
            errors.append(f"Failed to repair {resource}: {e}")
    return repaired, errors


@retry(
    retry=retry_if_exception_type(OSError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def _copy_credentials(source: str, target: str) -> None:
    """Copy a credentials file, replacing the target atomically."""
    tmp = target + ".tmp"
    shutil.copyfile(source, tmp)
    os.chmod(tmp, 0o600)
    os.replace(tmp, target)


@dataclass
class SyncResult:
    success: bool
    error: str | None = None


def sync_credentials_from_base(config_dir: str, base_dir: str | None = None) -> SyncResult:
    """Copy the base profile's credentials into ``config_dir``.

    Used after a login in the base directory to propagate fresh tokens.
    """
    source = os.path.join(_base(base_dir), CREDENTIALS_FILE)
    config_dir = os.path.expanduser(config_dir)
    if not os.path.isfile(source):
        return SyncResult(False, f"No {CREDENTIALS_FILE} found in base directory")
    if not os.path.isdir(config_dir):
        return SyncResult(False, f"{config_dir} does not exist or is not a directory")
    try:
        _copy_credentials(source, credentials_path(config_dir))
    except OSError as e:
        logger.error("Failed to sync credentials into %s: %s", config_dir, e)
        return SyncResult(False, str(e))
    logger.info("Synced credentials from %s to %s", source, config_dir)
    return SyncResult(True)


def build_login_command(config_dir: str, claude_binary: str = "claude") -> str:
    """Shell command that logs in to the account living in ``config_dir``."""
    return f"{CREDENTIAL_DIR_VAR}={shlex.quote(config_dir)} {shlex.quote(claude_binary)} login"


def remove_account_directory(config_dir: str) -> None:
    """Delete an account directory. Shared symlink targets are left alone."""
    if not os.path.basename(os.path.normpath(config_dir)).startswith(ACCOUNT_DIR_PREFIX):
        raise AccountError(
            f"Refusing to remove {config_dir}: directory name must start with {ACCOUNT_DIR_PREFIX}"
        )
    shutil.rmtree(config_dir, ignore_errors=True)
    logger.info("Removed account directory: %s", config_dir)
