"""Configuration root, per-profile paths and the process environment record.

Layout under the configuration root (default ``~/.globus-connect-server``)::

    <config_root>/            0700
    ├── config.yaml           optional client settings
    ├── tokens/               0700
    │   └── <profile>.json    0600
    └── audit/                0700
        └── audit.db
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from gcsadmin.errors import InvalidArgument, LocalStoreError

_LOG = logging.getLogger(__name__)

CONFIG_DIR_ENV = "GLOBUS_CONNECT_SERVER_CONFIG_DIR"
CLIENT_ID_ENV = "GLOBUS_CLIENT_ID"
CLIENT_SECRET_ENV = "GLOBUS_CLIENT_SECRET"
AUTH_URL_ENV = "GLOBUS_AUTH_URL"

DEFAULT_CONFIG_DIR_NAME = ".globus-connect-server"
DEFAULT_CLIENT_ID = "e6c75d97-532a-4c88-b031-f5a3014430e3"
DEFAULT_AUTH_URL = "https://auth.globus.org"
DEFAULT_PROFILE = "default"
CONFIG_FILE_NAME = "config.yaml"

_DIR_MODE = 0o700


@dataclass(frozen=True, slots=True)
class Env:
    """Process-wide settings resolved once at start-up."""

    config_root: Path
    client_id: str = DEFAULT_CLIENT_ID
    client_secret: str | None = None
    auth_url: str = DEFAULT_AUTH_URL

    @property
    def is_public_client(self) -> bool:
        return not self.client_secret


def config_root(environ: Mapping[str, str] | None = None) -> Path:
    """Return the configuration root, honoring the override variable verbatim."""
    source = os.environ if environ is None else environ
    override = source.get(CONFIG_DIR_ENV)
    if override:
        return Path(override)
    try:
        home = Path.home()
    except RuntimeError as exc:
        raise LocalStoreError(f"unable to determine home directory: {exc}") from exc
    return home / DEFAULT_CONFIG_DIR_NAME


def tokens_dir(root: Path) -> Path:
    return root / "tokens"


def audit_dir(root: Path) -> Path:
    return root / "audit"


def audit_db_path(root: Path) -> Path:
    return audit_dir(root) / "audit.db"


def validate_profile_name(profile: str) -> str:
    """Reject profile names that are not safe to use as a file name."""
    if not profile:
        raise InvalidArgument("profile name cannot be empty")
    if "/" in profile or "\\" in profile or os.sep in profile:
        raise InvalidArgument(f"unsafe profile name {profile!r}: path separators are not allowed")
    if ".." in profile:
        raise InvalidArgument(f"unsafe profile name {profile!r}: '..' is not allowed")
    if profile.startswith("."):
        raise InvalidArgument(f"unsafe profile name {profile!r}: leading '.' is not allowed")
    if "\x00" in profile:
        raise InvalidArgument("unsafe profile name: NUL byte is not allowed")
    return profile


def token_path(profile: str, root: Path) -> Path:
    return tokens_dir(root) / f"{validate_profile_name(profile)}.json"


def ensure_dir(path: Path) -> Path:
    """Create ``path`` (and parents) with owner-only permissions if missing.

    Existing directories keep their current mode.
    """
    if path.is_dir():
        return path
    try:
        if not path.parent.exists():
            ensure_dir(path.parent)
        path.mkdir(mode=_DIR_MODE, exist_ok=True)
        # mkdir honours the umask; make sure no group/world bits slipped through.
        os.chmod(path, _DIR_MODE)
    except OSError as exc:
        raise LocalStoreError(f"unable to create directory {path}: {exc}") from exc
    _LOG.debug("created directory %s", path)
    return path


def ensure_config_dir(root: Path) -> Path:
    return ensure_dir(root)


def ensure_tokens_dir(root: Path) -> Path:
    ensure_config_dir(root)
    return ensure_dir(tokens_dir(root))


def ensure_audit_dir(root: Path) -> Path:
    ensure_config_dir(root)
    return ensure_dir(audit_dir(root))


def load_config_file(root: Path) -> dict[str, str]:
    """Read optional ``config.yaml`` client settings from the configuration root."""
    path = root / CONFIG_FILE_NAME
    try:
        raw_text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise LocalStoreError(f"unable to read config file {path}: {exc}") from exc

    try:
        payload = yaml.safe_load(raw_text)
    except yaml.YAMLError as exc:
        raise InvalidArgument(f"unable to parse config file {path}: {exc}") from exc

    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidArgument(f"config file must be a YAML mapping: {path}")

    settings: dict[str, str] = {}
    for key in ("client_id", "client_secret", "auth_url"):
        value = payload.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise InvalidArgument(f"config key '{key}' must be a string: {path}")
        settings[key] = value
    return settings


def load_env(environ: Mapping[str, str] | None = None) -> Env:
    """Resolve the process environment record.

    Precedence: environment variables, then ``config.yaml``, then defaults.
    """
    source = os.environ if environ is None else environ
    root = config_root(source)
    file_settings = load_config_file(root)

    client_id = source.get(CLIENT_ID_ENV) or file_settings.get("client_id") or DEFAULT_CLIENT_ID
    client_secret = source.get(CLIENT_SECRET_ENV) or file_settings.get("client_secret") or None
    auth_url = source.get(AUTH_URL_ENV) or file_settings.get("auth_url") or DEFAULT_AUTH_URL

    env = Env(
        config_root=root,
        client_id=client_id,
        client_secret=client_secret,
        auth_url=auth_url.rstrip("/"),
    )
    _LOG.debug(
        "resolved config root %s (public client: %s)", env.config_root, env.is_public_client
    )
    return env
