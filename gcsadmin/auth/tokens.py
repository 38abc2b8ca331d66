"""Per-profile OAuth2 token bundles persisted under the configuration root.

Token files live at ``<config_root>/tokens/<profile>.json`` with mode 0600.
Only absolute expiry instants are serialized, so a clock change can never
silently extend a bundle's validity.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from gcsadmin.config import ensure_tokens_dir, token_path, tokens_dir
from gcsadmin.errors import LocalStoreError, NotAuthenticated, TokenExpired
from gcsadmin.timefmt import ensure_aware, format_rfc3339

_LOG = logging.getLogger(__name__)

_FILE_MODE = 0o600


class TokenBundle(BaseModel):
    """Stored credentials for one profile."""

    access_credential: str = Field(repr=False)
    refresh_credential: str | None = Field(default=None, repr=False)
    expires_at: datetime
    scopes: list[str] = Field(default_factory=list)
    resource_server: str = ""

    @field_validator("expires_at")
    @classmethod
    def _absolute_expiry(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @field_validator("scopes")
    @classmethod
    def _collapse_scopes(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        collapsed: list[str] = []
        for scope in value:
            if scope in seen:
                continue
            seen.add(scope)
            collapsed.append(scope)
        return collapsed

    def to_file_payload(self) -> dict[str, object]:
        payload = self.model_dump(mode="json")
        payload["expires_at"] = format_rfc3339(self.expires_at)
        if self.refresh_credential is None:
            payload.pop("refresh_credential")
        return payload


def is_valid(bundle: TokenBundle | None, *, now: datetime | None = None) -> bool:
    """Return True when the bundle has an access credential and has not expired."""
    if bundle is None or not bundle.access_credential:
        return False
    current = ensure_aware(now) if now is not None else datetime.now(UTC)
    return bundle.expires_at > current


def require_valid(
    bundle: TokenBundle, *, profile: str | None = None, now: datetime | None = None
) -> TokenBundle:
    """Return ``bundle`` unchanged or raise :class:`TokenExpired`."""
    if is_valid(bundle, now=now):
        return bundle
    label = f" for profile '{profile}'" if profile else ""
    raise TokenExpired(
        f"token{label} expired at {format_rfc3339(bundle.expires_at)}; run 'gcsadmin login' again"
    )


class TokenStore:
    """File-backed token storage, one JSON document per profile."""

    def __init__(self, config_root: Path) -> None:
        self._root = config_root

    @property
    def directory(self) -> Path:
        return tokens_dir(self._root)

    def path_for(self, profile: str) -> Path:
        return token_path(profile, self._root)

    def exists(self, profile: str) -> bool:
        return self.path_for(profile).is_file()

    def save(self, profile: str, bundle: TokenBundle) -> Path:
        """Atomically write ``bundle`` for ``profile`` with owner-only permissions."""
        target = self.path_for(profile)
        directory = ensure_tokens_dir(self._root)
        data = json.dumps(bundle.to_file_payload(), indent=2) + "\n"

        fd, tmp_name = tempfile.mkstemp(prefix=f".{profile}.", suffix=".tmp", dir=directory)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, _FILE_MODE)
            os.replace(tmp_path, target)
            os.chmod(target, _FILE_MODE)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise LocalStoreError(f"unable to write token file {target}: {exc}") from exc

        _LOG.debug("saved token bundle for profile %s", profile)
        return target

    def load(self, profile: str) -> TokenBundle:
        """Read the bundle for ``profile``; a missing file means not logged in."""
        path = self.path_for(profile)
        try:
            raw_text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotAuthenticated(
                f"not logged in (no token found for profile '{profile}'); run 'gcsadmin login'"
            ) from exc
        except OSError as exc:
            raise LocalStoreError(f"unable to read token file {path}: {exc}") from exc

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise LocalStoreError(f"token file {path} is not valid JSON: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise LocalStoreError(f"token file {path} must contain a JSON object")

        try:
            return TokenBundle.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]}))
            raise LocalStoreError(f"token file {path} is malformed (fields: {fields})") from exc

    def delete(self, profile: str) -> None:
        path = self.path_for(profile)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotAuthenticated(f"no active session for profile '{profile}'") from exc
        except OSError as exc:
            raise LocalStoreError(f"unable to delete token file {path}: {exc}") from exc
        _LOG.debug("deleted token bundle for profile %s", profile)

    def list_profiles(self) -> list[str]:
        directory = self.directory
        if not directory.is_dir():
            return []
        return sorted(
            item.stem
            for item in directory.glob("*.json")
            if item.is_file() and not item.name.startswith(".")
        )
