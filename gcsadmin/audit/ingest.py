"""Pull audit records from an endpoint and store them locally."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from gcsadmin.api.client import ApiClient, ClientOptions
from gcsadmin.api.models import AuditQueryParams
from gcsadmin.api.tls import TLSProfile
from gcsadmin.audit.store import AuditStore
from gcsadmin.auth.tokens import TokenStore, require_valid
from gcsadmin.config import DEFAULT_PROFILE, Env, audit_db_path, ensure_audit_dir

_LOG = logging.getLogger(__name__)

DEFAULT_LOAD_LIMIT = 1000

ClientFactory = Callable[[str, ClientOptions], ApiClient]


@dataclass(frozen=True, slots=True)
class LoadResult:
    loaded: int
    database: Path
    endpoint: str


def load_audit_logs(
    env: Env,
    endpoint: str,
    *,
    profile: str = DEFAULT_PROFILE,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    event_type: str | None = None,
    limit: int = DEFAULT_LOAD_LIMIT,
    tls_profile: TLSProfile | None = None,
    client_factory: ClientFactory = ApiClient,
    store: TokenStore | None = None,
) -> LoadResult:
    """Fetch every matching page from ``endpoint`` and upsert it into the local store.

    Nothing is written until all pages have arrived, so a remote failure
    leaves the database untouched.
    """
    token_store = store or TokenStore(env.config_root)
    bundle = require_valid(token_store.load(profile), profile=profile)

    params = AuditQueryParams(
        start_time=start_time,
        end_time=end_time,
        event_type=event_type or None,
        limit=limit,
    )
    options = ClientOptions(access_token=bundle.access_credential, tls_profile=tls_profile)
    with client_factory(endpoint, options) as client:
        records = list(client.iter_audit_logs(params))
    _LOG.info("fetched %d audit records from %s", len(records), endpoint)

    ensure_audit_dir(env.config_root)
    db_path = audit_db_path(env.config_root)
    with AuditStore(db_path) as audit_store:
        loaded = audit_store.ingest(records)
    return LoadResult(loaded=loaded, database=db_path, endpoint=endpoint)
