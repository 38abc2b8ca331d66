"""OAuth2 Authorization Code login, logout and identity lookup.

A login attempt moves through ``Start -> Authorize-URL-issued ->
(Awaiting-Callback | Awaiting-Paste) -> Code-Obtained -> Token-Exchanged ->
Saved``. Any failure ends the attempt with a single error and nothing is
written to the token store.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gcsadmin.api.client import (
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    ModelT,
    build_http_client,
    deadline_after,
    decode_response,
    raise_for_remote_error,
    remaining_seconds,
    translate_transport_errors,
)
from gcsadmin.api.tls import TLSProfile, secure_tls_profile, validate
from gcsadmin.auth.callback import (
    CALLBACK_PATH,
    CALLBACK_PORT,
    CALLBACK_TIMEOUT_SECONDS,
    CallbackServer,
)
from gcsadmin.auth.tokens import TokenBundle, TokenStore, require_valid
from gcsadmin.config import DEFAULT_PROFILE, Env, validate_profile_name
from gcsadmin.errors import Cancelled, InvalidArgument, TokenExpired
from gcsadmin.timefmt import ensure_aware

_LOG = logging.getLogger(__name__)

STATE_PREFIX = "gcs-cli"
DEFAULT_SCOPES = (
    "openid profile email "
    "urn:globus:auth:scope:auth.globus.org:view_identities "
    "urn:globus:auth:scope:transfer.api.globus.org:all"
)

AUTHORIZE_PATH = "/v2/oauth2/authorize"
TOKEN_PATH = "/v2/oauth2/token"
INTROSPECT_PATH = "/v2/oauth2/token/introspect"


def generate_state() -> str:
    """Return a fresh anti-CSRF state nonce carrying the fixed prefix."""
    return f"{STATE_PREFIX}-{secrets.token_urlsafe(24)}"


def generate_pkce_pair() -> tuple[str, str]:
    """Return ``(verifier, challenge)`` using the S256 method."""
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class _TokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_in: int = Field(default=0, ge=0)
    scope: str = ""
    resource_server: str = ""


class IntrospectionResult(BaseModel):
    """Identity fields reported by the token introspection endpoint."""

    model_config = ConfigDict(extra="ignore")

    active: bool = False
    username: str = ""
    email: str = ""
    name: str = ""
    sub: str = ""
    exp: int | None = None

    @field_validator("username", "email", "name", "sub", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value


class IdentityProviderClient:
    """Thin client for the identity provider's OAuth2 endpoints."""

    def __init__(
        self,
        env: Env,
        *,
        tls_profile: TLSProfile | None = None,
        http_client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._env = env
        self._base_url = env.auth_url.rstrip("/")
        self._timeout = timeout
        profile = tls_profile or secure_tls_profile()
        validate(profile)
        if http_client is not None:
            self._http = http_client
            self._owns_http = False
        else:
            self._http = build_http_client(profile, timeout=timeout)
            self._owns_http = True

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> IdentityProviderClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def authorize_url(
        self, state: str, scopes: list[str], redirect_uri: str, code_challenge: str
    ) -> str:
        params = {
            "client_id": self._env.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "response_type": "code",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
        }
        return str(httpx.URL(self._base_url + AUTHORIZE_PATH, params=params))

    def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        *,
        now: datetime | None = None,
    ) -> TokenBundle:
        """Trade an authorization code for a token bundle with an absolute expiry."""
        token = self._post_form(
            TOKEN_PATH,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            _TokenResponse,
        )
        issued_at = ensure_aware(now) if now is not None else datetime.now(UTC)
        return TokenBundle(
            access_credential=token.access_token,
            refresh_credential=token.refresh_token,
            expires_at=issued_at + timedelta(seconds=token.expires_in),
            scopes=token.scope.split(),
            resource_server=token.resource_server,
        )

    def introspect(self, access_token: str) -> IntrospectionResult:
        return self._post_form(INTROSPECT_PATH, {"token": access_token}, IntrospectionResult)

    def _post_form(self, path: str, form: dict[str, str], model: type[ModelT]) -> ModelT:
        deadline = deadline_after(self._timeout)
        url = self._base_url + path
        data = dict(form)
        auth: httpx.BasicAuth | None = None
        if self._env.is_public_client:
            data["client_id"] = self._env.client_id
        else:
            auth = httpx.BasicAuth(self._env.client_id, self._env.client_secret or "")

        request = self._http.build_request(
            "POST",
            url,
            data=data,
            headers={"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"},
            timeout=httpx.Timeout(remaining_seconds(deadline, url)),
        )
        _LOG.debug("POST %s", url)
        with translate_transport_errors(url):
            response = self._http.send(request, auth=auth, stream=True)
        raise_for_remote_error(response, deadline=deadline)
        return decode_response(response, model, deadline=deadline)


@dataclass(frozen=True, slots=True)
class LoginResult:
    profile: str
    expires_at: datetime
    token_path: Path
    scopes: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class WhoamiInfo:
    username: str
    email: str
    name: str
    sub: str
    profile: str
    expires_at: datetime
    scopes: list[str] = field(default_factory=list)
    resource_server: str = ""


def login(
    env: Env,
    profile: str = DEFAULT_PROFILE,
    scopes: str = DEFAULT_SCOPES,
    *,
    no_local_server: bool = False,
    idp: IdentityProviderClient | None = None,
    store: TokenStore | None = None,
    port: int = CALLBACK_PORT,
    announce: Callable[[str], None] = print,
    read_line: Callable[[str], str] = input,
    callback_timeout: float = CALLBACK_TIMEOUT_SECONDS,
    now: datetime | None = None,
) -> LoginResult:
    """Run one interactive authorization and persist the resulting bundle."""
    validate_profile_name(profile)
    scope_list = scopes.split()
    if not scope_list:
        raise InvalidArgument("at least one scope is required")

    token_store = store or TokenStore(env.config_root)
    provider = idp or IdentityProviderClient(env)
    try:
        state = generate_state()
        verifier, challenge = generate_pkce_pair()
        try:
            if no_local_server:
                redirect_uri = f"http://localhost:{port}{CALLBACK_PATH}"
                _announce_url(
                    announce, provider.authorize_url(state, scope_list, redirect_uri, challenge)
                )
                code = _read_pasted_code(read_line)
            else:
                # Bind first so the redirect URI carries the port actually in use.
                with CallbackServer(state, port=port) as server:
                    redirect_uri = server.redirect_uri
                    _announce_url(
                        announce, provider.authorize_url(state, scope_list, redirect_uri, challenge)
                    )
                    announce(f"Waiting for authentication on {redirect_uri}")
                    announce("")
                    code = server.wait(callback_timeout)
        except KeyboardInterrupt as exc:
            raise Cancelled("login cancelled by operator") from exc

        announce("Exchanging authorization code for tokens...")
        bundle = provider.exchange_code(code, redirect_uri, verifier, now=now)
        path = token_store.save(profile, bundle)
    finally:
        if idp is None:
            provider.close()

    _LOG.info("stored token bundle for profile %s", profile)
    return LoginResult(
        profile=profile, expires_at=bundle.expires_at, token_path=path, scopes=bundle.scopes
    )


def _announce_url(announce: Callable[[str], None], url: str) -> None:
    announce("Please authenticate by visiting this URL:")
    announce("")
    announce(url)
    announce("")


def _read_pasted_code(read_line: Callable[[str], str]) -> str:
    try:
        code = read_line("Enter authorization code: ").strip()
    except EOFError as exc:
        raise InvalidArgument("no authorization code entered") from exc
    if not code:
        raise InvalidArgument("no authorization code entered")
    return code


def logout(env: Env, profile: str = DEFAULT_PROFILE, *, store: TokenStore | None = None) -> None:
    """Remove the stored bundle for ``profile``."""
    token_store = store or TokenStore(env.config_root)
    token_store.load(profile)
    token_store.delete(profile)
    _LOG.info("removed token bundle for profile %s", profile)


def whoami(
    env: Env,
    profile: str = DEFAULT_PROFILE,
    *,
    idp: IdentityProviderClient | None = None,
    store: TokenStore | None = None,
    now: datetime | None = None,
) -> WhoamiInfo:
    """Describe the identity behind ``profile``'s access credential.

    An expired bundle fails before any network call is made.
    """
    token_store = store or TokenStore(env.config_root)
    bundle = require_valid(token_store.load(profile), profile=profile, now=now)

    provider = idp or IdentityProviderClient(env)
    try:
        result = provider.introspect(bundle.access_credential)
    finally:
        if idp is None:
            provider.close()

    if not result.active:
        raise TokenExpired(
            f"token for profile '{profile}' is not active; run 'gcsadmin login' again"
        )

    return WhoamiInfo(
        username=result.username,
        email=result.email,
        name=result.name,
        sub=result.sub,
        profile=profile,
        expires_at=bundle.expires_at,
        scopes=list(bundle.scopes),
        resource_server=bundle.resource_server,
    )
