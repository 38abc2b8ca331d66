"""Transport-security policy for management API and identity provider connections.

The default profile enforces TLS 1.2 or newer, AEAD-only cipher suites
(ECDHE first, RSA-GCM as fallback), explicit curve preferences and
certificate verification.
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from pydantic import BaseModel, Field

from gcsadmin.errors import InsecureConfiguration, InvalidArgument

# IANA name -> OpenSSL name.
_OPENSSL_NAMES: dict[str, str] = {
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256": "ECDHE-RSA-AES128-GCM-SHA256",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384": "ECDHE-RSA-AES256-GCM-SHA384",
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256": "ECDHE-ECDSA-AES128-GCM-SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384": "ECDHE-ECDSA-AES256-GCM-SHA384",
    "TLS_RSA_WITH_AES_128_GCM_SHA256": "AES128-GCM-SHA256",
    "TLS_RSA_WITH_AES_256_GCM_SHA384": "AES256-GCM-SHA384",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-RSA-CHACHA20-POLY1305",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-ECDSA-CHACHA20-POLY1305",
    "TLS_RSA_WITH_RC4_128_SHA": "RC4-SHA",
    "TLS_RSA_WITH_3DES_EDE_CBC_SHA": "DES-CBC3-SHA",
    "TLS_RSA_WITH_AES_128_CBC_SHA": "AES128-SHA",
    "TLS_RSA_WITH_AES_256_CBC_SHA": "AES256-SHA",
    "TLS_RSA_WITH_AES_128_CBC_SHA256": "AES128-SHA256",
    "TLS_ECDHE_RSA_WITH_RC4_128_SHA": "ECDHE-RSA-RC4-SHA",
    "TLS_ECDHE_RSA_WITH_3DES_EDE_CBC_SHA": "ECDHE-RSA-DES-CBC3-SHA",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA": "ECDHE-RSA-AES128-SHA",
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA": "ECDHE-RSA-AES256-SHA",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256": "ECDHE-RSA-AES128-SHA256",
    "TLS_ECDHE_ECDSA_WITH_RC4_128_SHA": "ECDHE-ECDSA-RC4-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA": "ECDHE-ECDSA-AES128-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA": "ECDHE-ECDSA-AES256-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256": "ECDHE-ECDSA-AES128-SHA256",
}
_IANA_NAMES = {openssl: iana for iana, openssl in _OPENSSL_NAMES.items()}

SECURE_CIPHER_SUITES: tuple[str, ...] = (
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
    "TLS_RSA_WITH_AES_128_GCM_SHA256",
    "TLS_RSA_WITH_AES_256_GCM_SHA384",
)

WEAK_CIPHER_SUITES: frozenset[str] = frozenset(
    {
        "TLS_RSA_WITH_RC4_128_SHA",
        "TLS_RSA_WITH_3DES_EDE_CBC_SHA",
        "TLS_RSA_WITH_AES_128_CBC_SHA",
        "TLS_RSA_WITH_AES_256_CBC_SHA",
        "TLS_RSA_WITH_AES_128_CBC_SHA256",
        "TLS_ECDHE_RSA_WITH_RC4_128_SHA",
        "TLS_ECDHE_RSA_WITH_3DES_EDE_CBC_SHA",
        "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA",
        "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA",
        "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256",
        "TLS_ECDHE_ECDSA_WITH_RC4_128_SHA",
        "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA",
        "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA",
        "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256",
    }
)

SECURE_CURVES: tuple[str, ...] = ("X25519", "P-256", "P-384")
ACCEPTED_CURVES: frozenset[str] = frozenset({"X25519", "X448", "P-256", "P-384", "P-521"})

_MIN_ALLOWED_VERSION = ssl.TLSVersion.TLSv1_2

_VERSION_NAMES: dict[int, str] = {
    ssl.TLSVersion.SSLv3.value: "SSL 3.0",
    ssl.TLSVersion.TLSv1.value: "TLS 1.0",
    ssl.TLSVersion.TLSv1_1.value: "TLS 1.1",
    ssl.TLSVersion.TLSv1_2.value: "TLS 1.2",
    ssl.TLSVersion.TLSv1_3.value: "TLS 1.3",
}


class TLSProfile(BaseModel):
    """Declarative TLS client configuration."""

    min_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    cipher_suites: list[str] = Field(default_factory=lambda: list(SECURE_CIPHER_SUITES))
    curve_preferences: list[str] = Field(default_factory=lambda: list(SECURE_CURVES))
    prefer_server_ciphers: bool = True
    server_name: str | None = None
    root_cas: list[str] = Field(default_factory=list)
    verify: bool = True


@dataclass(slots=True)
class TLSOptions:
    """Recognized adjustments applied on top of the secure default profile."""

    min_version: ssl.TLSVersion | None = None
    insecure_skip_verify: bool = False
    root_cas: list[str] | None = None
    server_name: str | None = None


def secure_tls_profile() -> TLSProfile:
    """Return a fresh hardened TLS profile."""
    return TLSProfile()


def apply_options(profile: TLSProfile, options: TLSOptions) -> TLSProfile:
    """Mutate ``profile`` in place with each option that is set."""
    if options.min_version is not None:
        if options.min_version not in (ssl.TLSVersion.TLSv1_2, ssl.TLSVersion.TLSv1_3):
            raise InsecureConfiguration(
                f"minimum TLS version must be TLS 1.2 or TLS 1.3 "
                f"(got {tls_version_name(options.min_version)})"
            )
        profile.min_version = options.min_version
    if options.insecure_skip_verify:
        profile.verify = False
    if options.root_cas is not None:
        profile.root_cas = list(options.root_cas)
    if options.server_name is not None:
        profile.server_name = options.server_name
    return profile


def custom_tls_profile(options: TLSOptions) -> TLSProfile:
    """Start from the secure defaults and apply ``options``."""
    return apply_options(secure_tls_profile(), options)


def validate(profile: TLSProfile | None, allow_insecure: bool = False) -> None:
    """Raise :class:`InsecureConfiguration` when ``profile`` violates the policy."""
    if profile is None:
        raise InsecureConfiguration("TLS profile is missing")

    if profile.min_version < _MIN_ALLOWED_VERSION:
        raise InsecureConfiguration(
            f"TLS version below 1.2 is not allowed (found: {tls_version_name(profile.min_version)})"
        )

    if not profile.verify and not allow_insecure:
        raise InsecureConfiguration("certificate verification is disabled")

    for cipher in profile.cipher_suites:
        iana_name = _IANA_NAMES.get(cipher, cipher)
        if iana_name in WEAK_CIPHER_SUITES or _looks_weak(iana_name):
            raise InsecureConfiguration(f"weak cipher suite detected: {iana_name}")

    if not profile.curve_preferences:
        raise InsecureConfiguration("no key exchange curves are configured")
    for curve in profile.curve_preferences:
        if curve not in ACCEPTED_CURVES:
            raise InsecureConfiguration(f"weak or unknown key exchange curve: {curve}")


def _looks_weak(name: str) -> bool:
    upper = name.upper()
    return "RC4" in upper or "3DES" in upper or "DES_CBC3" in upper or "_CBC_" in upper


def build_ssl_context(profile: TLSProfile) -> ssl.SSLContext:
    """Materialize ``profile`` into an :class:`ssl.SSLContext`."""
    openssl_names: list[str] = []
    for cipher in profile.cipher_suites:
        name = _OPENSSL_NAMES.get(cipher) or (cipher if cipher in _IANA_NAMES else None)
        if name is None:
            raise InvalidArgument(f"unknown cipher suite: {cipher}")
        openssl_names.append(name)

    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    context.minimum_version = profile.min_version
    if openssl_names:
        # TLS 1.3 suites are not affected by set_ciphers and stay on OpenSSL defaults.
        try:
            context.set_ciphers(":".join(openssl_names))
        except ssl.SSLError as exc:
            raise InsecureConfiguration(
                f"no configured cipher suite is supported by the TLS library: {exc}"
            ) from exc
    if profile.prefer_server_ciphers:
        context.options |= ssl.OP_CIPHER_SERVER_PREFERENCE

    if profile.root_cas:
        context.load_verify_locations(cadata="\n".join(profile.root_cas))

    if not profile.verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def load_root_cas(path: Path) -> list[str]:
    """Load PEM certificates from ``path`` for use as ``root_cas``."""
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise InvalidArgument(f"unable to read CA bundle {path}: {exc}") from exc

    try:
        certificates = x509.load_pem_x509_certificates(raw)
    except ValueError as exc:
        raise InvalidArgument(f"unable to parse CA bundle {path}: {exc}") from exc
    if not certificates:
        raise InvalidArgument(f"CA bundle {path} contains no certificates")
    return [cert.public_bytes(Encoding.PEM).decode("ascii") for cert in certificates]


def tls_version_name(version: ssl.TLSVersion | int) -> str:
    value = int(version)
    return _VERSION_NAMES.get(value, f"Unknown (0x{value & 0xFFFF:04x})")


def cipher_suite_name(cipher: str) -> str:
    """Return the IANA name for an IANA or OpenSSL cipher suite identifier."""
    if cipher in _OPENSSL_NAMES:
        return cipher
    return _IANA_NAMES.get(cipher, f"Unknown ({cipher})")


def openssl_cipher_name(cipher: str) -> str | None:
    return _OPENSSL_NAMES.get(cipher)
