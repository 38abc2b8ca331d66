"""Error taxonomy shared by every gcsadmin command.

Each error kind maps to exactly one process exit code. Messages never carry
credential material.
"""

from __future__ import annotations


class GcsAdminError(Exception):
    """Base class for all operational errors raised by gcsadmin."""

    exit_code = 1


class InvalidArgument(GcsAdminError, ValueError):
    """Malformed flag value or unsafe profile name."""

    exit_code = 2


class NotAuthenticated(GcsAdminError):
    """No token bundle exists for the requested profile."""

    exit_code = 3


class TokenExpired(GcsAdminError):
    """Token bundle exists but is expired or was reported inactive."""

    exit_code = 4


class InsecureConfiguration(GcsAdminError):
    """TLS profile rejected by the transport-security validator."""

    exit_code = 5


class TransportError(GcsAdminError):
    """Network or TLS failure before an HTTP response was received."""

    exit_code = 6


class RemoteError(GcsAdminError):
    """HTTP status >= 400 from the identity provider or the management API."""

    exit_code = 7

    def __init__(self, status_code: int, body: str, *, url: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        location = f" from {url}" if url else ""
        detail = body.strip() or "<empty body>"
        super().__init__(f"HTTP {status_code}{location}: {detail}")


class ProtocolError(GcsAdminError):
    """Response body could not be decoded into the expected shape."""

    exit_code = 8


class LocalStoreError(GcsAdminError):
    """Token file or audit database I/O or schema failure."""

    exit_code = 9


class IngestionFailed(GcsAdminError):
    """An audit ingestion row failed; the whole run was rolled back."""

    exit_code = 10


class Timeout(GcsAdminError):
    """A deadline expired at a specific stage."""

    exit_code = 11


class AuthorizationFailed(GcsAdminError):
    """The loopback callback rejected the authorization response."""

    exit_code = 12


class Cancelled(GcsAdminError):
    """The operator cancelled the command."""

    exit_code = 130
