"""Short-lived loopback listener that receives the OAuth2 authorization code."""

from __future__ import annotations

import logging
import queue
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

from gcsadmin.errors import AuthorizationFailed, GcsAdminError, Timeout, TransportError

_LOG = logging.getLogger(__name__)

CALLBACK_HOST = "127.0.0.1"
CALLBACK_PORT = 8080
CALLBACK_PATH = "/callback"
CALLBACK_TIMEOUT_SECONDS = 300.0
SHUTDOWN_DRAIN_SECONDS = 5.0

_SUCCESS_PAGE = b"""<html>
<head><title>Authentication Successful</title></head>
<body>
<h1>Authentication Successful</h1>
<p>You have successfully authenticated with Globus.</p>
<p>You may close this window and return to the command line.</p>
</body>
</html>
"""


class _LoopbackHTTPServer(HTTPServer):
    def __init__(
        self, address: tuple[str, int], *, expected_state: str, callback_path: str
    ) -> None:
        super().__init__(address, _CallbackHandler)
        self.expected_state = expected_state
        self.callback_path = callback_path
        self.code_slot: queue.Queue[str] = queue.Queue(maxsize=1)
        self.error_slot: queue.Queue[GcsAdminError] = queue.Queue(maxsize=1)
        self.delivered = threading.Event()

    def deliver_code(self, code: str) -> None:
        self._deliver(self.code_slot, code)

    def deliver_error(self, error: GcsAdminError) -> None:
        self._deliver(self.error_slot, error)

    def _deliver(self, slot: queue.Queue, item: object) -> None:
        # The first outcome, code or error, is final.
        if self.delivered.is_set():
            _LOG.debug("callback outcome already delivered; ignoring later callback")
            return
        slot.put_nowait(item)
        self.delivered.set()


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _LoopbackHTTPServer
    server_version = "gcsadmin-callback/1.0"
    timeout = 10

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self._respond(404, b"Not found\n", "text/plain")
            return

        query = parse_qs(parsed.query)
        state = query.get("state", [""])[0]
        code = query.get("code", [""])[0]
        provider_error = query.get("error", [""])[0]

        if provider_error:
            self._respond(400, b"Authorization failed\n", "text/plain")
            self.server.deliver_error(
                AuthorizationFailed(f"identity provider returned error: {provider_error}")
            )
            return

        if state != self.server.expected_state:
            self._respond(400, b"Invalid state parameter\n", "text/plain")
            self.server.deliver_error(
                AuthorizationFailed(
                    "invalid state parameter in authorization callback (possible CSRF attempt)"
                )
            )
            return

        if not code:
            self._respond(400, b"No code in response\n", "text/plain")
            self.server.deliver_error(
                AuthorizationFailed("authorization callback did not include a code")
            )
            return

        self._respond(200, _SUCCESS_PAGE, "text/html; charset=utf-8")
        self.server.deliver_code(code)

    def _respond(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        # The request line carries the authorization code; only the status is logged.
        _LOG.debug("callback request handled (%s)", args[1] if len(args) > 1 else "-")


class CallbackServer:
    """Loopback listener bound for a single login attempt.

    The handler communicates with the waiting login routine only through two
    single-slot queues, one for the code and one for the error.
    """

    def __init__(
        self,
        expected_state: str,
        *,
        host: str = CALLBACK_HOST,
        port: int = CALLBACK_PORT,
        path: str = CALLBACK_PATH,
    ) -> None:
        self._expected_state = expected_state
        self._host = host
        self._port = port
        self._path = path
        self._server: _LoopbackHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        if self._server is None:
            return self._port
        return int(self._server.server_address[1])

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{self._path}"

    def start(self) -> CallbackServer:
        try:
            self._server = _LoopbackHTTPServer(
                (self._host, self._port),
                expected_state=self._expected_state,
                callback_path=self._path,
            )
        except OSError as exc:
            raise TransportError(
                f"unable to start callback listener on {self._host}:{self._port}: {exc}"
            ) from exc
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="gcsadmin-callback",
            daemon=True,
        )
        self._thread.start()
        _LOG.debug("callback listener started on %s:%s", self._host, self.port)
        return self

    def wait(self, timeout: float = CALLBACK_TIMEOUT_SECONDS) -> str:
        """Block until the callback delivers a code or an error, or ``timeout`` expires."""
        if self._server is None:
            raise RuntimeError("callback listener is not running")
        if not self._server.delivered.wait(timeout):
            raise Timeout(f"authentication timeout (waited {timeout:g} seconds)")
        try:
            raise self._server.error_slot.get_nowait()
        except queue.Empty:
            pass
        return self._server.code_slot.get_nowait()

    def shutdown(self, drain: float = SHUTDOWN_DRAIN_SECONDS) -> None:
        """Stop the listener, waiting at most ``drain`` seconds for in-flight requests."""
        server, thread = self._server, self._thread
        if server is None:
            return
        stopper = threading.Thread(target=server.shutdown, daemon=True)
        stopper.start()
        stopper.join(drain)
        server.server_close()
        if thread is not None:
            thread.join(drain)
            if thread.is_alive():
                _LOG.warning("callback listener did not stop within %g seconds", drain)
        self._server = None
        self._thread = None
        _LOG.debug("callback listener stopped")

    def __enter__(self) -> CallbackServer:
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
