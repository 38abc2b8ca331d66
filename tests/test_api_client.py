from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest
from gcsadmin.api.client import (
    MAX_CONNECTIONS,
    MAX_KEEPALIVE_CONNECTIONS,
    ApiClient,
    ClientOptions,
    build_http_client,
    deadline_after,
    decode_response,
)
from gcsadmin.api.models import AuditQueryParams, AuditRecord
from gcsadmin.api.tls import TLSOptions, custom_tls_profile, secure_tls_profile
from gcsadmin.errors import (
    InsecureConfiguration,
    InvalidArgument,
    ProtocolError,
    RemoteError,
    Timeout,
    TransportError,
)
from pydantic import BaseModel


class _Widget(BaseModel):
    name: str
    enabled: bool | None = None
    note: str | None = None


def _client(handler, **options) -> ApiClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return ApiClient("gcs.example.org", ClientOptions(http_client=http_client, **options))


def _record(record_id: str, day: int = 1) -> dict[str, object]:
    return {
        "id": record_id,
        "timestamp": f"2025-01-{day:02d}T00:00:00Z",
        "event_type": "transfer",
        "result": "success",
    }


def test_empty_hostname_is_rejected() -> None:
    with pytest.raises(InvalidArgument):
        ApiClient("")
    with pytest.raises(InvalidArgument):
        ApiClient("   ")


def test_base_url_is_exact() -> None:
    with ApiClient("host") as client:
        assert client.base_url == "https://host/api/"


def test_insecure_profile_is_rejected_unless_allowed() -> None:
    profile = custom_tls_profile(TLSOptions(insecure_skip_verify=True))
    http_client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

    with pytest.raises(InsecureConfiguration):
        ApiClient("host", ClientOptions(tls_profile=profile, http_client=http_client))

    client = ApiClient(
        "host", ClientOptions(tls_profile=profile, http_client=http_client, allow_insecure=True)
    )
    assert not client.tls_profile.verify


def test_get_sends_bearer_and_user_agent() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"name": "w1"})

    client = _client(handler, access_token="tok-123")
    widget = client.get_json("widgets/w1", _Widget)

    assert widget.name == "w1"
    request = seen[0]
    assert str(request.url) == "https://gcs.example.org/api/widgets/w1"
    assert request.headers["Authorization"] == "Bearer tok-123"
    assert request.headers["User-Agent"].startswith("gcsadmin/")
    assert "Content-Type" not in request.headers


def test_post_omits_unset_optional_fields() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"name": "w1", "enabled": False})

    client = _client(handler)
    created = client.post_json("widgets", _Widget(name="w1", enabled=False), _Widget)

    assert created.enabled is False
    assert seen[0].headers["Content-Type"] == "application/json"
    assert json.loads(seen[0].content) == {"name": "w1", "enabled": False}
    assert "Authorization" not in seen[0].headers


def test_delete_drains_response() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(204)

    _client(handler).delete("widgets/w1")

    assert methods == ["DELETE"]


def test_request_then_decode_plain_json() -> None:
    client = _client(lambda request: httpx.Response(200, json=[{"name": "w1"}]))

    response = client.request("GET", "/widgets", params={"page": "1"})

    assert str(response.request.url) == "https://gcs.example.org/api/widgets?page=1"
    assert client.decode(response) == [{"name": "w1"}]
    assert response.is_closed


def test_unauthorized_is_remote_error_with_body() -> None:
    client = _client(lambda request: httpx.Response(401, text='{"code": "unauthorized"}'))

    with pytest.raises(RemoteError) as excinfo:
        client.get_json("widgets", _Widget)

    assert excinfo.value.status_code == 401
    assert "unauthorized" in excinfo.value.body
    assert excinfo.value.exit_code == 7


def test_undecodable_body_is_protocol_error() -> None:
    client = _client(lambda request: httpx.Response(200, text="<html>not json</html>"))

    with pytest.raises(ProtocolError):
        client.get_json("widgets", _Widget)


def test_unexpected_shape_is_protocol_error() -> None:
    client = _client(lambda request: httpx.Response(200, json={"unexpected": True}))

    with pytest.raises(ProtocolError, match="_Widget"):
        client.get_json("widgets", _Widget)


def test_connect_failure_is_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        _client(handler).get_json("widgets", _Widget)


def test_read_timeout_is_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(Timeout):
        _client(handler).get_json("widgets", _Widget)


class _TrickleStream(httpx.SyncByteStream):
    def __init__(self, chunks: list[bytes], delay: float) -> None:
        self._chunks = chunks
        self._delay = delay

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._chunks:
            time.sleep(self._delay)
            yield chunk


def test_trickled_body_exceeding_total_timeout_is_timeout() -> None:
    body = json.dumps({"name": "w1"}).encode()
    chunks = [body[index : index + 2] for index in range(0, len(body), 2)]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=_TrickleStream(chunks, 0.1))

    started = time.monotonic()
    with pytest.raises(Timeout, match="total timeout"):
        _client(handler, timeout=0.3).get_json("widgets/w1", _Widget)

    assert time.monotonic() - started < 1.0


def test_trickled_body_within_total_timeout_decodes() -> None:
    body = json.dumps({"name": "w1"}).encode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=_TrickleStream([body[:5], body[5:]], 0.01))

    assert _client(handler, timeout=5.0).get_json("widgets/w1", _Widget).name == "w1"


def test_request_timeout_never_exceeds_client_timeout() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    _client(handler, timeout=2.0).delete("widgets/w1")

    timeouts = seen[0].extensions["timeout"]
    assert 0 < timeouts["read"] <= 2.0
    assert 0 < timeouts["connect"] <= 2.0


class _TrickleHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", "6")
        self.end_headers()
        try:
            for byte in b'"slow"':
                self.wfile.write(bytes([byte]))
                self.wfile.flush()
                time.sleep(0.3)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format: str, *args: object) -> None:
        pass


def test_loopback_trickle_hits_total_deadline() -> None:
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TrickleHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    url = f"http://127.0.0.1:{server.server_address[1]}/trickle"
    try:
        with httpx.Client(trust_env=False, timeout=5.0) as client:
            deadline = deadline_after(0.5)
            response = client.send(client.build_request("GET", url), stream=True)
            started = time.monotonic()
            with pytest.raises(Timeout):
                decode_response(response, deadline=deadline)
            assert time.monotonic() - started < 1.5
            assert response.is_closed
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def test_pool_keepalive_cap_is_pool_wide() -> None:
    with build_http_client(secure_tls_profile()) as client:
        pool = client._transport._pool

    assert pool._max_connections == MAX_CONNECTIONS
    assert pool._max_keepalive_connections == MAX_KEEPALIVE_CONNECTIONS


def test_sni_override_is_passed_to_transport() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"name": "w1"})

    profile = custom_tls_profile(TLSOptions(server_name="sni.example.org"))
    _client(handler, tls_profile=profile).get_json("widgets/w1", _Widget)

    assert seen[0].extensions["sni_hostname"] == "sni.example.org"


def test_audit_query_parameters() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [_record("r1")], "has_next_page": False})

    params = AuditQueryParams(
        start_time=datetime(2025, 1, 1, tzinfo=UTC),
        end_time=datetime(2025, 1, 2, 12, 30, tzinfo=UTC),
        event_type="transfer",
        limit=50,
    )
    page = _client(handler).get_audit_logs(params)

    assert [record.id for record in page.data] == ["r1"]
    query = seen[0].url.params
    assert seen[0].url.path == "/api/audit-logs"
    assert query["start_time"] == "2025-01-01T00:00:00Z"
    assert query["end_time"] == "2025-01-02T12:30:00Z"
    assert query["event_type"] == "transfer"
    assert query["limit"] == "50"
    assert "marker" not in query


def test_iter_audit_logs_follows_markers_in_server_order() -> None:
    markers: list[str | None] = []
    pages = {
        None: {"data": [_record("r1"), _record("r2")], "has_next_page": True, "marker": "m1"},
        "m1": {"data": [_record("r3")], "has_next_page": False},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        marker = request.url.params.get("marker")
        markers.append(marker)
        return httpx.Response(200, json=pages[marker])

    records = list(_client(handler).iter_audit_logs(AuditQueryParams()))

    assert [record.id for record in records] == ["r1", "r2", "r3"]
    assert markers == [None, "m1"]


def test_iter_audit_logs_stops_at_limit() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        index = len(requests)
        return httpx.Response(
            200,
            json={
                "data": [_record(f"p{index}a"), _record(f"p{index}b")],
                "has_next_page": True,
                "marker": f"m{index}",
            },
        )

    records = list(_client(handler).iter_audit_logs(AuditQueryParams(limit=3)))

    assert [record.id for record in records] == ["p1a", "p1b", "p2a"]
    assert len(requests) == 2


def test_repeated_marker_is_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"data": [_record("r1")], "has_next_page": True, "marker": "same"}
        )

    with pytest.raises(ProtocolError, match="marker"):
        list(_client(handler).iter_audit_logs(AuditQueryParams()))


def test_audit_record_tolerates_missing_and_null_fields() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "id": "r1",
                        "timestamp": None,
                        "username": None,
                        "metadata": {"bytes": 42, "path": "/data"},
                        "unknown_field": "ignored",
                    }
                ]
            },
        )

    page = _client(handler).get_audit_logs()

    record = page.data[0]
    assert record.timestamp is None
    assert record.username == ""
    assert record.metadata == {"bytes": "42", "path": "/data"}


def test_structured_metadata_values_keep_json_text() -> None:
    record = AuditRecord.model_validate(
        {
            "id": "r1",
            "metadata": {
                "source": {"path": "/data", "size": 2},
                "recursive": True,
                "paths": ["/a", "/b"],
                "owner": None,
            },
        }
    )

    assert record.metadata == {
        "source": '{"path": "/data", "size": 2}',
        "recursive": "true",
        "paths": '["/a", "/b"]',
        "owner": "",
    }
    assert json.loads(record.metadata["source"]) == {"path": "/data", "size": 2}
