from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from gcsadmin import cli as cli_module
from gcsadmin.api.models import AuditRecord
from gcsadmin.audit.store import AuditStore
from gcsadmin.auth.flow import LoginResult
from gcsadmin.auth.tokens import TokenBundle, TokenStore
from gcsadmin.cli import app
from gcsadmin.config import CONFIG_DIR_ENV, audit_db_path
from gcsadmin.errors import AuthorizationFailed
from typer.testing import CliRunner


@pytest.fixture
def config_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "gcs"
    monkeypatch.setenv(CONFIG_DIR_ENV, str(root))
    return root


def _save_token(root: Path, profile: str = "default", *, expired: bool = False) -> None:
    delta = timedelta(hours=-1) if expired else timedelta(hours=1)
    TokenStore(root).save(
        profile,
        TokenBundle(access_credential="AT", expires_at=datetime.now(UTC) + delta),
    )


def _seed_audit(root: Path) -> None:
    records = [
        {
            "id": "r1",
            "timestamp": "2025-01-01T00:00:00Z",
            "event_type": "transfer",
            "username": "alice@example.org",
            "action": "create",
            "result": "success",
            "message": "transfer started",
        },
        {
            "id": "r2",
            "timestamp": "2025-01-02T00:00:00Z",
            "event_type": "login",
            "username": "bob@example.org",
            "result": "failure",
        },
        {
            "id": "r3",
            "timestamp": "2025-01-03T00:00:00Z",
            "event_type": "transfer",
            "username": "bob@example.org",
            "result": "failure",
        },
    ]
    with AuditStore(audit_db_path(root)) as store:
        store.ingest(AuditRecord.model_validate(record) for record in records)


def test_whoami_without_login_exits_3(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["whoami"])

    assert result.exit_code == 3
    assert "Operational error" in result.output


def test_whoami_with_expired_token_exits_4(config_root: Path) -> None:
    _save_token(config_root, expired=True)

    result = CliRunner().invoke(app, ["whoami"])

    assert result.exit_code == 4


def test_unsafe_profile_exits_2(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["logout", "--profile", "../escape"])

    assert result.exit_code == 2


def test_bad_start_time_exits_2(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["audit", "query", "--start-time", "yesterday"])

    assert result.exit_code == 2
    assert "--start-time" in result.output


def test_dump_with_unknown_format_exits_2(config_root: Path, tmp_path: Path) -> None:
    output = tmp_path / "out.xml"

    result = CliRunner().invoke(app, ["audit", "dump", "-o", str(output), "--format", "xml"])

    assert result.exit_code == 2
    assert not output.exists()


def test_audit_load_without_login_exits_3(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["audit", "load", "--endpoint", "gcs.example.org"])

    assert result.exit_code == 3
    assert not audit_db_path(config_root).exists()


def test_audit_load_requires_endpoint(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["audit", "load"])

    assert result.exit_code == 2


def test_logout_removes_profile(config_root: Path) -> None:
    _save_token(config_root, "work")

    result = CliRunner().invoke(app, ["logout", "--profile", "work"])

    assert result.exit_code == 0
    assert "Logged out from profile: work" in result.output
    assert not TokenStore(config_root).exists("work")


def test_logout_json_output(config_root: Path) -> None:
    _save_token(config_root)

    result = CliRunner().invoke(app, ["logout", "--format", "json"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"profile": "default", "logged_out": True}


def test_login_success_output(config_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []

    def fake_login(env, profile, scopes, **kwargs):
        calls.append({"profile": profile, "scopes": scopes, **kwargs})
        return LoginResult(
            profile=profile,
            expires_at=datetime(2099, 1, 1, tzinfo=UTC),
            token_path=env.config_root / "tokens" / f"{profile}.json",
            scopes=["openid"],
        )

    monkeypatch.setattr(cli_module.auth_flow, "login", fake_login)

    result = CliRunner().invoke(app, ["login", "-p", "work", "--no-local-server"])

    assert result.exit_code == 0
    assert "Login successful!" in result.output
    assert "Profile: work" in result.output
    assert "Token expires: 2099-01-01T00:00:00Z" in result.output
    assert calls[0]["profile"] == "work"
    assert calls[0]["no_local_server"] is True


def test_login_rejected_callback_exits_12(
    config_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fake_login(*args, **kwargs):
        raise AuthorizationFailed("invalid state parameter (possible CSRF attempt)")

    monkeypatch.setattr(cli_module.auth_flow, "login", fake_login)

    result = CliRunner().invoke(app, ["login"])

    assert result.exit_code == 12
    assert "CSRF" in result.output


def test_login_interrupted_exits_130(config_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_login(*args, **kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr(cli_module.auth_flow, "login", fake_login)

    result = CliRunner().invoke(app, ["login"])

    assert result.exit_code == 130


def test_profiles_list_json(config_root: Path) -> None:
    _save_token(config_root, "alpha")
    _save_token(config_root, "beta", expired=True)

    result = CliRunner().invoke(app, ["profiles", "list", "--format", "json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [(row["profile"], row["status"]) for row in payload["profiles"]] == [
        ("alpha", "valid"),
        ("beta", "expired"),
    ]


def test_profiles_list_text(config_root: Path) -> None:
    _save_token(config_root, "alpha")

    result = CliRunner().invoke(app, ["profiles", "list"])

    assert result.exit_code == 0
    assert "Stored Profiles" in result.output
    assert "alpha" in result.output


def test_tls_show_defaults(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["tls", "show"])

    assert result.exit_code == 0
    assert "TLS 1.2" in result.output
    assert "enabled" in result.output


def test_tls_show_json(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["tls", "show", "--min-tls", "1.3", "--format", "json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["min_version"] == "TLS 1.3"
    assert payload["verify"] is True
    assert "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256" in payload["cipher_suites"]


def test_tls_show_old_version_exits_5(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["tls", "show", "--min-tls", "1.1"])

    assert result.exit_code == 5


def test_tls_show_unknown_version_exits_2(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["tls", "show", "--min-tls", "9"])

    assert result.exit_code == 2


def test_tls_show_insecure_is_explicit(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["tls", "show", "--insecure-skip-verify"])

    assert result.exit_code == 0
    assert "disabled" in result.output


def test_audit_query_empty_database(config_root: Path) -> None:
    result = CliRunner().invoke(app, ["audit", "query"])

    assert result.exit_code == 0
    assert "No audit logs found matching the criteria" in result.output


def test_audit_query_text_output(config_root: Path) -> None:
    _seed_audit(config_root)

    result = CliRunner().invoke(app, ["audit", "query", "--event-type", "transfer"])

    assert result.exit_code == 0
    assert "Found 2 audit log entries" in result.output
    assert result.output.index("2025-01-03T00:00:00Z") < result.output.index(
        "2025-01-01T00:00:00Z"
    )
    assert "transfer started" in result.output


def test_audit_query_json_output(config_root: Path) -> None:
    _seed_audit(config_root)

    result = CliRunner().invoke(
        app, ["audit", "query", "--result", "failure", "--limit", "1", "--format", "json"]
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["count"] == 1
    assert payload["logs"][0]["id"] == "r3"


def test_audit_dump_filtered_csv(config_root: Path, tmp_path: Path) -> None:
    _seed_audit(config_root)
    output = tmp_path / "failures.csv"

    result = CliRunner().invoke(
        app,
        [
            "audit",
            "dump",
            "--output",
            str(output),
            "--format",
            "csv",
            "--result",
            "failure",
            "--start-time",
            "2025-01-01T12:00:00Z",
        ],
    )

    assert result.exit_code == 0
    assert "Exported 2 audit log entries" in result.output
    lines = output.read_text(encoding="utf-8").splitlines()
    assert lines[0] == (
        "id,timestamp,event_type,actor_id,username,resource,resource_id,"
        "action,result,message,client_ip"
    )
    assert [line.split(",")[0] for line in lines[1:]] == ["r3", "r2"]


def test_audit_dump_csv_for_january_transfers(config_root: Path, tmp_path: Path) -> None:
    with AuditStore(audit_db_path(config_root)) as store:
        store.ingest(
            AuditRecord(
                id=f"jan-{day:02d}",
                timestamp=datetime(2025, 1, day, tzinfo=UTC),
                event_type="transfer" if day % 2 else "access",
            )
            for day in range(1, 32)
        )
    output = tmp_path / "transfers.csv"

    result = CliRunner().invoke(
        app,
        [
            "audit",
            "dump",
            "-o",
            str(output),
            "--format",
            "csv",
            "--event-type",
            "transfer",
            "--start-time",
            "2025-01-10T00:00:00Z",
        ],
    )

    assert result.exit_code == 0
    lines = output.read_text(encoding="utf-8").splitlines()
    assert lines[0] == (
        "id,timestamp,event_type,actor_id,username,resource,resource_id,"
        "action,result,message,client_ip"
    )
    rows = [line.split(",") for line in lines[1:]]
    assert len(rows) == 11
    for row in rows:
        assert row[2] == "transfer"
        assert row[1] >= "2025-01-10T00:00:00Z"


def test_audit_dump_json(config_root: Path, tmp_path: Path) -> None:
    _seed_audit(config_root)
    output = tmp_path / "all.json"

    result = CliRunner().invoke(app, ["audit", "dump", "-o", str(output)])

    assert result.exit_code == 0
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert [entry["id"] for entry in payload] == ["r3", "r2", "r1"]
