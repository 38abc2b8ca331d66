"""CLI entrypoint for gcsadmin."""

import logging
import ssl
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from gcsadmin.api.tls import (
    TLSOptions,
    TLSProfile,
    custom_tls_profile,
    load_root_cas,
    openssl_cipher_name,
    tls_version_name,
    validate,
)
from gcsadmin.audit import export as audit_export
from gcsadmin.audit import ingest as audit_ingest
from gcsadmin.audit.store import AuditFilter, AuditStore
from gcsadmin.auth import flow as auth_flow
from gcsadmin.auth.tokens import TokenStore, is_valid
from gcsadmin.config import DEFAULT_PROFILE, Env, audit_db_path, load_env
from gcsadmin.errors import Cancelled, GcsAdminError, InvalidArgument, LocalStoreError
from gcsadmin.output import Formatter, new_formatter
from gcsadmin.timefmt import format_rfc3339, parse_optional_rfc3339

_LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_OPERATIONAL_ERROR = 1

DEFAULT_QUERY_LIMIT = 100

_TLS_VERSIONS: dict[str, ssl.TLSVersion] = {
    "1.0": ssl.TLSVersion.TLSv1,
    "1.1": ssl.TLSVersion.TLSv1_1,
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.3": ssl.TLSVersion.TLSv1_3,
}

app = typer.Typer(
    help="gcsadmin: Globus Connect Server endpoint administration client.",
    no_args_is_help=True,
)
audit_app = typer.Typer(help="Audit log import, query and export commands.")
profiles_app = typer.Typer(help="Stored login profile commands.")
tls_app = typer.Typer(help="Transport security diagnostics.")
app.add_typer(audit_app, name="audit")
app.add_typer(profiles_app, name="profiles")
app.add_typer(tls_app, name="tls")

console = Console()
err_console = Console(stderr=True)


def _configure_logging(*, debug: bool, verbose: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=debug, markup=False)],
        force=True,
    )


@contextmanager
def _operational_errors() -> Iterator[None]:
    try:
        yield
    except GcsAdminError as exc:
        err_console.print(f"[red]Operational error: {escape(str(exc))}[/red]", soft_wrap=True)
        raise typer.Exit(code=exc.exit_code) from exc
    except KeyboardInterrupt as exc:
        err_console.print("[red]Operational error: cancelled by operator[/red]")
        raise typer.Exit(code=Cancelled.exit_code) from exc
    except (OSError, ValueError) as exc:
        err_console.print(f"[red]Operational error: {escape(str(exc))}[/red]", soft_wrap=True)
        raise typer.Exit(code=EXIT_OPERATIONAL_ERROR) from exc


def _env(ctx: typer.Context) -> Env:
    env = ctx.find_object(Env)
    if env is None:
        env = load_env()
        ctx.obj = env
    return env


def _line_reader(structured: bool) -> Callable[[str], str]:
    def read_line(prompt: str) -> str:
        typer.echo(prompt, nl=False, err=structured)
        return input()

    return read_line


def _announcer(structured: bool) -> Callable[[str], None]:
    def announce(message: str) -> None:
        typer.echo(message, err=structured)

    return announce


def _tls_profile(
    *,
    min_tls: str | None = None,
    ca_bundle: Path | None = None,
    server_name: str | None = None,
    insecure_skip_verify: bool = False,
) -> TLSProfile:
    min_version = None
    if min_tls is not None:
        min_version = _TLS_VERSIONS.get(min_tls.strip())
        if min_version is None:
            raise InvalidArgument(f"invalid --min-tls {min_tls!r}: use 1.2 or 1.3")
    return custom_tls_profile(
        TLSOptions(
            min_version=min_version,
            insecure_skip_verify=insecure_skip_verify,
            root_cas=load_root_cas(ca_bundle) if ca_bundle is not None else None,
            server_name=server_name,
        )
    )


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Log debug detail to stderr."),
    verbose: bool = typer.Option(False, "--verbose", help="Log progress to stderr."),
) -> None:
    """Administer Globus Connect Server endpoints."""
    _configure_logging(debug=debug, verbose=verbose)
    with _operational_errors():
        ctx.obj = load_env()


@app.command("login")
def login_command(
    ctx: typer.Context,
    profile: str = typer.Option(DEFAULT_PROFILE, "--profile", "-p", help="Profile name."),
    scopes: str = typer.Option(
        auth_flow.DEFAULT_SCOPES, "--scopes", help="OAuth2 scopes (space-separated)."
    ),
    no_local_server: bool = typer.Option(
        False,
        "--no-local-server",
        help="Disable the local callback server and paste the authorization code manually.",
    ),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format (text, json)."),
) -> None:
    """Authenticate with Globus Auth and store tokens for a profile."""
    with _operational_errors():
        formatter = new_formatter(output_format)
        structured = formatter.is_structured()
        result = auth_flow.login(
            _env(ctx),
            profile,
            scopes,
            no_local_server=no_local_server,
            announce=_announcer(structured),
            read_line=_line_reader(structured),
        )
        formatter.print_structured(result)
        formatter.println("✓ Login successful!")
        formatter.print_text("Profile: %s\n", result.profile)
        formatter.print_text("Token expires: %s\n", format_rfc3339(result.expires_at))


@app.command("logout")
def logout_command(
    ctx: typer.Context,
    profile: str = typer.Option(DEFAULT_PROFILE, "--profile", "-p", help="Profile name."),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format (text, json)."),
) -> None:
    """Remove stored tokens for a profile."""
    with _operational_errors():
        formatter = new_formatter(output_format)
        auth_flow.logout(_env(ctx), profile)
        formatter.print_structured({"profile": profile, "logged_out": True})
        formatter.print_text("✓ Logged out from profile: %s\n", profile)


@app.command("whoami")
def whoami_command(
    ctx: typer.Context,
    profile: str = typer.Option(DEFAULT_PROFILE, "--profile", "-p", help="Profile name."),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format (text, json)."),
) -> None:
    """Show the identity behind a profile's access token."""
    with _operational_errors():
        formatter = new_formatter(output_format)
        info = auth_flow.whoami(_env(ctx), profile)
        _render_whoami(formatter, info)


def _render_whoami(formatter: Formatter, info: auth_flow.WhoamiInfo) -> None:
    formatter.print_structured(info)
    formatter.println("Authenticated User Information:")
    formatter.println()
    if info.name:
        formatter.print_text("Name:     %s\n", info.name)
    if info.username:
        formatter.print_text("Username: %s\n", info.username)
    if info.email:
        formatter.print_text("Email:    %s\n", info.email)
    formatter.print_text("ID:       %s\n", info.sub)
    formatter.print_text("Profile:  %s\n", info.profile)
    formatter.print_text("Expires:  %s\n", format_rfc3339(info.expires_at))


@audit_app.command("load")
def audit_load(
    ctx: typer.Context,
    endpoint: str = typer.Option(
        ..., "--endpoint", help="Endpoint FQDN (e.g. abc.def.data.globus.org)."
    ),
    start_time: str | None = typer.Option(None, "--start-time", help="Start time (RFC3339)."),
    end_time: str | None = typer.Option(None, "--end-time", help="End time (RFC3339)."),
    event_type: str | None = typer.Option(None, "--event-type", help="Filter by event type."),
    limit: int = typer.Option(
        audit_ingest.DEFAULT_LOAD_LIMIT, "--limit", help="Maximum number of logs to load."
    ),
    ca_bundle: Path | None = typer.Option(
        None, "--ca-bundle", help="PEM file of trusted root certificates for the endpoint."
    ),
    profile: str = typer.Option(DEFAULT_PROFILE, "--profile", "-p", help="Profile name."),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format (text, json)."),
) -> None:
    """Load audit logs from an endpoint into the local database."""
    with _operational_errors():
        formatter = new_formatter(output_format)
        start = parse_optional_rfc3339(start_time, flag="--start-time")
        end = parse_optional_rfc3339(end_time, flag="--end-time")
        tls_profile = _tls_profile(ca_bundle=ca_bundle) if ca_bundle is not None else None
        result = audit_ingest.load_audit_logs(
            _env(ctx),
            endpoint,
            profile=profile,
            start_time=start,
            end_time=end,
            event_type=event_type,
            limit=limit,
            tls_profile=tls_profile,
        )
        formatter.print_structured({"loaded": result.loaded, "database": result.database})
        formatter.print_text("Loaded %d audit log entries into database\n", result.loaded)
        formatter.print_text("Database: %s\n", result.database)


def _audit_filter(
    *,
    start_time: str | None,
    end_time: str | None,
    event_type: str | None,
    identity: str | None,
    action: str | None,
    result: str | None,
) -> AuditFilter:
    return AuditFilter(
        start_time=parse_optional_rfc3339(start_time, flag="--start-time"),
        end_time=parse_optional_rfc3339(end_time, flag="--end-time"),
        event_type=event_type or None,
        identity_id=identity or None,
        action=action or None,
        result=result or None,
    )


@audit_app.command("query")
def audit_query(
    ctx: typer.Context,
    start_time: str | None = typer.Option(None, "--start-time", help="Start time (RFC3339)."),
    end_time: str | None = typer.Option(None, "--end-time", help="End time (RFC3339)."),
    event_type: str | None = typer.Option(None, "--event-type", help="Filter by event type."),
    identity: str | None = typer.Option(None, "--identity", help="Filter by identity ID."),
    action: str | None = typer.Option(None, "--action", help="Filter by action."),
    result: str | None = typer.Option(None, "--result", help="Filter by result."),
    limit: int = typer.Option(DEFAULT_QUERY_LIMIT, "--limit", help="Maximum number of results."),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format (text, json)."),
) -> None:
    """Query audit logs stored in the local database."""
    with _operational_errors():
        formatter = new_formatter(output_format)
        audit_filter = _audit_filter(
            start_time=start_time,
            end_time=end_time,
            event_type=event_type,
            identity=identity,
            action=action,
            result=result,
        )
        with AuditStore(audit_db_path(_env(ctx).config_root)) as store:
            records = store.query(audit_filter, limit=limit)

        formatter.print_structured(
            {"count": len(records), "logs": [record.export_dict() for record in records]}
        )
        if not records:
            formatter.println("No audit logs found matching the criteria")
            return
        formatter.print_text("Found %d audit log entries\n", len(records))
        formatter.println("=" * 80)
        formatter.println()
        for record in records:
            formatter.print_text("%-15s %s\n", "Timestamp:", format_rfc3339(record.timestamp))
            for label, value in (
                ("Event Type:", record.event_type),
                ("Username:", record.username),
                ("Resource:", record.resource),
                ("Action:", record.action),
                ("Result:", record.result),
                ("Message:", record.message),
            ):
                if value:
                    formatter.print_text("%-15s %s\n", label, value)
            formatter.println()


@audit_app.command("dump")
def audit_dump(
    ctx: typer.Context,
    output: Path = typer.Option(..., "--output", "-o", help="Output file path."),
    export_format: str = typer.Option("json", "--format", "-f", help="Export format (json, csv)."),
    start_time: str | None = typer.Option(None, "--start-time", help="Start time (RFC3339)."),
    end_time: str | None = typer.Option(None, "--end-time", help="End time (RFC3339)."),
    event_type: str | None = typer.Option(None, "--event-type", help="Filter by event type."),
    identity: str | None = typer.Option(None, "--identity", help="Filter by identity ID."),
    action: str | None = typer.Option(None, "--action", help="Filter by action."),
    result: str | None = typer.Option(None, "--result", help="Filter by result."),
) -> None:
    """Export audit logs from the local database to a file."""
    with _operational_errors():
        fmt = audit_export.validate_export_format(export_format)
        audit_filter = _audit_filter(
            start_time=start_time,
            end_time=end_time,
            event_type=event_type,
            identity=identity,
            action=action,
            result=result,
        )
        with AuditStore(audit_db_path(_env(ctx).config_root)) as store:
            records = store.query(audit_filter)
        exported = audit_export.dump_audit_logs(records, output, fmt)
        console.print(
            f"Exported {exported} audit log entries to {escape(str(output))}", soft_wrap=True
        )


@profiles_app.command("list")
def profiles_list(
    ctx: typer.Context,
    output_format: str = typer.Option("text", "--format", "-f", help="Output format (text, json)."),
) -> None:
    """List profiles with stored tokens."""
    with _operational_errors():
        formatter = new_formatter(output_format)
        store = TokenStore(_env(ctx).config_root)
        now = datetime.now(UTC)
        rows: list[dict[str, object]] = []
        for name in store.list_profiles():
            try:
                bundle = store.load(name)
            except (InvalidArgument, LocalStoreError) as exc:
                rows.append({"profile": name, "expires_at": None, "status": "unreadable"})
                _LOG.warning("profile %s: %s", name, exc)
                continue
            rows.append(
                {
                    "profile": name,
                    "expires_at": format_rfc3339(bundle.expires_at),
                    "status": "valid" if is_valid(bundle, now=now) else "expired",
                }
            )

        formatter.print_structured({"profiles": rows})
        if formatter.is_structured():
            return
        if not rows:
            console.print("[yellow]No stored profiles.[/yellow]")
            return
        table = Table(title="Stored Profiles")
        table.add_column("Profile")
        table.add_column("Expires")
        table.add_column("Status")
        for row in rows:
            table.add_row(str(row["profile"]), str(row["expires_at"] or "-"), str(row["status"]))
        console.print(table)


@tls_app.command("show")
def tls_show(
    min_tls: str | None = typer.Option(None, "--min-tls", help="Minimum TLS version (1.2, 1.3)."),
    ca_bundle: Path | None = typer.Option(
        None, "--ca-bundle", help="PEM file of trusted root certificates."
    ),
    server_name: str | None = typer.Option(None, "--server-name", help="SNI override."),
    insecure_skip_verify: bool = typer.Option(
        False, "--insecure-skip-verify", help="Disable certificate verification."
    ),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format (text, json)."),
) -> None:
    """Show the effective TLS client profile."""
    with _operational_errors():
        formatter = new_formatter(output_format)
        profile = _tls_profile(
            min_tls=min_tls,
            ca_bundle=ca_bundle,
            server_name=server_name,
            insecure_skip_verify=insecure_skip_verify,
        )
        validate(profile, allow_insecure=insecure_skip_verify)

        formatter.print_structured(
            {
                "min_version": tls_version_name(profile.min_version),
                "cipher_suites": list(profile.cipher_suites),
                "curve_preferences": list(profile.curve_preferences),
                "prefer_server_ciphers": profile.prefer_server_ciphers,
                "server_name": profile.server_name,
                "root_cas": len(profile.root_cas),
                "verify": profile.verify,
            }
        )
        if formatter.is_structured():
            return

        console.print(f"Minimum version: {tls_version_name(profile.min_version)}")
        table = Table(title="Cipher Suites (TLS 1.2)")
        table.add_column("IANA name")
        table.add_column("OpenSSL name")
        for cipher in profile.cipher_suites:
            table.add_row(cipher, openssl_cipher_name(cipher) or "-")
        console.print(table)
        console.print(f"Curve preferences: {', '.join(profile.curve_preferences)}")
        console.print(f"Server name override: {profile.server_name or '-'}")
        console.print(f"Custom root CAs: {len(profile.root_cas)}")
        if profile.verify:
            console.print("Certificate verification: [green]enabled[/green]")
        else:
            console.print("Certificate verification: [red]disabled[/red]")
