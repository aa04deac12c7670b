"""epatient-access: administration CLI for the emergency access service."""

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Annotated
from uuid import UUID

import asyncpg
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .audit import AuditAction, AuditFilters, create_cli_context
from .audit.context import clear_audit_context, set_audit_context
from .audit.models import ActorRole
from .auth.biometrics import DigestMatcher
from .config import AccessConfig, ConfigValidationError, load_config
from .db import AccessSchemaManager
from .errors import AccessError
from .models import EmergencyGrant, GrantStatus
from .secrets import (
    DB_PASSWORD_VAR,
    CredentialValidationError,
    SecretProviderError,
    get_biometric_key,
    get_database_password,
    get_signing_key,
    mask_password_in_url,
    validate_no_password_in_url,
)
from .service import AccessService
from .storage import AccessStore, PostgresStore

DB_URL_VAR = "EPATIENT_ACCESS_DB_URL"


def version_callback(value: bool) -> None:
    if value:
        print(__version__)
        raise typer.Exit()


app = typer.Typer(
    name="epatient-access", help="Emergency access control for patient records"
)
console = Console()


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version", callback=version_callback, is_eager=True, help="Show version and exit"
        ),
    ] = None,
) -> None:
    pass


def setup_logging(verbose: bool, quiet: bool) -> None:
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("epatient_access").setLevel(level)


def _load_config(config_path: Path | None) -> AccessConfig:
    if config_path is None:
        return AccessConfig()
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigValidationError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None


def _resolve_database_url(db_url: str | None, config: AccessConfig) -> str:
    """Pick the database URL from --db, the environment, or the config file.

    Raises:
        CredentialValidationError: If the URL embeds a password.
    """
    url = db_url or os.environ.get(DB_URL_VAR) or config.storage.database_url
    if not url:
        console.print(
            f"[red]Error: No database URL. Pass --db or set {DB_URL_VAR}.[/red]"
        )
        raise typer.Exit(1)
    validate_no_password_in_url(url)
    return url


async def _open_store(db_url: str, config: AccessConfig) -> AccessStore:
    password = get_database_password(password_env_var=DB_PASSWORD_VAR)
    return await PostgresStore.connect(db_url, config.storage, password=password)


def _build_service(store: AccessStore, config: AccessConfig) -> AccessService:
    return AccessService(
        store,
        signing_key=get_signing_key(),
        matcher=DigestMatcher(get_biometric_key()),
        config=config,
    )


def _prepare(db_url: str | None, config_path: Path | None) -> tuple[str, AccessConfig]:
    config = _load_config(config_path)
    try:
        url = _resolve_database_url(db_url, config)
    except CredentialValidationError as e:
        console.print(f"[red]Security Error: {e}[/red]")
        raise typer.Exit(1) from None
    return url, config


def _run(coro):
    """Run a command body, mapping domain and secret errors to exit code 1."""
    set_audit_context(create_cli_context())
    try:
        return asyncio.run(coro)
    except AccessError as e:
        console.print(f"[red]Error: {e.public_message}[/red]")
        raise typer.Exit(1) from None
    except SecretProviderError as e:
        console.print(f"[red]Secret Error: {e}[/red]")
        raise typer.Exit(1) from None
    finally:
        clear_audit_context()


def _grant_table(title: str, grants: list[EmergencyGrant]) -> Table:
    table = Table(title=title)
    table.add_column("Grant")
    table.add_column("Doctor")
    table.add_column("Patient")
    table.add_column("Method")
    table.add_column("Status")
    table.add_column("Granted")
    table.add_column("Expires")
    table.add_column("Reason")
    for g in grants:
        style = "green" if g.status is GrantStatus.ACTIVE else "dim"
        table.add_row(
            str(g.grant_id),
            g.doctor_id,
            g.patient_id,
            g.method.value,
            f"[{style}]{g.status.value}[/{style}]",
            g.granted_at.isoformat(timespec="seconds"),
            g.expires_at.isoformat(timespec="seconds"),
            g.reason,
        )
    return table


@app.command("init-db")
def init_db(
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
) -> None:
    """Create the access-control tables, triggers and indexes."""
    url, config = _prepare(db_url, config_path)

    async def run_init() -> bool:
        password = get_database_password(password_env_var=DB_PASSWORD_VAR)
        conn = await asyncpg.connect(url, password=password)
        try:
            manager = AccessSchemaManager()
            await manager.create_schema(conn)
            return await manager.verify_immutability(conn)
        finally:
            await conn.close()

    try:
        immutable = asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    console.print(f"[green]✓[/green] Access schema initialized on {mask_password_in_url(url)}")
    if not immutable:
        console.print("[yellow]⚠[/yellow] Audit immutability trigger is not installed")


@app.command()
def status(
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
) -> None:
    """Show schema state and live counts of grants, sessions and audit entries."""
    url, config = _prepare(db_url, config_path)

    async def run_status() -> dict | None:
        password = get_database_password(password_env_var=DB_PASSWORD_VAR)
        conn = await asyncpg.connect(url, password=password)
        try:
            manager = AccessSchemaManager()
            if not await manager.schema_exists(conn):
                return None
            return await manager.get_status(conn)
        finally:
            await conn.close()

    try:
        counts = asyncio.run(run_status())
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    if counts is None:
        console.print("[dim]○[/dim] Access schema not initialized")
        console.print("  Run 'epatient-access init-db' to create it")
        raise typer.Exit(1)

    console.print(f"[green]●[/green] Access schema ready on {mask_password_in_url(url)}")
    console.print(f"  Identities: {counts['identities']}")
    console.print(f"  Active emergency grants: {counts['active_grants']}")
    console.print(f"  Open sessions: {counts['open_sessions']}")
    console.print(f"  Audit entries: {counts['audit_entries']}")


@app.command()
def sweep(
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    once: bool = typer.Option(False, "--once", help="Run a single sweep and exit"),
    interval: float | None = typer.Option(
        None, "--interval", "-i", help="Seconds between sweeps (default from config)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
) -> None:
    """Expire emergency grants, end stale sessions and purge old challenges.

    Example:
        epatient-access sweep --once
    """
    setup_logging(verbose, quiet)
    url, config = _prepare(db_url, config_path)
    if interval is not None:
        if interval <= 0:
            console.print("[red]Error: --interval must be positive[/red]")
            raise typer.Exit(1)
        config.sweeper.interval_seconds = interval

    async def run_sweep():
        store = await _open_store(url, config)
        try:
            service = _build_service(store, config)
            if once:
                return await service.sweeper.run_once()
            await service.sweeper.start()
            try:
                while True:
                    await asyncio.sleep(3600)
            finally:
                await service.sweeper.stop()
        finally:
            await store.close()

    try:
        result = _run(run_sweep())
    except KeyboardInterrupt:
        console.print("Sweeper stopped")
        return

    if not quiet:
        console.print(
            f"[green]✓[/green] Sweep complete: {result.grants_expired} grants expired, "
            f"{result.sessions_ended} sessions ended, "
            f"{result.challenges_removed} challenges removed"
        )


audit_app = typer.Typer(help="Audit trail queries, export and verification")
app.add_typer(audit_app, name="audit")


def _parse_when(value: str | None, option: str) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Error: Invalid {option} timestamp: {value}[/red]")
        raise typer.Exit(1) from None


@audit_app.command("query")
def audit_query(
    patient: Annotated[str | None, typer.Option("--patient", "-p", help="Patient id")] = None,
    actor: Annotated[str | None, typer.Option("--actor", "-a", help="Actor id")] = None,
    role: Annotated[str | None, typer.Option("--role", help="Actor role")] = None,
    action: Annotated[str | None, typer.Option("--action", help="Audit action")] = None,
    start: Annotated[str | None, typer.Option("--start", "-s", help="ISO start time")] = None,
    end: Annotated[str | None, typer.Option("--end", "-e", help="ISO end time")] = None,
    search: Annotated[str | None, typer.Option("--search", help="Text in details")] = None,
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries"),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Search the audit trail, newest entries first."""
    try:
        filters = AuditFilters(
            patient_id=patient,
            actor_id=actor,
            actor_role=ActorRole(role.upper()) if role else None,
            action=AuditAction(action.upper()) if action else None,
            start=_parse_when(start, "--start"),
            end=_parse_when(end, "--end"),
            search=search,
            limit=limit,
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    url, config = _prepare(db_url, config_path)

    async def run_query():
        store = await _open_store(url, config)
        try:
            return await _build_service(store, config).query_audit(filters)
        finally:
            await store.close()

    entries = _run(run_query())

    if json_output:
        print(json.dumps([e.to_dict() for e in entries], indent=2, default=str))
        return

    table = Table(title=f"Audit entries ({len(entries)})")
    table.add_column("Seq", justify="right")
    table.add_column("Time")
    table.add_column("Action")
    table.add_column("Actor")
    table.add_column("Role")
    table.add_column("Patient")
    for e in entries:
        table.add_row(
            str(e.sequence),
            e.created_at.isoformat(timespec="seconds"),
            e.action.value,
            e.actor_id or "-",
            e.actor_role.value,
            e.patient_id or "-",
        )
    console.print(table)


@audit_app.command("export")
def audit_export(
    patient: Annotated[str, typer.Option("--patient", "-p", help="Patient id")],
    output: Annotated[Path, typer.Option("--output", "-o", help="Output CSV file")],
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
) -> None:
    """Export every audit entry concerning a patient as CSV.

    Example:
        epatient-access audit export --patient P-1001 -o p1001.csv
    """
    url, config = _prepare(db_url, config_path)

    async def run_export() -> bytes:
        store = await _open_store(url, config)
        try:
            return await _build_service(store, config).export_audit_csv(patient)
        finally:
            await store.close()

    data = _run(run_export())
    output.write_bytes(data)
    if not quiet:
        rows = max(data.count(b"\n") - 1, 0)
        console.print(f"[green]✓[/green] Exported {rows} entries to {output}")


@audit_app.command("verify")
def audit_verify(
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Verify the audit hash chain.

    Returns a non-zero exit code if tampering is detected.
    """
    url, config = _prepare(db_url, config_path)

    async def run_verify():
        store = await _open_store(url, config)
        try:
            return await _build_service(store, config).verify_audit_integrity()
        finally:
            await store.close()

    report = _run(run_verify())

    if json_output:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    elif report.is_valid:
        console.print(
            f"[green]✓[/green] Audit chain intact ({report.total_entries} entries)"
        )
    else:
        console.print(
            f"[red]✗ Audit chain integrity check failed: "
            f"{len(report.violations)} violations[/red]"
        )
        for v in report.violations[:20]:
            console.print(f"  [red]•[/red] #{v.sequence}: {v.status.value} {v.message}")

    if not report.is_valid:
        raise typer.Exit(1)


@audit_app.command("stats")
def audit_stats(
    patient: Annotated[str | None, typer.Option("--patient", "-p", help="Patient id")] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show audit trail statistics."""
    url, config = _prepare(db_url, config_path)

    async def run_stats():
        store = await _open_store(url, config)
        try:
            return await _build_service(store, config).audit_stats(patient)
        finally:
            await store.close()

    stats = _run(run_stats())

    if json_output:
        print(json.dumps(stats.__dict__, indent=2))
        return

    console.print(f"Total entries: {stats.total}")
    console.print(f"Emergency grants: {stats.emergency_grants}")
    console.print(f"Denials: {stats.denials}")
    table = Table(title="By action")
    table.add_column("Action")
    table.add_column("Count", justify="right")
    for name, count in sorted(stats.by_action.items()):
        table.add_row(name, str(count))
    console.print(table)


grants_app = typer.Typer(help="Emergency grant inspection and revocation")
app.add_typer(grants_app, name="grants")


@grants_app.command("active")
def grants_active(
    doctor: Annotated[str, typer.Option("--doctor", help="Doctor id")],
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
) -> None:
    """List a doctor's active emergency grants."""
    url, config = _prepare(db_url, config_path)

    async def run_list():
        store = await _open_store(url, config)
        try:
            service = _build_service(store, config)
            return await service.sessions.list_active_grants_for_doctor(doctor)
        finally:
            await store.close()

    grants = _run(run_list())
    if not grants:
        console.print("No active emergency grants")
        return
    console.print(_grant_table(f"Active grants for {doctor}", grants))


@grants_app.command("history")
def grants_history(
    patient: Annotated[str, typer.Option("--patient", "-p", help="Patient id")],
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum grants"),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
) -> None:
    """List emergency grants that targeted a patient, newest first."""
    url, config = _prepare(db_url, config_path)

    async def run_history():
        store = await _open_store(url, config)
        try:
            service = _build_service(store, config)
            return await service.sessions.list_access_history_for_patient(patient, limit)
        finally:
            await store.close()

    grants = _run(run_history())
    if not grants:
        console.print("No emergency access recorded")
        return
    console.print(_grant_table(f"Emergency access history for {patient}", grants))


@grants_app.command("revoke")
def grants_revoke(
    grant_id: Annotated[str, typer.Argument(help="Grant id")],
    reason: str = typer.Option("revoked by administrator", "--reason", "-r", help="Reason"),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
) -> None:
    """Revoke an emergency grant. Revoking a finished grant is a no-op."""
    try:
        parsed_id = UUID(grant_id)
    except ValueError:
        console.print(f"[red]Error: Invalid grant id: {grant_id}[/red]")
        raise typer.Exit(1) from None

    url, config = _prepare(db_url, config_path)

    async def run_revoke():
        store = await _open_store(url, config)
        try:
            service = _build_service(store, config)
            return await service.sessions.revoke_grant(
                parsed_id, revoked_by_role=ActorRole.SYSTEM, reason=reason
            )
        finally:
            await store.close()

    grant = _run(run_revoke())
    if grant.status is GrantStatus.REVOKED:
        console.print(f"[green]✓[/green] Grant {grant.grant_id} is revoked")
    else:
        console.print(f"Grant {grant.grant_id} already {grant.status.value.lower()}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
