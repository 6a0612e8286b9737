"""Main CLI entry point using Typer."""

import dataclasses
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..aws.credentials import CredentialValidationError, validate_credentials
from ..models.restore_record import RestoreRecord, RestoreStatus
from ..models.run_context import RunContext
from ..utils.logging import setup_logging
from .config import Config, ConfigError

logger = logging.getLogger(__name__)

# Create Typer app
app = typer.Typer(
    name="tenant-restore",
    help="Tenant Schema Restore - point-in-time restore of individual PostgreSQL schemas",
    add_completion=False,
)

# Create Rich console for output
console = Console()

# Global config
config: Optional[Config] = None

STATUS_STYLES = {
    RestoreStatus.RUNNING: "yellow",
    RestoreStatus.SUCCEEDED: "green",
    RestoreStatus.FAILED: "red",
}


@app.callback()
def main(
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="AWS profile name"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="AWS region"),
    config_file: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Config file (default: $TENANT_RESTORE_CONFIG, ./.tenant-restore.yaml or ~/.tenant-restore/config.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress output except errors"),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output"),
):
    """Tenant Schema Restore - point-in-time restore of individual PostgreSQL schemas."""
    global config

    # Load configuration
    try:
        config = Config.load(config_file)
    except ConfigError as e:
        console.print(f"✗ {e}", style="bold red")
        raise typer.Exit(code=2)

    # Override with CLI options
    if profile:
        config.aws_profile = profile
    if region:
        config.region = region

    # Setup logging
    log_level = "ERROR" if quiet else ("DEBUG" if verbose else config.log_level)
    setup_logging(level=log_level, verbose=verbose)

    # Disable colors if requested
    if no_color:
        console.no_color = True


@app.command()
def version():
    """Show version information."""
    import boto3

    from .. import __version__

    console.print(f"tenant-schema-restore version {__version__}")
    console.print(f"Python {sys.version.split()[0]}")
    console.print(f"boto3 {boto3.__version__}")


def _get_config() -> Config:
    return config if config is not None else Config.load()


def _validate_credentials(cfg: Config) -> dict:
    try:
        identity = validate_credentials(cfg.aws_profile, cfg.region)
    except CredentialValidationError as e:
        console.print(f"✗ {e}", style="bold red")
        raise typer.Exit(code=2)
    logger.debug(f"Running as {identity['arn']} in account {identity['account_id']}")
    return identity


def _parse_date(value: Optional[str], option: str) -> Optional[datetime]:
    if not value:
        return None
    from ..models.restore_request import parse_timestamp
    from ..restore.errors import RequestValidationError

    try:
        return parse_timestamp(value)
    except RequestValidationError:
        console.print(f"✗ Invalid {option} '{value}'. Use ISO format like 2025-06-15 or 2025-06-15T14:30:00Z", style="bold red")
        raise typer.Exit(code=2)


def _print_record(record: RestoreRecord) -> None:
    request = record.request
    recovery = request.get("recovery_point", {})
    recovery_text = recovery.get("snapshot_id") or recovery.get("restore_time") or "-"
    style = STATUS_STYLES.get(record.status, "white")
    duration = f"{record.duration_seconds:.0f}s" if record.duration_seconds is not None else "-"

    lines = [
        f"[bold]Run:[/bold] {record.run_id}",
        f"[bold]Status:[/bold] [{style}]{record.status.value}[/{style}]",
        f"[bold]Database:[/bold] {request.get('target_database')}",
        f"[bold]Schemas:[/bold] {', '.join(request.get('schemas', []))}",
        f"[bold]Recovery point:[/bold] {recovery.get('kind', '-')} {recovery_text}",
        f"[bold]Submitted:[/bold] {record.submitted_at.isoformat()}",
        f"[bold]Duration:[/bold] {duration}",
    ]
    if record.error_detail:
        lines.append(f"[bold]Error ({record.error_kind}):[/bold] {record.error_detail}")
    console.print(Panel("\n".join(lines), title="Restore Run", border_style=style))

    if record.phase_timestamps:
        phases = Table(title="Phases", show_header=True, header_style="bold cyan")
        phases.add_column("Phase")
        phases.add_column("Entered at")
        for phase, timestamp in record.phase_timestamps.items():
            phases.add_row(phase, timestamp)
        console.print(phases)

    if record.cleanup_errors:
        console.print("\n[bold yellow]Cleanup errors:[/bold yellow]")
        for error in record.cleanup_errors:
            console.print(f"  • {error}")


def _print_result(context: RunContext) -> None:
    style = "green" if context.succeeded else "red"
    lines = [
        f"[bold]Run:[/bold] {context.run_id}",
        f"[bold]Result:[/bold] [{style}]{context.state.value}[/{style}]",
    ]
    if context.architecture:
        lines.append(f"[bold]Production:[/bold] {context.architecture.value} ({context.engine})")
    if context.succeeded:
        lines.append(f"[bold]Restored schemas:[/bold] {', '.join(context.request.target_schemas)}")
    else:
        lines.append(f"[bold]Error ({context.error_kind}):[/bold] {context.error}")
        lines.append(f"[bold]Restored schemas dropped:[/bold] {'yes' if context.schemas_rolled_back else 'no'}")
    console.print(Panel("\n".join(lines), title="Restore Result", border_style=style))

    if context.migration_units:
        table = Table(title="Migration Units", show_header=True, header_style="bold cyan")
        table.add_column("Schema")
        table.add_column("Target")
        table.add_column("State")
        table.add_column("Tables", justify="right")
        table.add_column("Error")
        for unit in context.migration_units:
            table.add_row(
                unit.schema,
                unit.target_schema,
                unit.task_state.value,
                f"{unit.tables_loaded} ({unit.tables_errored} errored)",
                unit.error or "",
            )
        console.print(table)

    if context.cleanup_errors:
        console.print("\n[bold yellow]⚠ Resources left behind:[/bold yellow]")
        for error in context.cleanup_errors:
            console.print(f"  • {error}")
        console.print(f"\nRetry with: tenant-restore restore cleanup --run-id {context.run_id}")


# Restore commands group
restore_app = typer.Typer(help="Restore run commands")
app.add_typer(restore_app, name="restore")


@restore_app.command("run")
def restore_run(
    database: str = typer.Option(..., "--database", "-d", help="Database name inside the production instance"),
    schemas: List[str] = typer.Option(..., "--schema", "-s", help="Schema to restore (repeatable)"),
    restore_time: Optional[str] = typer.Option(
        None, "--restore-time", "-t", help="Point in time to restore to (ISO 8601, UTC if no offset)"
    ),
    snapshot_id: Optional[str] = typer.Option(None, "--snapshot-id", help="Snapshot to restore from"),
    run_id: Optional[str] = typer.Option(None, "--run-id", help="Explicit run id (12 lowercase hex characters)"),
    task_runner: Optional[str] = typer.Option(
        None, "--task-runner", help="Where DDL tasks run: 'ecs' (default) or 'local'"
    ),
    requested_by: Optional[str] = typer.Option(None, "--requested-by", help="Caller identity for the audit record"),
):
    """Restore tenant schemas next to production as <schema>_<run id>.

    Exactly one of --restore-time and --snapshot-id is required.

    Examples:
        # Restore one tenant to a point in time
        tenant-restore restore run -d app -s tenant_acme -t 2025-06-15T14:30:00Z

        # Restore two tenants from a snapshot
        tenant-restore restore run -d app -s tenant_acme -s tenant_globex --snapshot-id nightly-2025-06-15
    """
    from ..models.restore_request import RestoreRequest
    from ..restore.errors import RequestValidationError

    cfg = _get_config()
    if task_runner:
        cfg.task_runner = task_runner

    try:
        request = RestoreRequest.create(
            database=database,
            schemas=schemas,
            restore_time=restore_time,
            snapshot_id=snapshot_id,
            run_id=run_id,
            requested_by=requested_by,
        )
    except RequestValidationError as e:
        console.print(f"✗ Invalid request: {e}", style="bold red")
        raise typer.Exit(code=2)

    identity = _validate_credentials(cfg)
    if not request.requested_by:
        request = dataclasses.replace(request, requested_by=identity["arn"])

    try:
        from ..restore.orchestrator import RestoreOrchestrator

        orchestrator = RestoreOrchestrator(cfg)
        console.print(f"🔄 Starting restore run [bold]{request.run_id}[/bold] for {', '.join(request.schemas)}")
        context = orchestrator.run(request)
    except (ConfigError, ValueError) as e:
        console.print(f"✗ {e}", style="bold red")
        raise typer.Exit(code=2)
    except Exception as e:
        console.print(f"✗ Error running restore: {e}", style="bold red")
        logger.exception("Error in restore run command")
        raise typer.Exit(code=2)

    _print_result(context)
    raise typer.Exit(code=0 if context.succeeded else 1)


@restore_app.command("cleanup")
def restore_cleanup(
    run_id: str = typer.Option(..., "--run-id", help="Run whose resources to delete"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="Database (if the run has no audit record)"),
    schemas: Optional[List[str]] = typer.Option(
        None, "--schema", "-s", help="Schemas of the run (if the run has no audit record)"
    ),
    drop_schemas: bool = typer.Option(False, "--drop-schemas", help="Also drop the restored schemas from production"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """Delete every temporary resource of a run.

    Safe to run repeatedly; resources already gone count as deleted.
    """
    from ..models.restore_request import RestoreRequest
    from ..restore.artifacts import DDLArtifactStore
    from ..restore.audit import create_audit_storage
    from ..restore.cleaner import CompensationManager
    from ..restore.tasks import create_task_runner

    cfg = _get_config()
    _validate_credentials(cfg)

    try:
        record = create_audit_storage(cfg).get_record(run_id)
        if record is not None:
            request = RestoreRequest.from_dict(record.request)
        elif database and schemas:
            request = RestoreRequest.create(database=database, schemas=schemas, snapshot_id="unknown", run_id=run_id)
        else:
            console.print(f"✗ No audit record for run {run_id}; pass --database and --schema", style="bold red")
            raise typer.Exit(code=1)

        console.print(f"Run {run_id}: {request.target_database} / {', '.join(request.schemas)}")
        if drop_schemas:
            console.print(f"[bold yellow]Will drop from production:[/bold yellow] {', '.join(request.target_schemas)}")
        if not yes and not typer.confirm("Delete all temporary resources of this run?"):
            console.print("Cancelled")
            raise typer.Exit(code=0)

        store = DDLArtifactStore(cfg.ddl_bucket, cfg.ddl_prefix, cfg.region, cfg.aws_profile) if cfg.ddl_bucket else None
        manager = CompensationManager(
            cfg,
            task_runner=create_task_runner(cfg) if drop_schemas else None,
            artifact_store=store,
        )
        report = manager.compensate(request, rollback_schemas=drop_schemas)

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"✗ Error during cleanup: {e}", style="bold red")
        logger.exception("Error in restore cleanup command")
        raise typer.Exit(code=2)

    console.print(f"✓ Deleted or already gone: {len(report.deleted)}", style="green")
    for skipped in report.skipped:
        console.print(f"  ⚠ Skipped {skipped}", style="yellow")
    for failed in report.failed:
        console.print(f"  ✗ {failed}", style="red")

    raise typer.Exit(code=0 if report.succeeded else 1)


@restore_app.command("show")
def restore_show(run_id: str = typer.Argument(..., help="Run id")):
    """Show the audit record of one run."""
    from ..restore.audit import create_audit_storage

    try:
        record = create_audit_storage(_get_config()).get_record(run_id)
    except Exception as e:
        console.print(f"✗ Error reading audit record: {e}", style="bold red")
        raise typer.Exit(code=2)

    if record is None:
        console.print(f"✗ Run {run_id} not found", style="bold red")
        raise typer.Exit(code=1)

    _print_record(record)


@restore_app.command("history")
def restore_history(
    since: Optional[str] = typer.Option(None, "--since", help="Only runs submitted at or after this date"),
    until: Optional[str] = typer.Option(None, "--until", help="Only runs submitted at or before this date"),
):
    """List restore runs from the audit ledger."""
    from ..restore.audit import create_audit_storage

    since_dt = _parse_date(since, "--since")
    until_dt = _parse_date(until, "--until")

    try:
        records = create_audit_storage(_get_config()).query_records(since=since_dt, until=until_dt)
    except Exception as e:
        console.print(f"✗ Error reading audit ledger: {e}", style="bold red")
        raise typer.Exit(code=2)

    if not records:
        console.print("No restore runs found")
        return

    table = Table(title="Restore History", show_header=True, header_style="bold cyan")
    table.add_column("Run")
    table.add_column("Submitted")
    table.add_column("Database")
    table.add_column("Schemas")
    table.add_column("Status")
    table.add_column("Duration", justify="right")

    for record in records:
        style = STATUS_STYLES.get(record.status, "white")
        duration = f"{record.duration_seconds:.0f}s" if record.duration_seconds is not None else "-"
        table.add_row(
            record.run_id,
            record.submitted_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(record.request.get("target_database", "")),
            ", ".join(record.request.get("schemas", [])),
            f"[{style}]{record.status.value}[/{style}]",
            duration,
        )

    console.print(table)


# DDL commands group
ddl_app = typer.Typer(help="DDL extraction and apply commands")
app.add_typer(ddl_app, name="ddl")


@ddl_app.command("split")
def ddl_split(
    dump_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="pg_dump --schema-only output"),
    schemas: List[str] = typer.Option(..., "--schema", "-s", help="Schema contained in the dump (repeatable)"),
    run_id: str = typer.Option("preview", "--run-id", help="Run id used for the schema suffix"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Write the documents here"),
    show_unclassified: bool = typer.Option(False, "--show-unclassified", help="Print unclassified statements"),
):
    """Classify a schema dump offline and report the pre/post-copy split."""
    from ..restore.ddl import DDLClassifier

    artifacts = DDLClassifier(run_id, schemas).classify(dump_file.read_text())
    stats = artifacts.stats()

    table = Table(title=f"DDL Classification ({dump_file.name})", show_header=True, header_style="bold cyan")
    table.add_column("Document")
    table.add_column("Statements", justify="right")
    table.add_row("pre-copy", str(stats["pre_copy"]))
    table.add_row("post-copy", str(stats["post_copy"]))
    table.add_row("complete", str(stats["complete"]))
    table.add_row("[yellow]unclassified (in post-copy)[/yellow]", str(stats["unclassified"]))
    console.print(table)

    if show_unclassified:
        for statement in artifacts.unclassified:
            console.print(Panel(statement, border_style="yellow"))

    if output_dir:
        output_dir.mkdir(parents=True, exist_ok=True)
        for kind, body in artifacts.documents().items():
            path = output_dir / f"{kind.value}.sql"
            path.write_text(body)
            console.print(f"✓ Wrote {path}", style="green")

    if not artifacts.declares_structure():
        console.print("✗ No schema or table found; is this a schema-only dump of those schemas?", style="bold red")
        raise typer.Exit(code=1)


@ddl_app.command("extract")
def ddl_extract():
    """Extraction task entrypoint (configured by environment variables)."""
    from ..restore.errors import RestoreError
    from ..restore.extractor import DDLExtractor
    from ..restore.tasks import TaskEnvironment, TaskKind

    cfg = _get_config()
    try:
        environment = TaskEnvironment.from_environ(TaskKind.EXTRACT)
        keys = DDLExtractor(environment, region=cfg.region, aws_profile=cfg.aws_profile).run()
    except RestoreError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception(f"Extraction failed: {e}")
        raise typer.Exit(code=1)

    for kind, key in keys.items():
        console.print(f"✓ {kind}: s3://{environment.s3_bucket}/{key}", style="green")


@ddl_app.command("apply")
def ddl_apply():
    """Apply task entrypoint (configured by environment variables)."""
    from ..restore.applier import DDLApplier
    from ..restore.errors import RestoreError
    from ..restore.tasks import TaskEnvironment, TaskKind

    cfg = _get_config()
    try:
        environment = TaskEnvironment.from_environ(TaskKind.APPLY)
        count = DDLApplier(environment, region=cfg.region, aws_profile=cfg.aws_profile).run()
    except RestoreError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception(f"Apply failed: {e}")
        raise typer.Exit(code=1)

    console.print(f"✓ Applied {count} statements", style="green")


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    cli_main()
