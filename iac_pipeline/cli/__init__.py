"""
Command Line Interface for the IaC pipeline service.
"""

from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..core.errors import ConfigurationError, PermissionInsufficient
from ..core.models import Artifact, SourceRef, TemplateError
from ..db.base import get_session_local, init_database
from ..db.services import ExecutionService
from ..deploy.credentials import required_operations
from ..gate import GateAggregator, verdict_stats
from ..logs import configure_logging
from ..pipeline_config import PipelineConfig, load_pipeline_config

app = typer.Typer(help="IaC Pipeline - continuous delivery for infrastructure templates")
executions_app = typer.Typer(help="Inspect recorded executions")
app.add_typer(executions_app, name="executions")
console = Console()

STATUS_STYLES = {
    "pass": "green",
    "fail": "red",
    "error": "yellow",
    "timeout": "yellow",
    "succeeded": "green",
    "failed": "red",
    "cancelled": "yellow",
}


def _load_config(config_path: Optional[Path]) -> PipelineConfig:
    path = config_path or Path(get_settings().pipeline_config_path)
    try:
        return load_pipeline_config(path)
    except ConfigurationError as e:
        console.print(f"[red]Invalid pipeline configuration:[/red] {e.message}")
        raise typer.Exit(code=2)


def _local_artifact(template: Path) -> Artifact:
    if not template.is_file():
        console.print(f"[red]Template not found:[/red] {template}")
        raise typer.Exit(code=2)
    return Artifact(
        body=template.read_bytes(),
        path=template.name,
        source=SourceRef(repository="local", branch="local", commit_sha="local"),
    )


def _styled(value: Optional[str]) -> str:
    if value is None:
        return "-"
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
):
    """Run the webhook and query API."""
    settings = get_settings()
    configure_logging(settings)
    rprint(Panel.fit("Starting IaC Pipeline", style="bold blue"))
    uvicorn.run(
        "iac_pipeline.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.debug,
    )


@app.command()
def validate(
    template: Path = typer.Argument(..., help="Template file to check"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline definition"),
):
    """Run the configured validators against a local template."""
    pipeline = _load_config(config)
    configure_logging(get_settings())
    artifact = _local_artifact(template)

    verdict = GateAggregator().evaluate(artifact, pipeline.validator_specs())

    table = Table(title=f"Gate: {template.name}", show_header=True, header_style="bold magenta")
    table.add_column("Validator", style="cyan")
    table.add_column("Policy")
    table.add_column("Status")
    table.add_column("Findings", justify="right")
    table.add_column("Duration", justify="right")
    for result in verdict.results:
        table.add_row(
            result.validator,
            result.policy.value,
            _styled(result.status.value),
            str(len(result.findings)),
            f"{result.duration_seconds:.1f}s",
        )
    console.print(table)

    for result in verdict.results:
        for finding in result.findings:
            location = f" ({finding.location})" if finding.location else ""
            text = escape(f"{finding.message}{location}")
            console.print(f"  {result.validator} {finding.severity.value}: {text}")

    stats = ", ".join(f"{k}={v}" for k, v in verdict_stats(verdict).items() if v)
    console.print(f"\nVerdict: {_styled(verdict.status.value)} ({stats})")
    if not verdict.passed:
        raise typer.Exit(code=1)


@app.command("check-permissions")
def check_permissions(
    template: Path = typer.Argument(..., help="Template file to check"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline definition"),
):
    """Check the deployment credential against a template's resource types."""
    pipeline = _load_config(config)
    artifact = _local_artifact(template)
    credential = pipeline.deployment_credential()

    try:
        required = required_operations(artifact)
    except TemplateError as e:
        error = PermissionInsufficient(credential.name, (), reason=str(e))
        console.print(f"[red]{escape(error.message)}[/red]")
        raise typer.Exit(code=1)
    missing = credential.missing(required)

    table = Table(title=f"Credential: {credential.name}", show_header=True)
    table.add_column("Operation", style="cyan")
    table.add_column("Granted")
    for operation in sorted(required):
        table.add_row(operation, "[red]no[/red]" if operation in missing else "[green]yes[/green]")
    console.print(table)

    if missing:
        error = PermissionInsufficient(credential.name, missing)
        console.print(f"[red]{error.message}[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Credential covers every required operation[/green]")


@executions_app.command("list")
def list_executions(
    repository: Optional[str] = typer.Option(None, help="Filter by repository"),
    branch: Optional[str] = typer.Option(None, help="Filter by branch"),
    commit: Optional[str] = typer.Option(None, help="Filter by commit SHA"),
    outcome: Optional[str] = typer.Option(None, help="Filter by outcome"),
    limit: int = typer.Option(20, help="Maximum rows"),
):
    """List recent executions."""
    db = get_session_local()()
    try:
        rows = ExecutionService(db).list_executions(
            repository=repository,
            branch=branch,
            commit_sha=commit,
            outcome=outcome,
            limit=limit,
        )
        table = Table(title="Executions", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="cyan")
        table.add_column("Kind")
        table.add_column("Source")
        table.add_column("State")
        table.add_column("Outcome")
        table.add_column("Created")
        for row in rows:
            table.add_row(
                row.id,
                row.kind,
                f"{row.repository}@{row.branch} {row.commit_sha[:8]}",
                row.state,
                _styled(row.outcome),
                row.created_at.isoformat() if row.created_at else "",
            )
        console.print(table)
    finally:
        db.close()


@executions_app.command("show")
def show_execution(execution_id: str = typer.Argument(..., help="Execution ID")):
    """Show one execution with its verdicts and audit trail."""
    db = get_session_local()()
    try:
        service = ExecutionService(db)
        row = service.get_execution(execution_id)
        if row is None:
            console.print(f"[red]Execution {execution_id} not found[/red]")
            raise typer.Exit(code=1)

        data = row.to_dict()
        lines = [
            f"Kind: {data['kind']}",
            f"Source: {row.repository}@{row.branch} {row.commit_sha}",
            f"Environment: {data['environment']}",
            f"State: {data['state']}",
            f"Outcome: {_styled(data['outcome'])}",
        ]
        if data["error_code"]:
            lines.append(f"Error: {data['error_code']}: {data['error_message']}")
        if data["retrigger_of"]:
            lines.append(f"Re-run of: {data['retrigger_of']}")
        rprint(Panel("\n".join(lines), title=f"Execution {execution_id}"))

        for stage, verdict in data["verdicts"].items():
            table = Table(title=f"Gate '{stage}': {verdict['status']}", show_header=True)
            table.add_column("Validator", style="cyan")
            table.add_column("Policy")
            table.add_column("Status")
            table.add_column("Findings", justify="right")
            for result in verdict["results"]:
                table.add_row(
                    result["validator"],
                    result["policy"],
                    _styled(result["status"]),
                    str(len(result["findings"])),
                )
            console.print(table)

        if data["deployment"]:
            deployment = data["deployment"]
            console.print(
                f"Deployment: {_styled(deployment['status'])} "
                f"({len(deployment['changes'])} changes) {deployment.get('message') or ''}"
            )

        history = Table(title="Audit trail", show_header=True)
        history.add_column("When")
        history.add_column("Actor")
        history.add_column("Action")
        history.add_column("Change")
        for entry in service.get_history(execution_id):
            before = entry["from_state"] or ""
            after = entry["to_state"] or ""
            history.add_row(
                entry["ts"] or "",
                f"{entry['actor_kind']}:{entry['actor_id']}",
                entry["action"],
                f"{before} -> {after}" if before or after else (entry["note"] or ""),
            )
        console.print(history)
    finally:
        db.close()


def _api_client(api_url: str) -> httpx.Client:
    return httpx.Client(base_url=api_url, timeout=10.0)


@app.command()
def retrigger(
    execution_id: str = typer.Argument(..., help="Finished execution to re-run"),
    api_url: str = typer.Option(
        "http://localhost:8000", "--api-url", help="Base URL of the running service"
    ),
):
    """Re-run a finished execution on the identical commit."""
    with _api_client(api_url) as client:
        try:
            response = client.post(f"/executions/{execution_id}/retrigger")
        except httpx.HTTPError as e:
            console.print(f"[red]Cannot reach {api_url}:[/red] {escape(str(e))}")
            raise typer.Exit(code=2)

    if response.status_code != 202:
        detail = response.json().get("detail", {})
        message = detail.get("error", {}).get("message") if isinstance(detail, dict) else detail
        console.print(
            f"[red]Retrigger failed ({response.status_code}):[/red] {escape(str(message))}"
        )
        raise typer.Exit(code=1)

    data = response.json()
    console.print(
        f"[green]Started execution {data['execution_id']}[/green] "
        f"(re-run of {data['retrigger_of']})"
    )


@app.command("init-db")
def init_db():
    """Create the database tables."""
    init_database()
    console.print("[green]Database initialized[/green]")


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    rprint(Panel.fit(f"IaC Pipeline v{__version__}", style="bold green"))


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
