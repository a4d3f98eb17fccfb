"""
CLI interface for AI Key Guard.

Provides command-line access to monitoring, budget checks, rotation and
credential management.
"""

import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_key_guard.clients.base import DeploymentTarget, NotificationChannel
from ai_key_guard.clients.notify import SLACK_WEBHOOK_ENV, LogChannel, SlackWebhookChannel
from ai_key_guard.clients.openrouter import OpenRouterIssuer
from ai_key_guard.clients.targets import EnvFileTarget, GitHubSecretTarget, VercelEnvTarget
from ai_key_guard.config.loader import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONFIG_YAML,
    KeyGuardConfig,
    load_config,
)
from ai_key_guard.core.aggregator import UsageAggregator
from ai_key_guard.core.anomaly import AnomalyDetector
from ai_key_guard.core.budget import BudgetMonitor
from ai_key_guard.core.errors import KeyGuardError
from ai_key_guard.core.pipeline import (
    EXIT_CODE_FAIL,
    EXIT_CODE_PASS,
    run_budget_pass,
    run_monitoring_pass,
    run_rotation,
)
from ai_key_guard.core.reporting import ReportPublisher
from ai_key_guard.core.rotation import RotationOrchestrator
from ai_key_guard.sdk.openai_client import build_probe
from ai_key_guard.storage.models import RiskLevel, Severity, TargetStatus
from ai_key_guard.storage.repository import (
    RotationJobRepository,
    WatermarkRepository,
    initialize_schema,
)

app = typer.Typer(help="Protect shared inference API credentials from abuse, leakage and overspend.")
keys_app = typer.Typer(help="Manage credentials at the issuing service.")
app.add_typer(keys_app, name="keys")
console = Console()

LEVEL_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}

SEVERITY_STYLES = {
    Severity.LOW: "dim",
    Severity.MEDIUM: "yellow",
    Severity.HIGH: "red",
}

TARGET_STYLES = {
    TargetStatus.VERIFIED: "green",
    TargetStatus.REVERTED: "yellow",
    TargetStatus.FAILED: "red",
}

config_option = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to the YAML configuration")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Load secrets from this .env file"),
):
    """AI Key Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    load_dotenv(env_file or find_dotenv(usecwd=True))
    if ctx.invoked_subcommand is None:
        console.print("AI Key Guard - Use --help to see available commands")


def _load(config_path: str) -> KeyGuardConfig:
    try:
        return load_config(config_path)
    except KeyGuardError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _build_issuer(config: KeyGuardConfig) -> OpenRouterIssuer:
    return OpenRouterIssuer(base_url=config.aggregator.base_url, timeout=config.aggregator.timeout_seconds)


def _build_channel(config: KeyGuardConfig, notify: bool) -> Optional[NotificationChannel]:
    if not notify:
        return None
    if os.environ.get(SLACK_WEBHOOK_ENV):
        return SlackWebhookChannel(timeout=config.notification.timeout_seconds)
    return LogChannel()


def _build_publisher(config: KeyGuardConfig, notify: bool) -> ReportPublisher:
    return ReportPublisher(
        config.storage.report_dir,
        channel=_build_channel(config, notify),
        max_attempts=config.notification.max_attempts,
        backoff_base_seconds=config.notification.backoff_base_seconds,
    )


def _build_aggregator(config: KeyGuardConfig, issuer: OpenRouterIssuer) -> UsageAggregator:
    return UsageAggregator(
        issuer,
        max_concurrency=config.aggregator.max_concurrency,
        cache_ttl_seconds=config.aggregator.cache_ttl_seconds,
    )


@app.command()
def init(config_path: str = config_option):
    """Write a starter configuration (if missing) and initialize the database."""
    path = Path(config_path)
    if not path.exists():
        path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
        console.print(f"[green]✓[/] Wrote starter configuration to {path}")

    config = _load(config_path)
    try:
        initialize_schema(config.storage.db_path)
        Path(config.storage.report_dir).mkdir(parents=True, exist_ok=True)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Database initialized successfully")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def monitor(
    config_path: str = config_option,
    keys: Optional[List[str]] = typer.Option(None, "--key", "-k", help="Only check these credential ids"),
    notify: bool = typer.Option(True, "--notify/--no-notify", help="Push the summary to the notification channel"),
):
    """
    Run one monitoring pass over the credential fleet.

    Exits non-zero when a HIGH severity finding is present or usage data
    could not be fetched for some credential.
    """
    config = _load(config_path)
    try:
        issuer = _build_issuer(config)
        result = run_monitoring_pass(
            _build_aggregator(config, issuer),
            AnomalyDetector(config.detection),
            _build_publisher(config, notify),
            db_path=config.storage.db_path,
            credential_ids=keys or None,
        )
    except KeyGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_monitoring_result(result)
    sys.exit(result.exit_code)


@app.command()
def budget(
    config_path: str = config_option,
    keys: Optional[List[str]] = typer.Option(None, "--key", "-k", help="Only check these credential ids"),
    notify: bool = typer.Option(True, "--notify/--no-notify", help="Push new alerts to the notification channel"),
):
    """Check daily and monthly spend against the configured budgets."""
    config = _load(config_path)
    try:
        issuer = _build_issuer(config)
        initialize_schema(config.storage.db_path)
        result = run_budget_pass(
            _build_aggregator(config, issuer),
            BudgetMonitor(config.budget.budgets(), WatermarkRepository(config.storage.db_path)),
            _build_publisher(config, notify),
            db_path=config.storage.db_path,
            credential_ids=keys or None,
        )
    except KeyGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.alerts:
        console.print("[green]✓[/] No new budget alerts")
    for alert in result.alerts:
        style = "red" if alert.is_critical else "yellow"
        console.print(f"[{style}]{alert.kind.value.upper()}[/] {alert.message}")
    if result.source_error:
        console.print(f"[red]Usage source failed:[/] {result.source_error}")
    console.print(f"\nReport: {result.report_path}")
    sys.exit(result.exit_code)


@app.command()
def rotate(
    credential_id: str = typer.Argument(..., help="Id of the credential to replace"),
    config_path: str = config_option,
    env_targets: Optional[List[str]] = typer.Option(
        None, "--env-target", help="Dotenv file to update (repeatable)"
    ),
    vercel_projects: Optional[List[str]] = typer.Option(
        None, "--vercel-project", help="Vercel project id to update (repeatable)"
    ),
    vercel_team: Optional[str] = typer.Option(None, "--vercel-team", help="Vercel team id"),
    github_repos: Optional[List[str]] = typer.Option(
        None, "--github-repo", help="GitHub repository (owner/name) whose Actions secret to update (repeatable)"
    ),
    github_current_env: Optional[str] = typer.Option(
        None, "--github-current-env",
        help="Environment variable holding the secret's current value (defaults to --variable)",
    ),
    variable: str = typer.Option("OPENROUTER_API_KEY", "--variable", help="Variable holding the credential"),
    name: Optional[str] = typer.Option(None, "--name", help="Name for the new credential"),
    retire_old: bool = typer.Option(False, "--retire-old", help="Delete the old credential after success"),
    notify: bool = typer.Option(True, "--notify/--no-notify", help="Push the outcome to the notification channel"),
):
    """
    Rotate a credential across its deployment targets.

    The new credential is propagated to every target and read back. Any
    target that cannot be brought over rolls every target back.
    """
    config = _load(config_path)
    try:
        targets: List[DeploymentTarget] = [
            EnvFileTarget(f"env:{path}", path, variable=variable) for path in env_targets or []
        ]
        targets.extend(
            VercelEnvTarget(
                f"vercel:{project}",
                project,
                variable=variable,
                team_id=vercel_team,
                timeout=config.rotation.timeout_seconds,
            )
            for project in vercel_projects or []
        )
        current_secret = os.environ.get(github_current_env or variable)
        targets.extend(
            GitHubSecretTarget(
                f"github:{repo}",
                repo,
                secret_name=variable,
                current_value=current_secret,
                timeout=config.rotation.timeout_seconds,
            )
            for repo in github_repos or []
        )
        if not targets:
            console.print(
                "[red]Error:[/] at least one --env-target, --vercel-project or --github-repo is required"
            )
            sys.exit(EXIT_CODE_FAIL)

        initialize_schema(config.storage.db_path)
        probe = None
        if config.rotation.smoke_test:
            probe = build_probe(
                config.rotation.smoke_test_model,
                config.aggregator.base_url,
                config.rotation.timeout_seconds,
            )
        orchestrator = RotationOrchestrator(
            _build_issuer(config),
            RotationJobRepository(config.storage.db_path),
            config.rotation,
            probe=probe,
        )
        result = run_rotation(
            orchestrator,
            _build_publisher(config, notify),
            credential_id,
            targets,
            db_path=config.storage.db_path,
            name=name,
            retire_old=retire_old,
        )
    except KeyGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_rotation_result(result)
    sys.exit(result.exit_code)


@keys_app.command("list")
def list_keys(config_path: str = config_option):
    """List credentials known to the issuing service."""
    config = _load(config_path)
    try:
        credentials = _build_issuer(config).list_credentials()
    except KeyGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Credentials ({len(credentials)})")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Label")
    table.add_column("Limit", justify="right")
    table.add_column("Status")
    table.add_column("Created")
    for credential in credentials:
        table.add_row(
            credential.id,
            credential.name,
            credential.label,
            _format_currency(credential.limit) if credential.limit else "-",
            "[red]disabled[/]" if credential.disabled else "[green]active[/]",
            credential.created_at.date().isoformat(),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@keys_app.command("create")
def create_key(
    name: str = typer.Argument(..., help="Name of the new credential"),
    limit: Optional[float] = typer.Option(None, "--limit", help="Spending limit for the credential"),
    config_path: str = config_option,
):
    """Create a credential. Its value is shown once."""
    config = _load(config_path)
    try:
        issued = _build_issuer(config).create_credential(name, limit)
    except KeyGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Created credential {issued.credential.id} ({issued.credential.name})")
    console.print("[yellow]Store this value now; it cannot be retrieved again:[/]")
    console.print(issued.value, soft_wrap=True)
    sys.exit(EXIT_CODE_PASS)


@keys_app.command("delete")
def delete_key(
    credential_id: str = typer.Argument(..., help="Id of the credential to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config_path: str = config_option,
):
    """Delete a credential at the issuing service."""
    config = _load(config_path)
    if not yes and not typer.confirm(f"Delete credential {credential_id}?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_FAIL)
    try:
        deleted = _build_issuer(config).delete_credential(credential_id)
    except KeyGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if deleted:
        console.print(f"[green]✓[/] Deleted credential {credential_id}")
    else:
        console.print(f"[yellow]Credential {credential_id} did not exist[/]")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_monitoring_result(result):
    """Display a monitoring pass in a compact report format."""
    assessment = result.assessment
    style = LEVEL_STYLES[assessment.level]

    console.print("\n[bold]Credential Security Report[/bold]")
    console.print("-" * 40)
    console.print(f"Credentials checked: {len({s.credential_id for s in result.snapshots})}")
    console.print(f"Anomalies detected: {len(assessment.findings)}")
    console.print(f"Risk score: [{style}]{assessment.score} ({assessment.level.value})[/]")

    if result.source_error:
        console.print(f"\n[red]Usage source failed:[/] {result.source_error}")
    for snapshot in result.unavailable:
        console.print(f"[yellow]Data unavailable:[/] {snapshot.credential_id} ({snapshot.error})")

    if assessment.findings:
        table = Table(title="Findings")
        table.add_column("Severity")
        table.add_column("Type")
        table.add_column("Credential")
        table.add_column("Description")
        for finding in assessment.findings:
            sev_style = SEVERITY_STYLES[finding.severity]
            table.add_row(
                f"[{sev_style}]{finding.severity.value}[/]",
                finding.type.value,
                finding.credential_id,
                finding.description,
            )
        console.print(table)

    console.print(f"\nReport: {result.report_path}")


def _display_rotation_result(result):
    job = result.job
    console.print(f"\n[bold]Rotation {job.id}[/bold]: {job.state.value}")
    console.print(f"Old credential: {job.old_credential_id}")
    console.print(f"New credential: {job.new_credential_id or '-'}")
    for target_id, status in sorted(job.target_status.items()):
        style = TARGET_STYLES.get(status, "white")
        error = job.target_errors.get(target_id)
        console.print(f"  [{style}]{status.value:>8}[/] {target_id}" + (f" ({error})" if error else ""))
    if job.error:
        console.print(f"[red]Error:[/] {job.error}")
    if job.old_retired:
        console.print(f"[green]✓[/] Retired {job.old_credential_id}")
    console.print(f"\nReport: {result.report_path}")


if __name__ == "__main__":
    app()
