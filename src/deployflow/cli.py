"""deployflow CLI.

Usage:
    deployflow plan spec.yaml                  # Preview changes (what-if)
    deployflow deploy spec.yaml                # Apply after confirmation
    deployflow deploy spec.yaml --auto-approve # Apply without prompting
    deployflow verify spec.yaml                # Assert nothing would change
    deployflow teardown spec.yaml              # Delete (asks for DELETE)
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .main import Command, RunOutcome, RunOptions, run, setup_logging
from .report import Severity, ValidationReport

SEVERITY_STYLE: dict[Severity, tuple[str, str]] = {
    Severity.PASS: ("✓", "green"),
    Severity.WARN: ("!", "yellow"),
    Severity.FAIL: ("✗", "red"),
}

MAX_CONCURRENCY_CHOICES = click.IntRange(1, 16)


def common_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command."""
    decorators = [
        click.argument(
            "spec", type=click.Path(exists=True, dir_okay=False, path_type=Path)
        ),
        click.option(
            "--subscription", "-s", envvar="AZURE_SUBSCRIPTION_ID", help="Azure subscription ID"
        ),
        click.option(
            "--credential",
            type=click.Choice(["managed_identity", "cli", "default"]),
            envvar="AZURE_CREDENTIAL_MODE",
            help="Credential source (default: managed_identity)",
        ),
        click.option(
            "--output",
            "-o",
            type=click.Choice(["text", "json"]),
            default="text",
            show_default=True,
            help="Report format",
        ),
        click.option(
            "--log-format",
            type=click.Choice(["json", "text"]),
            default="json",
            show_default=True,
            help="Log format (logs go to stderr)",
        ),
    ]
    for decorator in reversed(decorators):
        fn = decorator(fn)
    return fn


def render_report(report: ValidationReport) -> None:
    """Print a report with one colored line per entry."""
    click.echo(f"{report.title.upper()} REPORT")
    for entry in report.entries:
        symbol, color = SEVERITY_STYLE[entry.severity]
        click.secho(f"  {symbol} {entry.subject}: {entry.message}", fg=color)

    summary = ", ".join(
        f"{report.count(severity)} {severity.value}" for severity in Severity
    )
    symbol, color = SEVERITY_STYLE[report.status]
    click.secho(f"{symbol} {report.status.value.upper()} ({summary})", fg=color, bold=True)


def finish(outcome: RunOutcome, output: str) -> None:
    """Render the outcome and exit with its code."""
    if outcome.result is None:
        click.secho(f"Error: {outcome.error}", fg="red", err=True)
    elif output == "json":
        click.echo(json.dumps(outcome.result.to_dict(), indent=2))
    else:
        render_report(outcome.result.report)
    raise SystemExit(outcome.exit_code)


def run_and_exit(options: RunOptions, output: str, log_format: str) -> None:
    setup_logging(log_format)
    finish(run(options), output)


@click.group()
@click.version_option(version="0.1.0", prog_name="deployflow")
def cli() -> None:
    """Declarative, dependency-ordered Azure deployments.

    \b
    Quick Start:
        deployflow plan spec.yaml --credential cli
        deployflow deploy spec.yaml --credential cli
        deployflow verify spec.yaml --credential cli
    """
    pass


@cli.command()
@common_options
@click.option("--prune", "prune", multiple=True, metavar="KEY", help="Key to delete (repeatable)")
@click.option("--allow-delete", is_flag=True, help="Permit deletion of pruned keys")
def plan(
    spec: Path,
    subscription: str | None,
    credential: str | None,
    output: str,
    log_format: str,
    prune: tuple[str, ...],
    allow_delete: bool,
) -> None:
    """Validate and preview changes. Nothing is modified."""
    options = RunOptions(
        command=Command.PLAN,
        spec_path=spec,
        subscription_id=subscription,
        credential_mode=credential,
        prune=prune,
        allow_delete=allow_delete,
    )
    run_and_exit(options, output, log_format)


@cli.command()
@common_options
@click.option("--auto-approve", is_flag=True, help="Skip the confirmation prompt")
@click.option("--prune", "prune", multiple=True, metavar="KEY", help="Key to delete (repeatable)")
@click.option("--allow-delete", is_flag=True, help="Permit deletion of pruned keys")
@click.option(
    "--max-concurrency",
    type=MAX_CONCURRENCY_CHOICES,
    default=None,
    help="Independent resources applied at once (default: 1)",
)
def deploy(
    spec: Path,
    subscription: str | None,
    credential: str | None,
    output: str,
    log_format: str,
    auto_approve: bool,
    prune: tuple[str, ...],
    allow_delete: bool,
    max_concurrency: int | None,
) -> None:
    """Apply the spec in dependency order and wait for readiness.

    \b
    Examples:
        deployflow deploy spec.yaml
        deployflow deploy spec.yaml --auto-approve
        deployflow deploy spec.yaml --prune <resource-id> --allow-delete
    """
    options = RunOptions(
        command=Command.DEPLOY,
        spec_path=spec,
        subscription_id=subscription,
        credential_mode=credential,
        auto_approve=auto_approve,
        prune=prune,
        allow_delete=allow_delete,
        max_concurrency=max_concurrency,
    )
    run_and_exit(options, output, log_format)


@cli.command()
@common_options
def verify(
    spec: Path,
    subscription: str | None,
    credential: str | None,
    output: str,
    log_format: str,
) -> None:
    """Fail unless every resource is already in its desired state."""
    options = RunOptions(
        command=Command.VERIFY,
        spec_path=spec,
        subscription_id=subscription,
        credential_mode=credential,
    )
    run_and_exit(options, output, log_format)


@cli.command()
@common_options
@click.option(
    "--confirm-token",
    envvar="TEARDOWN_CONFIRM_TOKEN",
    help="Pre-supplied confirmation (must be DELETE)",
)
@click.option("--purge", is_flag=True, help="Purge soft-deleted key vaults")
def teardown(
    spec: Path,
    subscription: str | None,
    credential: str | None,
    output: str,
    log_format: str,
    confirm_token: str | None,
    purge: bool,
) -> None:
    """Delete every resource in the spec in reverse dependency order.

    \b
    Examples:
        deployflow teardown spec.yaml
        deployflow teardown spec.yaml --confirm-token DELETE --purge
    """
    options = RunOptions(
        command=Command.TEARDOWN,
        spec_path=spec,
        subscription_id=subscription,
        credential_mode=credential,
        confirm_token=confirm_token,
        purge=purge,
    )
    run_and_exit(options, output, log_format)


if __name__ == "__main__":
    cli()
