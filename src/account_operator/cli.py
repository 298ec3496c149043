"""AWS Account Operator CLI (aoctl).

Operational commands against a directory of resource manifests.

Usage:
    aoctl check ./manifests           # Validate every manifest
    aoctl status ./manifests          # Show the state of every resource
    aoctl reconcile --once            # Run one reconciliation pass
    aoctl run                         # Run the operator until stopped
"""

from __future__ import annotations

import asyncio
from collections import Counter
from pathlib import Path

import click

from .config import DEFAULT_RECONCILE_INTERVAL_SECONDS, Config, ConfigurationError
from .manager import OperatorManager
from .models import KIND_REGISTRY, Resource, Secret
from .store import ManifestError, ManifestStore

STATUS_COLUMNS = ("KIND", "NAMESPACE", "NAME", "STATE", "DETAIL")


def load_store(manifests_dir: Path, strict: bool = False) -> ManifestStore:
    """Load a manifest store, turning load failures into CLI errors."""
    try:
        return ManifestStore(manifests_dir, strict=strict)
    except ManifestError as e:
        raise click.ClickException(str(e)) from e


def resource_state(resource: Resource) -> str:
    status = getattr(resource, "status", None)
    state = getattr(status, "state", None)
    if state is None:
        return "-"
    return str(getattr(state, "value", state))


def resource_detail(resource: Resource) -> str:
    """Most recent condition message, or the console link of an access request."""
    status = getattr(resource, "status", None)
    if status is None:
        return ""
    console_url = getattr(status, "console_url", "")
    if console_url:
        return console_url
    conditions = getattr(status, "conditions", [])
    if not conditions:
        return ""
    latest = max(
        conditions,
        key=lambda c: c.last_transition_time.timestamp() if c.last_transition_time else 0.0,
    )
    return f"{latest.type}: {latest.message}" if latest.message else latest.type


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="aoctl")
def cli() -> None:
    """AWS Account Operator CLI (aoctl).

    Inspect and reconcile Account, AWSFederatedRole and
    AWSFederatedAccountAccess manifests.

    \b
    Quick Start:
        aoctl check ./manifests
        aoctl reconcile --once --manifests-dir ./manifests --dry-run
    """
    pass


@cli.command()
@click.argument("manifests_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def check(manifests_dir: Path) -> None:
    """Load and validate every manifest in MANIFESTS_DIR."""
    store = load_store(manifests_dir)

    counts: Counter[str] = Counter()
    for kind in KIND_REGISTRY:
        counts[kind] = len(store.list(kind))

    for kind, count in counts.items():
        if count:
            click.echo(f"  {kind}: {count}")

    if store.load_errors:
        for error in store.load_errors:
            click.secho(f"✗ {error}", fg="red", err=True)
        raise click.ClickException(f"{len(store.load_errors)} invalid manifest(s)")

    click.secho(f"✓ {sum(counts.values())} resources valid", fg="green")


@cli.command()
@click.argument("manifests_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--kind", "-k", type=click.Choice(list(KIND_REGISTRY)), help="Only show one kind")
def status(manifests_dir: Path, kind: str | None) -> None:
    """Print the state of every resource in MANIFESTS_DIR."""
    store = load_store(manifests_dir)

    rows: list[tuple[str, ...]] = []
    for resource_kind in KIND_REGISTRY:
        if resource_kind == Secret.KIND or (kind and resource_kind != kind):
            continue
        for resource in store.list(resource_kind):
            rows.append(
                (
                    resource.kind,
                    resource.namespace,
                    resource.name,
                    resource_state(resource),
                    resource_detail(resource),
                )
            )

    if not rows:
        click.echo("No resources found")
        return

    widths = [
        max(len(row[i]) for row in [STATUS_COLUMNS, *rows]) for i in range(len(STATUS_COLUMNS))
    ]
    for row in [STATUS_COLUMNS, *rows]:
        click.echo("  ".join(value.ljust(width) for value, width in zip(row, widths)).rstrip())


@cli.command()
@click.option(
    "--manifests-dir",
    "-m",
    envvar="MANIFESTS_DIR",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Manifests directory",
)
@click.option(
    "--config-file",
    "-c",
    envvar="OPERATOR_CONFIG_FILE",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Operator ConfigMap YAML",
)
@click.option("--region", "-r", envvar="AWS_REGION", help="Override the AWS region")
@click.option("--dry-run/--no-dry-run", default=True, help="Dry run mode (default: true)")
@click.option("--once/--loop", default=True, help="Run a single pass (default) or loop")
@click.option(
    "--interval",
    type=int,
    default=DEFAULT_RECONCILE_INTERVAL_SECONDS,
    help="Seconds between passes when looping",
)
def reconcile(
    manifests_dir: Path,
    config_file: Path | None,
    region: str | None,
    dry_run: bool,
    once: bool,
    interval: int,
) -> None:
    """Reconcile the manifests in a directory against AWS.

    \b
    Examples:
        aoctl reconcile --once -m ./manifests
        aoctl reconcile --loop --no-dry-run -m ./manifests
    """
    try:
        config = Config(
            manifests_dir=manifests_dir,
            operator_config_file=config_file,
            reconcile_interval_seconds=interval,
            region=region or None,
            dry_run=dry_run,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    store = load_store(manifests_dir)
    manager = OperatorManager(config, store)

    click.echo(f"Reconciling {manifests_dir} (dry run: {dry_run})...")
    if not once:
        asyncio.run(manager.run())
        return

    try:
        results = asyncio.run(manager.run_once())
    except (ConfigurationError, ManifestError) as e:
        raise click.ClickException(str(e)) from e

    failed = [result for result in results if not result.success]
    for result in failed:
        message = f"✗ {result.kind} {result.namespace}/{result.name}: {result.error}"
        click.secho(message, fg="red", err=True)
    if failed:
        raise click.ClickException(f"{len(failed)} of {len(results)} reconciliations failed")
    click.secho(f"✓ {len(results)} reconciliations succeeded", fg="green")


@cli.command()
def run() -> None:
    """Run the operator with configuration from the environment."""
    from .main import run as run_operator

    run_operator()


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
