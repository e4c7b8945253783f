"""Container App provisioner CLI (acaprov).

Usage:
    acaprov validate -f deployment.yaml
    acaprov order -f deployment.yaml
    acaprov deploy -f deployment.yaml --client mypkg.clients:make_client
    acaprov verify -f deployment.yaml --probe mypkg.clients:make_probe

The control-plane client and verification probe are supplied as
``module:factory`` import paths (or CONTROL_PLANE_CLIENT for deploy).
"""

from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .dependency import DependencyError
from .main import EXIT_FAILED, EXIT_OK, deploy, load_client_factory, setup_logging
from .models import DeploymentSpec
from .polling import PollPolicy
from .reporting import render_summary
from .spec_loader import SpecLoadError, load_spec
from .topology import build_graph
from .verify import verify_deployment

DEFAULT_VERIFY_TIMEOUT_SECONDS = 120


def _load_config(spec_path: Path | None) -> Config:
    try:
        config = Config.from_env()
        if spec_path is not None:
            config = dataclasses.replace(config, spec_path=spec_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    return config


def _load_spec(config: Config) -> DeploymentSpec:
    try:
        return load_spec(config.spec_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def _resolve_factory(path: str, what: str) -> object:
    try:
        factory = load_client_factory(path)
        return factory()
    except (ImportError, AttributeError, TypeError) as e:
        raise click.ClickException(f"Cannot load {what} from '{path}': {e}") from e


spec_option = click.option(
    "-f",
    "--spec",
    "spec_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Deployment YAML (default: $DEPLOYMENT_SPEC or deployment.yaml).",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="acaprov")
def cli() -> None:
    """Provision a VNet-integrated Azure Container App with a private Azure Files mount.

    \b
    Every step is create-if-missing: re-running converges to the same state
    and resumes after a failed run.
    """
    pass


@cli.command()
@spec_option
def validate(spec_path: Path | None) -> None:
    """Validate the deployment file and its resource graph."""
    config = _load_config(spec_path)
    spec = _load_spec(config)
    try:
        graph = build_graph(spec)
    except DependencyError as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"✓ {config.spec_path}: {len(graph)} resources, no cycles", fg="green")


@cli.command()
@spec_option
def order(spec_path: Path | None) -> None:
    """Print the order in which resources are reconciled."""
    config = _load_config(spec_path)
    spec = _load_spec(config)
    try:
        nodes = build_graph(spec).topological_order()
    except DependencyError as e:
        raise click.ClickException(str(e)) from e

    width = max(len(node.id) for node in nodes)
    for position, node in enumerate(nodes, start=1):
        deps = ", ".join(node.depends_on) or "-"
        click.echo(f"{position:>3}. {node.id.ljust(width)}  {node.kind.value}/{node.name}  <- {deps}")


@cli.command(name="deploy")
@spec_option
@click.option(
    "--client",
    "client_path",
    default=None,
    help="module:factory returning a control-plane client (default: $CONTROL_PLANE_CLIENT).",
)
def deploy_command(spec_path: Path | None, client_path: str | None) -> None:
    """Reconcile every resource; safe to re-run after a failure."""
    config = _load_config(spec_path)
    setup_logging(config.log_format, config.log_level)

    factory_path = client_path or config.client_factory
    if not factory_path:
        raise click.ClickException(
            "No control-plane client configured. Pass --client or set CONTROL_PLANE_CLIENT."
        )
    client = _resolve_factory(factory_path, "control-plane client")

    exit_code, result = deploy(config, client)  # type: ignore[arg-type]
    if result is not None:
        click.echo(render_summary(result))
    elif exit_code != EXIT_OK:
        click.secho("Deployment did not start; see log output.", fg="red", err=True)
    sys.exit(exit_code)


@cli.command(name="verify")
@spec_option
@click.option("--probe", "probe_path", required=True, help="module:factory returning a probe.")
@click.option(
    "--timeout",
    type=click.IntRange(0, 3600),
    default=DEFAULT_VERIFY_TIMEOUT_SECONDS,
    show_default=True,
    help="Seconds to wait for the mount to appear.",
)
def verify_command(spec_path: Path | None, probe_path: str, timeout: int) -> None:
    """Run smoke checks inside the deployed app."""
    config = _load_config(spec_path)
    setup_logging(config.log_format, config.log_level)
    spec = _load_spec(config)
    probe = _resolve_factory(probe_path, "verification probe")

    policy = PollPolicy(
        timeout_seconds=timeout,
        interval_seconds=config.poll_interval_seconds,
        max_interval_seconds=config.max_poll_interval_seconds,
    )
    report = verify_deployment(probe, spec, policy=policy)  # type: ignore[arg-type]
    for check in report.checks:
        mark = click.style("✓", fg="green") if check.passed else click.style("✗", fg="red")
        click.echo(f"  {mark} {check.name}: {check.detail}")
    sys.exit(EXIT_OK if report.passed else EXIT_FAILED)


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
