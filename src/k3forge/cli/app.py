# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/cli/app.py
from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Optional, Tuple

import typer

from k3forge.cloud.hetzner import HetznerCloudClient
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.cluster.create import Creator
from k3forge.cluster.delete import Deleter
from k3forge.cluster.k3s import fetch_releases
from k3forge.cluster.run import Runner
from k3forge.cluster.upgrade import Upgrader
from k3forge.config.loader import check_cloud_access, load_config
from k3forge.config.models import ClusterSpec
from k3forge.errors import K3ForgeError
from k3forge.logging.log import init_logging
from k3forge.observers.dispatcher import EventBus
from k3forge.observers.logger import LoggerObserver
from k3forge.utils.ssh import RemoteExecutor


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="k3forge: k3s clusters on Hetzner Cloud")

CONFIG_OPTION = typer.Option(..., "--config", "-c", help="Cluster configuration YAML")
DEBUG_OPTION = typer.Option(False, "--debug", help="Show debug output on the console")


def _version() -> str:
    try:
        return package_version("k3forge")
    except PackageNotFoundError:
        return "unknown"


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _start(command: str, debug: bool) -> Tuple[EventBus, str]:
    logger, run_id, log_path = init_logging(verbose=debug)

    typer.echo("")
    typer.secho(f"k3forge {command}", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    return EventBus(observers=[LoggerObserver(logger)]), run_id


def _load(config: Path, *, need_ssh: bool = True) -> ClusterSpec:
    spec = load_config(config)
    check_cloud_access(spec, need_ssh=need_ssh)
    return spec


def _provisioner(spec: ClusterSpec) -> ResourceProvisioner:
    return ResourceProvisioner(HetznerCloudClient(spec.hetzner_token, application_version=_version()))


def _executor(spec: ClusterSpec) -> RemoteExecutor:
    ssh = spec.networking.ssh
    return RemoteExecutor(
        None if ssh.use_agent else ssh.expanded_private_key_path,
        user=ssh.user,
    )


def _fail(exc: Exception) -> None:
    typer.secho(f"\nError: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def create(
    config: Path = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Create (or complete) the cluster described by the config file."""
    bus, run_id = _start("create", debug)
    try:
        spec = _load(config)
        for warning in spec.warnings():
            typer.secho(f"Warning: {warning}", fg=typer.colors.YELLOW)
        result = Creator(spec, _provisioner(spec), _executor(spec), bus=bus, run_id=run_id).run()
    except K3ForgeError as exc:
        _fail(exc)

    typer.secho(f"\nCluster {spec.cluster_name} created", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  Masters    : {', '.join(m.name for m in result.masters)}")
    typer.echo(f"  Workers    : {', '.join(w.name for w in result.workers) or '-'}")
    if result.api_load_balancer:
        typer.echo(f"  API LB     : {result.api_load_balancer.public_ipv4}")
    if result.global_load_balancer:
        typer.echo(f"  Global LB  : {result.global_load_balancer.public_ipv4}")
    typer.echo(f"  Kubeconfig : {result.kubeconfig_path}")


@app.command()
def delete(
    config: Path = CONFIG_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        help="Skip the cluster name confirmation (protect_against_deletion still refuses)",
    ),
    debug: bool = DEBUG_OPTION,
):
    """Delete every resource that belongs to the cluster.

    A cluster with protect_against_deletion set is refused, with or without --force.
    """
    bus, run_id = _start("delete", debug)
    try:
        spec = _load(config, need_ssh=False)
        Deleter(spec, _provisioner(spec), force=force, prompt=typer.prompt, bus=bus, run_id=run_id).run()
    except K3ForgeError as exc:
        _fail(exc)
    typer.secho(f"\nCluster {spec.cluster_name} deleted", fg=typer.colors.GREEN, bold=True)


@app.command()
def upgrade(
    config: Path = CONFIG_OPTION,
    new_k3s_version: str = typer.Option(..., "--new-k3s-version", help="Target k3s version, e.g. v1.32.1+k3s1"),
    force: bool = typer.Option(False, "--force", help="Required: the upgrade restarts every node"),
    debug: bool = DEBUG_OPTION,
):
    """Upgrade k3s on every node through the system upgrade controller."""
    bus, run_id = _start("upgrade", debug)
    try:
        spec = _load(config)
        Upgrader(
            spec, _provisioner(spec), _executor(spec), new_k3s_version, force=force, bus=bus, run_id=run_id
        ).run()
    except K3ForgeError as exc:
        _fail(exc)
    typer.secho(f"\nCluster {spec.cluster_name} upgraded to {new_k3s_version}", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"Update k3s_version in {config} to keep it in sync")


@app.command()
def run(
    config: Path = CONFIG_OPTION,
    command: Optional[str] = typer.Option(None, "--command", help="Command to run on the nodes"),
    script: Optional[Path] = typer.Option(None, "--script", help="Script file to upload and run"),
    instance: Optional[str] = typer.Option(None, "--instance", help="Only run on this server"),
    debug: bool = DEBUG_OPTION,
):
    """Run a command or a script on the cluster nodes."""
    if bool(command) == bool(script):
        raise typer.BadParameter("pass exactly one of --command or --script")

    bus, run_id = _start("run", debug)
    try:
        spec = _load(config)
        Runner(
            spec,
            _provisioner(spec),
            _executor(spec),
            command=command,
            script=script,
            instance=instance,
            prompt=typer.prompt,
            bus=bus,
            run_id=run_id,
        ).run()
    except K3ForgeError as exc:
        _fail(exc)


@app.command()
def releases(
    debug: bool = DEBUG_OPTION,
):
    """List available k3s releases, oldest first."""
    init_logging(verbose=debug)
    try:
        names = fetch_releases()
    except K3ForgeError as exc:
        _fail(exc)
    for name in names:
        typer.echo(name)


@app.command()
def version():
    """Print the k3forge version."""
    typer.echo(_version())


if __name__ == "__main__":
    app()
