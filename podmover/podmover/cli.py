"""podmover CLI - move pods to a chosen node without the scheduler."""

import json
import sys
import time
from typing import Any, Dict, Optional

import click
from kubernetes.client.rest import ApiException

from podmover.cluster import load_kube_clients
from podmover.config import MoverSettings, load_settings
from podmover.errors import (
    EXIT_NO_MUTATION,
    EXIT_OK,
    EXIT_UNHEALTHY,
    ConfigurationError,
    PodMoverError,
)
from podmover.log import setup_logging
from podmover.move import PodMover
from podmover.move.pods import get_pod, parse_parent_info
from podmover.scheduler import new_scheduler_accessor


def _load_settings_or_exit(ctx: click.Context, overrides: Dict[str, Any]) -> MoverSettings:
    """Merge config file, environment and CLI options; exit 1 if invalid."""
    try:
        settings = load_settings(ctx.obj.get("config"), overrides)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_NO_MUTATION)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        for error in e.errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(EXIT_NO_MUTATION)

    if ctx.obj.get("log_level") is None:
        setup_logging(settings.log_level)
    return settings


def _clients_or_exit(settings: MoverSettings):
    try:
        return load_kube_clients(settings.master_url, settings.kubeconfig)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_NO_MUTATION)


def _cluster_options(func):
    """Options selecting the cluster and its API generation."""
    func = click.option(
        "--kubeconfig", default=None, type=click.Path(),
        help="Path to the kubeconfig file",
    )(func)
    func = click.option(
        "--master-url", default=None,
        help="Kubernetes API server address (overrides the kubeconfig server)",
    )(func)
    func = click.option(
        "--k8s-version", default=None,
        help="Kubernetes version, e.g. 1.5 or 1.6 (selects how the scheduler name is stored)",
    )(func)
    return func


@click.group()
@click.version_option()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (default: from config, else INFO)",
)
@click.option(
    "--config", "-c", "config_path", default=None, type=click.Path(),
    help="PodMoverConfig YAML file",
)
@click.pass_context
def main(ctx: click.Context, log_level: Optional[str], config_path: Optional[str]):
    """podmover - move Kubernetes pods to a chosen node.

    A pod owned by a ReplicationController or ReplicaSet is moved by
    pointing its controller at a non-existent scheduler, recreating the pod
    on the destination node and restoring the scheduler afterwards.

    \b
    Exit codes:
      0  all pods moved and healthy
      1  nothing was changed (bad input, already on node, lock timeout)
      2  the move failed, the controller's scheduler was restored
      3  the move failed and the scheduler could not be restored
      4  the pod moved but is not Running on the destination node
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    ctx.obj["config"] = config_path
    setup_logging(log_level)


# ─────────────────────────────────────────────────────────────
# Move
# ─────────────────────────────────────────────────────────────


@main.command()
@click.option("--namespace", "-n", default=None, help="Namespace of the pods")
@click.option("--pods", "-p", default=None, help="Comma-separated list of pod names")
@click.option("--node", "-N", "node", required=True, help="Destination node")
@click.option(
    "--scheduler-name", default=None,
    help="Non-existent scheduler used while moving (default: turbo-none-exist-scheduler)",
)
@_cluster_options
@click.option(
    "--health-delay", default=None, type=float,
    help="Seconds to wait before checking the moved pods",
)
@click.option("--no-health-check", is_flag=True, help="Skip the post-move health check")
@click.option("--json", "json_output", is_flag=True, help="Output results as JSON")
@click.pass_context
def move(
    ctx: click.Context,
    namespace: Optional[str],
    pods: Optional[str],
    node: str,
    scheduler_name: Optional[str],
    k8s_version: Optional[str],
    master_url: Optional[str],
    kubeconfig: Optional[str],
    health_delay: Optional[float],
    no_health_check: bool,
    json_output: bool,
):
    """Move pods to NODE.

    All pods are moved concurrently. Pods sharing a controller are moved
    one after another.

    \b
    Examples:
      podmover move -n default -p web-5d8f-x7k2p -N node-2
      podmover move -p web-1,web-2 -N node-3 --k8s-version 1.5
    """
    pod_list = [p.strip() for p in pods.split(",") if p.strip()] if pods else None
    settings = _load_settings_or_exit(ctx, {
        "namespace": namespace,
        "pods": pod_list,
        "nodeName": node,
        "schedulerName": scheduler_name,
        "k8sVersion": k8s_version,
        "masterUrl": master_url,
        "kubeconfig": kubeconfig,
        "healthCheckDelay": health_delay,
    })

    if not settings.pods:
        click.echo("Error: no pods given (use --pods or set pods in the config)", err=True)
        sys.exit(EXIT_NO_MUTATION)
    if not settings.node_name:
        click.echo("Error: destination node must not be empty", err=True)
        sys.exit(EXIT_NO_MUTATION)

    core_api, apps_api = _clients_or_exit(settings)

    if not json_output:
        click.echo(
            f"Moving {len(settings.pods)} pod(s) in {settings.namespace} "
            f"to node {settings.node_name}"
        )

    with PodMover(core_api, apps_api, settings) as mover:
        results = mover.move_many(settings.namespace, settings.pods, settings.node_name)

        moved = [r for r in results if r.ok]
        if moved and not no_health_check:
            if settings.health_check_delay > 0:
                if not json_output:
                    click.echo(f"Waiting {settings.health_check_delay:.0f}s before health check...")
                time.sleep(settings.health_check_delay)

            for result in moved:
                name = result.new_pod.metadata.name
                try:
                    mover.check_health(settings.namespace, name, settings.node_name)
                except PodMoverError as e:
                    result.ok = False
                    result.error = e
                    result.exit_code = EXIT_UNHEALTHY

    exit_code = max((r.exit_code for r in results), default=EXIT_OK)

    if json_output:
        click.echo(json.dumps({
            "node": settings.node_name,
            "exitCode": exit_code,
            "results": [r.to_dict() for r in results],
        }, indent=2))
    else:
        click.echo("")
        for result in results:
            if result.ok:
                click.echo(f"  OK      {result.pod}")
            else:
                click.echo(f"  FAILED  {result.pod}: {result.error} (exit {result.exit_code})")
        ok_count = sum(1 for r in results if r.ok)
        click.echo(f"\n{ok_count}/{len(results)} pod(s) moved to {settings.node_name}")

    sys.exit(exit_code)


# ─────────────────────────────────────────────────────────────
# Diagnostics
# ─────────────────────────────────────────────────────────────


@main.command()
@click.argument("namespace")
@click.argument("pod")
@_cluster_options
@click.pass_context
def owner(
    ctx: click.Context,
    namespace: str,
    pod: str,
    k8s_version: Optional[str],
    master_url: Optional[str],
    kubeconfig: Optional[str],
):
    """Show the controller that owns POD."""
    settings = _load_settings_or_exit(ctx, {
        "k8sVersion": k8s_version,
        "masterUrl": master_url,
        "kubeconfig": kubeconfig,
    })
    core_api, _ = _clients_or_exit(settings)

    try:
        kind, name = parse_parent_info(get_pod(core_api, namespace, pod))
    except PodMoverError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_NO_MUTATION)

    if not name:
        click.echo(f"{namespace}/{pod}: no owner (standalone pod)")
    else:
        click.echo(f"{namespace}/{pod}: {kind}/{name}")


@main.command()
@click.argument("namespace")
@click.argument("kind", type=click.Choice(["ReplicationController", "ReplicaSet"]))
@click.argument("name")
@_cluster_options
@click.pass_context
def scheduler(
    ctx: click.Context,
    namespace: str,
    kind: str,
    name: str,
    k8s_version: Optional[str],
    master_url: Optional[str],
    kubeconfig: Optional[str],
):
    """Show the scheduler name of a ReplicationController or ReplicaSet."""
    settings = _load_settings_or_exit(ctx, {
        "k8sVersion": k8s_version,
        "masterUrl": master_url,
        "kubeconfig": kubeconfig,
    })
    core_api, apps_api = _clients_or_exit(settings)

    accessor = new_scheduler_accessor(
        core_api, apps_api, kind, namespace, name, modern=settings.modern_api
    )
    try:
        current = accessor.get()
    except ApiException as e:
        click.echo(f"Error reading {kind} {namespace}/{name}: {e.reason}", err=True)
        sys.exit(EXIT_NO_MUTATION)

    click.echo(f"{kind}/{name} in {namespace}: {current}")


if __name__ == "__main__":
    main()
