"""kina command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from kina import __version__
from kina.bootstrap.cni import CniPlugin
from kina.cluster import ClusterManager, ClusterStatusReport, CreateClusterOptions
from kina.config import (
    KinaConfig,
    config_path,
    get_value,
    reset_config,
    resolve_config,
    set_value,
    settings_table,
)
from kina.core.exceptions import ClusterNotFoundError, KinaError, no_clusters_hint
from kina.kubeconfig import write_private
from kina.logging import LogConfig, setup_logging
from kina.runtime.model import Cluster, ClusterStatus
from kina.tools import discover_tools

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    ClusterStatus.RUNNING: "green",
    ClusterStatus.STOPPED: "red",
}

_PHASE_STYLE = {"ready": "green", "reachable": "yellow", "running": "yellow", "stopped": "red"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kina", description="Kubernetes in Apple Container",
    )
    parser.add_argument("--version", action="version", version=f"kina {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logs")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only show errors")
    parser.add_argument("-c", "--config", type=Path, default=None, help="Global config file")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a cluster")
    create.add_argument("name", nargs="?")
    create.add_argument("--image", help="Node image")
    create.add_argument("--cni", choices=[p.value for p in CniPlugin], help="Network plugin")
    create.add_argument("--wait", type=int, default=None, metavar="SECONDS",
                        help="Wait up to SECONDS for the cluster to become ready")
    create.add_argument("--retain", action="store_true", default=None,
                        help="Keep the node container if creation fails")
    create.add_argument("--skip-csr-approval", action="store_true", default=None,
                        help="Do not approve kubelet serving certificates")

    delete = sub.add_parser("delete", help="Delete a cluster")
    delete.add_argument("name", nargs="?")
    delete.add_argument("--all", action="store_true", help="Delete every kina cluster")

    ls = sub.add_parser("list", aliases=["ls"], help="List clusters")
    ls.add_argument("-v", "--verbose", action="store_true", dest="details")

    status = sub.add_parser("status", help="Show cluster status")
    status.add_argument("name", nargs="?")
    status.add_argument("-v", "--verbose", action="store_true", dest="details")
    status.add_argument("-o", "--output", choices=["table", "yaml", "json"], default="table")

    get = sub.add_parser("get", help="Get clusters, nodes or kubeconfig")
    get.add_argument("resource", choices=["clusters", "nodes", "kubeconfig"])
    get.add_argument("name", nargs="?")

    load = sub.add_parser("load", help="Load a docker image into a cluster")
    load.add_argument("image")
    load.add_argument("-n", "--name", dest="cluster")

    export = sub.add_parser("export", help="Export a cluster's kubeconfig")
    export.add_argument("name", nargs="?")
    export.add_argument("-o", "--output", type=Path, default=None)

    approve = sub.add_parser("approve-csr", help="Approve pending kubelet serving CSRs")
    approve.add_argument("name", nargs="?")

    cfg = sub.add_parser("config", help="Show or change kina settings")
    cfg_sub = cfg.add_subparsers(dest="config_command", required=True)
    cfg_sub.add_parser("show", help="Show the effective configuration")
    cfg_get = cfg_sub.add_parser("get", help="Print one setting")
    cfg_get.add_argument("key", help="Dotted key, e.g. cluster.cni")
    cfg_set = cfg_sub.add_parser("set", help="Store one setting in the global config file")
    cfg_set.add_argument("key")
    cfg_set.add_argument("value")
    cfg_sub.add_parser("reset", help="Overwrite the global config file with the defaults")
    cfg_sub.add_parser("path", help="Print the global config file path")

    return parser


def log_config(args: argparse.Namespace, config: KinaConfig) -> LogConfig:
    if args.verbose:
        level = "DEBUG"
    elif args.quiet:
        level = "ERROR"
    else:
        level = config.logging.level
    return LogConfig(level=level, file=config.logging.file)  # type: ignore[arg-type]


async def resolve_name(manager: ClusterManager, name: str | None, command: str) -> str | None:
    """Pick the cluster a command applies to.

    An explicit name is returned as-is. Otherwise a lone cluster is picked,
    and several clusters prompt when interactive. None means nothing to do.
    """
    if name:
        return name
    clusters = await manager.list()
    if not clusters:
        console.print(no_clusters_hint(), markup=False)
        return None
    if len(clusters) == 1:
        return clusters[0].name
    names = [c.name for c in clusters]
    if sys.stdin.isatty():
        return Prompt.ask("Which cluster?", choices=names, console=console)
    raise ClusterNotFoundError("", names, command)


def cluster_table(clusters: Sequence[Cluster], *, details: bool = False) -> Table:
    table = Table(show_edge=False, header_style="bold")
    table.add_column("NAME")
    table.add_column("STATUS")
    table.add_column("NODES", justify="right")
    table.add_column("IMAGE")
    if details:
        table.add_column("CNI")
        table.add_column("CREATED")
        table.add_column("KUBECONFIG")
    for c in clusters:
        row = [
            c.name,
            f"[{_STATUS_STYLE[c.status]}]{c.status}[/]",
            str(len(c.nodes)),
            c.image,
        ]
        if details:
            row += [c.cni or "-", c.created or "-", c.kubeconfig_path or "-"]
        table.add_row(*row)
    return table


def status_document(report: ClusterStatusReport) -> dict[str, Any]:
    doc = asdict(report.cluster)
    doc["health"] = {**asdict(report.health), "phase": str(report.health.phase)}
    doc["runtime_version"] = report.runtime_version
    return json.loads(json.dumps(doc, default=str))


def print_status(report: ClusterStatusReport, *, details: bool) -> None:
    c, h = report.cluster, report.health
    phase = str(h.phase)
    console.print(f"[bold]Cluster:[/] {c.name}")
    console.print(f"[bold]Status:[/] [{_STATUS_STYLE[c.status]}]{c.status}[/] ({_styled(phase)})")
    console.print(f"[bold]Image:[/] {c.image}")
    console.print(f"[bold]API server:[/] {'reachable' if h.api_reachable else 'unreachable'}")
    console.print(f"[bold]Nodes ready:[/] {h.nodes_ready}/{h.nodes_total}")
    if details:
        console.print(f"[bold]Control plane pods ready:[/] {h.core_pods_ready}")
        console.print(f"[bold]Network plugin ({c.cni or 'ptp'}) ready:[/] {h.cni_ready}")
        console.print(f"[bold]Kubeconfig:[/] {c.kubeconfig_path or '-'}")
        console.print(f"[bold]Runtime:[/] {report.runtime_version}")

    nodes = Table(show_edge=False, header_style="bold")
    for column in ("NODE", "ROLE", "STATUS", "IP", "VERSION"):
        nodes.add_column(column)
    for n in c.nodes:
        nodes.add_row(n.name, n.role, n.status, n.ip_address or "-", n.version or "-")
    console.print(nodes)


def _styled(phase: str) -> str:
    return f"[{_PHASE_STYLE.get(phase, 'dim')}]{phase}[/]"


async def _create(manager: ClusterManager, config: KinaConfig, args: argparse.Namespace) -> int:
    options = CreateClusterOptions.from_config(
        config,
        args.name,
        image=args.image,
        cni=CniPlugin(args.cni) if args.cni else None,
        wait_timeout=args.wait,
        retain_on_failure=args.retain,
        skip_csr_approval=args.skip_csr_approval,
    )
    with console.status(f"Creating cluster [bold]{options.name}[/] ({options.image})..."):
        result = await manager.create(options)

    console.print(f"[green]✓[/] Cluster [bold]{result.name}[/] created at {result.vm_ip}")
    for warning in result.warnings:
        console.print(f"[yellow]![/] {escape(warning.message)}\n  Fix with: {escape(warning.remediation)}")
    if result.ready is False:
        console.print(f"[yellow]![/] Not ready yet. Check with: kina status {result.name}")
    if result.csr is not None and not result.csr.approved:
        console.print(
            f"[yellow]![/] No kubelet certificates approved yet. "
            f"Run: kina approve-csr {result.name}"
        )
    console.print(f"\nKubeconfig: {result.kubeconfig_path}")
    console.print(f"Try: kubectl --context {result.name} get nodes")
    return 0


async def _delete(manager: ClusterManager, args: argparse.Namespace) -> int:
    if args.all:
        deleted = await manager.delete_all()
        if not deleted:
            console.print("No clusters to delete.")
        for name in deleted:
            console.print(f"[green]✓[/] Deleted {name}")
        return 0

    name = await resolve_name(manager, args.name, "delete")
    if name is None:
        return 0
    if await manager.delete(name):
        console.print(f"[green]✓[/] Cluster [bold]{name}[/] deleted")
    else:
        names = [c.name for c in await manager.list()]
        console.print(ClusterNotFoundError(name, names, "delete").hint, markup=False)
    return 0


async def _list(manager: ClusterManager, args: argparse.Namespace) -> int:
    clusters = await manager.list()
    if not clusters:
        console.print(no_clusters_hint(), markup=False)
        return 0
    console.print(cluster_table(clusters, details=args.details))
    return 0


async def _status(manager: ClusterManager, args: argparse.Namespace) -> int:
    name = await resolve_name(manager, args.name, "status")
    if name is None:
        return 0
    report = await manager.status(name)
    match args.output:
        case "json":
            console.print_json(data=status_document(report))
        case "yaml":
            console.print(yaml.safe_dump(status_document(report), sort_keys=False), end="")
        case _:
            print_status(report, details=args.details)
    return 0


async def _get(manager: ClusterManager, args: argparse.Namespace) -> int:
    if args.resource == "clusters":
        for cluster in await manager.list():
            console.print(cluster.name)
        return 0

    name = await resolve_name(manager, args.name, f"get {args.resource}")
    if name is None:
        return 0
    if args.resource == "nodes":
        for node in await manager.get_nodes(name):
            console.print(node.name)
    else:
        sys.stdout.write(await manager.get_kubeconfig(name))
    return 0


async def _load(manager: ClusterManager, args: argparse.Namespace) -> int:
    name = await resolve_name(manager, args.cluster, "load")
    if name is None:
        return 0
    with console.status(f"Loading {args.image} into {name}..."):
        await manager.load_image(name, args.image)
    console.print(f"[green]✓[/] Image {args.image} loaded into {name}")
    return 0


async def _export(manager: ClusterManager, args: argparse.Namespace) -> int:
    name = await resolve_name(manager, args.name, "export")
    if name is None:
        return 0
    text = await manager.get_kubeconfig(name)
    if args.output is None:
        sys.stdout.write(text)
    else:
        write_private(args.output, text)
        console.print(f"[green]✓[/] Kubeconfig for {name} written to {args.output}")
    return 0


async def _approve_csr(manager: ClusterManager, args: argparse.Namespace) -> int:
    name = await resolve_name(manager, args.name, "approve-csr")
    if name is None:
        return 0
    report = await manager.approve_csrs(name)
    if not report.approved and not report.failed:
        console.print("No pending kubelet serving CSRs.")
    for csr in report.approved:
        console.print(f"[green]✓[/] Approved {csr}")
    for csr in report.failed:
        console.print(f"[red]✗[/] Could not approve {csr}")
    return 1 if report.failed else 0


def config_command(args: argparse.Namespace) -> int:
    path = config_path(args.config)
    match args.config_command:
        case "path":
            console.print(str(path), markup=False, highlight=False)
        case "show":
            table = Table(title=f"kina configuration ({escape(str(path))})")
            table.add_column("Key", style="cyan")
            table.add_column("Value")
            for section, values in settings_table(resolve_config(global_path=args.config)).items():
                for key, value in values.items():
                    table.add_row(f"{section}.{key}", escape(str(value)))
            console.print(table)
        case "get":
            value = get_value(resolve_config(global_path=args.config), args.key)
            console.print("(not set)" if value is None else str(value), markup=False, highlight=False)
        case "set":
            set_value(path, args.key, args.value)
            console.print(f"[green]✓[/] {escape(args.key)} = {escape(args.value)} saved to {escape(str(path))}")
        case "reset":
            reset_config(path)
            console.print(f"[green]✓[/] Configuration reset to defaults in {escape(str(path))}")
    return 0


async def dispatch(manager: ClusterManager, config: KinaConfig, args: argparse.Namespace) -> int:
    match args.command:
        case "create":
            return await _create(manager, config, args)
        case "delete":
            return await _delete(manager, args)
        case "list" | "ls":
            return await _list(manager, args)
        case "status":
            return await _status(manager, args)
        case "get":
            return await _get(manager, args)
        case "load":
            return await _load(manager, args)
        case "export":
            return await _export(manager, args)
        case "approve-csr":
            return await _approve_csr(manager, args)
    raise KinaError(f"Unknown command {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "config":
            return config_command(args)
        config = resolve_config(global_path=args.config)
        # the CLI owns stderr; drop loguru's catch-all default handler
        logger.remove()
        setup_logging(log_config(args, config))
        tools = discover_tools(config.container, config.kubernetes)
        manager = ClusterManager(config, tools)
        return asyncio.run(dispatch(manager, config, args))
    except ClusterNotFoundError as e:
        console.print(e.hint, markup=False)
        return 0
    except KinaError as e:
        err_console.print(f"[bold red]Error:[/] {escape(str(e))}")
        return 1
    except KeyboardInterrupt:
        err_console.print("Interrupted")
        return 130
