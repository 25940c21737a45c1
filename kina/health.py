"""How far along a cluster is: container up, API answering, or fully ready."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from kina.bootstrap.cni import CniPlugin
from kina.kubectl import Kubectl
from kina.runtime.model import Cluster, ClusterStatus


class HealthPhase(StrEnum):
    STOPPED = "stopped"
    RUNNING = "running"
    REACHABLE = "reachable"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class ClusterHealth:
    container_running: bool
    api_reachable: bool = False
    nodes_ready: int = 0
    nodes_total: int = 0
    core_pods_ready: bool = False
    cni_ready: bool = False

    @property
    def phase(self) -> HealthPhase:
        if not self.container_running:
            return HealthPhase.STOPPED
        if not self.api_reachable:
            return HealthPhase.RUNNING
        all_nodes = self.nodes_total > 0 and self.nodes_ready == self.nodes_total
        if all_nodes and self.core_pods_ready and self.cni_ready:
            return HealthPhase.READY
        return HealthPhase.REACHABLE

    @property
    def ready(self) -> bool:
        return self.phase is HealthPhase.READY


async def check_health(kubectl: Kubectl, kubeconfig: Path | None, cluster: Cluster) -> ClusterHealth:
    running = cluster.status is ClusterStatus.RUNNING
    if not running or kubeconfig is None or not kubeconfig.is_file():
        return ClusterHealth(container_running=running)

    if not await kubectl.cluster_info(kubeconfig):
        return ClusterHealth(container_running=True)

    nodes = await kubectl.get_nodes(kubeconfig) or []
    ready_nodes = sum(1 for n in nodes if n.ready)

    control_plane = await kubectl.pods(kubeconfig, selector="tier=control-plane") or []
    core_ready = bool(control_plane) and all(p.ready for p in control_plane)

    try:
        plugin = CniPlugin(cluster.cni or CniPlugin.PTP)
    except ValueError:
        plugin = CniPlugin.PTP

    match plugin:
        case CniPlugin.CILIUM:
            agents = await kubectl.pods(kubeconfig, selector="k8s-app=cilium") or []
            cni_ready = bool(agents) and all(p.ready for p in agents)
        case CniPlugin.PTP:
            # kubelet only reports Ready once a CNI config is in place
            cni_ready = bool(nodes) and ready_nodes == len(nodes)

    return ClusterHealth(
        container_running=True,
        api_reachable=True,
        nodes_ready=ready_nodes,
        nodes_total=len(nodes),
        core_pods_ready=core_ready,
        cni_ready=cni_ready,
    )
