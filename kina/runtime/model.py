"""Cluster and node views reconstructed from runtime labels."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from kina.constants import COMBINED_ROLE, NODE_SUFFIX


class ClusterStatus(StrEnum):
    RUNNING = "Running"
    STOPPED = "Stopped"


class NodeRole(StrEnum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    @classmethod
    def from_label(cls, value: str | None) -> NodeRole:
        if value in (NODE_SUFFIX, COMBINED_ROLE, "control-plane,worker"):
            return cls.CONTROL_PLANE
        return cls.WORKER


@dataclass(frozen=True, slots=True)
class ContainerRecord:
    """One entry of the runtime's JSON container listing."""

    id: str
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    ip_address: str | None = None

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True, slots=True)
class ContainerSpec:
    """Everything ``container run`` needs to start a node."""

    name: str
    image: str
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    tmpfs: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    network: str | None = None

    def run_args(self) -> list[str]:
        args = ["run", "-d", "--name", self.name]
        for key, value in self.labels.items():
            args.extend(["--label", f"{key}={value}"])
        for mount in self.tmpfs:
            args.extend(["--tmpfs", mount])
        for key, value in self.env.items():
            args.extend(["--env", f"{key}={value}"])
        if self.network:
            args.extend(["--network", self.network])
        args.append(self.image)
        args.extend(self.command)
        return args


@dataclass(frozen=True, slots=True)
class Node:
    name: str
    role: NodeRole
    container_id: str
    cluster_name: str
    status: str
    ip_address: str | None = None
    version: str | None = None

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True, slots=True)
class Cluster:
    """A cluster as the runtime currently sees it.

    Never persisted by kina: every query rebuilds it from container labels.
    """

    name: str
    image: str
    status: ClusterStatus
    nodes: tuple[Node, ...] = ()
    created: str | None = None
    cni: str | None = None
    kubeconfig_path: str | None = None

    @property
    def control_plane(self) -> Node | None:
        return next((n for n in self.nodes if n.role is NodeRole.CONTROL_PLANE), None)
