"""Thin async wrapper over the host's kubectl."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from kina.constants import KUBELET_SERVING_SIGNER
from kina.process import ExecResult, Runner, run

log = logger.bind(component="kubectl")

CSR_COLUMNS = (
    "NAME:.metadata.name,"
    "SIGNER:.spec.signerName,"
    "STATUS:.status.conditions[0].type"
)


@dataclass(frozen=True, slots=True)
class CsrRecord:
    name: str
    signer: str
    status: str

    @property
    def pending(self) -> bool:
        return self.status in ("<none>", "", "Pending")

    @property
    def kubelet_serving(self) -> bool:
        return self.signer == KUBELET_SERVING_SIGNER


@dataclass(frozen=True, slots=True)
class NodeStatus:
    name: str
    ready: bool
    version: str | None = None


@dataclass(frozen=True, slots=True)
class PodStatus:
    name: str
    namespace: str
    phase: str
    ready: bool


def parse_csr_table(stdout: str) -> list[CsrRecord]:
    records = []
    for line in stdout.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        status = parts[2] if len(parts) > 2 else "<none>"
        records.append(CsrRecord(name=parts[0], signer=parts[1], status=status))
    return records


def _parse_nodes(data: dict[str, Any]) -> list[NodeStatus]:
    nodes = []
    for item in data.get("items", []):
        status = item.get("status", {})
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True"
            for c in status.get("conditions", [])
        )
        nodes.append(
            NodeStatus(
                name=item.get("metadata", {}).get("name", ""),
                ready=ready,
                version=status.get("nodeInfo", {}).get("kubeletVersion"),
            )
        )
    return nodes


def _parse_pods(data: dict[str, Any]) -> list[PodStatus]:
    pods = []
    for item in data.get("items", []):
        meta = item.get("metadata", {})
        status = item.get("status", {})
        containers = status.get("containerStatuses", [])
        phase = status.get("phase", "Unknown")
        pods.append(
            PodStatus(
                name=meta.get("name", ""),
                namespace=meta.get("namespace", ""),
                phase=phase,
                ready=phase in ("Running", "Succeeded")
                and all(c.get("ready", False) for c in containers),
            )
        )
    return pods


class Kubectl:
    def __init__(self, binary: str, *, runner: Runner = run) -> None:
        self._bin = binary
        self._run = runner

    async def __call__(
        self, kubeconfig: Path | str | None, *args: str, env: dict[str, str] | None = None,
    ) -> ExecResult:
        prefix = ("--kubeconfig", str(kubeconfig)) if kubeconfig is not None else ()
        return await self._run(self._bin, *prefix, *args, env=env)

    async def _json(self, kubeconfig: Path | str, *args: str) -> dict[str, Any] | None:
        result = await self(kubeconfig, *args, "-o", "json")
        if not result.success:
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            return None

    async def cluster_info(self, kubeconfig: Path | str) -> bool:
        result = await self(kubeconfig, "cluster-info", "--request-timeout=5s")
        return result.success

    async def get_nodes(self, kubeconfig: Path | str) -> list[NodeStatus] | None:
        data = await self._json(kubeconfig, "get", "nodes")
        return None if data is None else _parse_nodes(data)

    async def pods(
        self, kubeconfig: Path | str, *, namespace: str = "kube-system", selector: str | None = None,
    ) -> list[PodStatus] | None:
        args = ["get", "pods", "-n", namespace]
        if selector:
            args.extend(["-l", selector])
        data = await self._json(kubeconfig, *args)
        return None if data is None else _parse_pods(data)

    async def list_csrs(self, kubeconfig: Path | str, *, check: bool = False) -> list[CsrRecord] | None:
        """Parsed ``get csr`` rows, or None when kubectl fails.

        With ``check`` a failed listing raises CommandError instead.
        """
        result = await self(
            kubeconfig, "get", "csr", "-o", f"custom-columns={CSR_COLUMNS}", "--no-headers",
        )
        if not result.success:
            if check:
                result.check("kubectl get csr")
            log.debug("CSR listing failed: {err}", err=result.stderr.strip())
            return None
        return parse_csr_table(result.stdout)

    async def pending_kubelet_csrs(
        self, kubeconfig: Path | str, *, check: bool = False,
    ) -> list[CsrRecord] | None:
        csrs = await self.list_csrs(kubeconfig, check=check)
        if csrs is None:
            return None
        return [c for c in csrs if c.pending and c.kubelet_serving]

    async def approve_csr(self, kubeconfig: Path | str, name: str) -> ExecResult:
        return await self(kubeconfig, "certificate", "approve", name)

    async def view_flattened(self, paths: Sequence[Path]) -> ExecResult:
        """Merge kubeconfig files; entries of earlier files win on name clashes."""
        search_path = ":".join(str(p) for p in paths)
        return await self(None, "config", "view", "--flatten", env={"KUBECONFIG": search_path})

    async def config(self, kubeconfig: Path | str, *args: str) -> ExecResult:
        return await self(kubeconfig, "config", *args)
