"""Turn a node image into a reachable single-node control plane.

Steps run strictly in order. The first six are fatal and raise
BootstrapError naming the step; taint removal and the network plugin only
produce warnings with a follow-up command, since the API server is already
usable by then.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from loguru import logger

from kina.bootstrap.cni import CniPlugin, install_cni
from kina.bootstrap.kubeadm import KubeadmParams, render_kubeadm_config
from kina.classify import is_done
from kina.constants import (
    ADMIN_KUBECONFIG_PATH,
    CLUSTER_LABEL,
    CNI_LABEL,
    COMBINED_ROLE,
    CONTROL_PLANE_TAINT,
    CREATED_LABEL,
    DEFAULT_KUBERNETES_VERSION,
    DEFAULT_POD_SUBNET,
    DEFAULT_SERVICE_SUBNET,
    IMAGE_LABEL,
    KUBEADM_CONFIG_PATH,
    PRIMARY_LABEL,
    ROLE_LABEL,
    SINGLE_NODE_LABEL,
    node_name,
)
from kina.core.exceptions import BootstrapError, KinaError
from kina.kubeconfig import KubeconfigManager
from kina.runtime.inspector import RuntimeInspector
from kina.runtime.model import ContainerSpec

log = logger.bind(component="bootstrap")


class Step(StrEnum):
    CREATE_CONTAINER = "create-container"
    WAIT_RUNNING = "wait-running"
    RESOLVE_IP = "resolve-ip"
    WRITE_KUBEADM_CONFIG = "write-kubeadm-config"
    KUBEADM_INIT = "kubeadm-init"
    KUBECONFIG = "kubeconfig"
    REMOVE_TAINT = "remove-taint"
    INSTALL_CNI = "install-cni"


@dataclass(frozen=True, slots=True)
class BootstrapRequest:
    cluster_name: str
    image: str
    cni: CniPlugin = CniPlugin.PTP
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    pod_subnet: str = DEFAULT_POD_SUBNET
    service_subnet: str = DEFAULT_SERVICE_SUBNET

    @property
    def node_name(self) -> str:
        return node_name(self.cluster_name)


@dataclass(frozen=True, slots=True)
class StepWarning:
    step: Step
    message: str
    remediation: str


@dataclass(slots=True)
class BootstrapResult:
    node_name: str
    vm_ip: str
    kubeconfig_path: Path
    taint_removed: bool = False
    cni_installed: bool = False
    warnings: list[StepWarning] = field(default_factory=list)


def node_container_spec(request: BootstrapRequest) -> ContainerSpec:
    return ContainerSpec(
        name=request.node_name,
        image=request.image,
        labels={
            CLUSTER_LABEL: request.cluster_name,
            ROLE_LABEL: COMBINED_ROLE,
            PRIMARY_LABEL: "true",
            SINGLE_NODE_LABEL: "true",
            IMAGE_LABEL: request.image,
            CNI_LABEL: request.cni.value,
            CREATED_LABEL: datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
        env={
            "container": "docker",
            "HOSTNAME": request.node_name,
            "KINA_NODE_TYPE": "single-node",
        },
        tmpfs=("/tmp", "/run", "/run/lock"),
        command=("/sbin/init",),
    )


class BootstrapPipeline:
    def __init__(self, inspector: RuntimeInspector, kubeconfigs: KubeconfigManager) -> None:
        self._inspector = inspector
        self._kubeconfigs = kubeconfigs

    async def run(self, request: BootstrapRequest) -> BootstrapResult:
        node = request.node_name
        log.info("Bootstrapping cluster {name} on {node}", name=request.cluster_name, node=node)

        with _step(Step.CREATE_CONTAINER):
            await self._inspector.run_container(node_container_spec(request))

        with _step(Step.WAIT_RUNNING):
            await self._inspector.wait_for_running(node)

        with _step(Step.RESOLVE_IP):
            vm_ip = await self._inspector.wait_for_container_ip(node)

        with _step(Step.WRITE_KUBEADM_CONFIG):
            await self._write_kubeadm_config(request, vm_ip)

        with _step(Step.KUBEADM_INIT):
            await self._kubeadm_init(node)

        with _step(Step.KUBECONFIG):
            path = await self._kubeconfigs.install(request.cluster_name, node, vm_ip)

        result = BootstrapResult(node_name=node, vm_ip=vm_ip, kubeconfig_path=path)
        await self._remove_taint(request, result)
        await self._install_cni(request, result)

        log.info("Cluster {name} bootstrapped at {ip}", name=request.cluster_name, ip=vm_ip)
        return result

    async def _write_kubeadm_config(self, request: BootstrapRequest, vm_ip: str) -> None:
        document = render_kubeadm_config(
            KubeadmParams(
                cluster_name=request.cluster_name,
                node_name=request.node_name,
                node_ip=vm_ip,
                kubernetes_version=request.kubernetes_version,
                pod_subnet=request.pod_subnet,
                service_subnet=request.service_subnet,
            )
        )
        result = await self._inspector.write_file(request.node_name, KUBEADM_CONFIG_PATH, document)
        if not result.success:
            raise BootstrapError(Step.WRITE_KUBEADM_CONFIG, result.stderr.strip() or "write failed")

    async def _kubeadm_init(self, node: str) -> None:
        log.info("Running kubeadm init on {node}, this takes a minute or two", node=node)
        result = await self._inspector.exec(
            node, "kubeadm", "init",
            f"--config={KUBEADM_CONFIG_PATH}", "--skip-phases=preflight", "--v=1",
        )
        if not result.success:
            raise BootstrapError(
                Step.KUBEADM_INIT,
                f"kubeadm init exited {result.exit_code}\n"
                f"stdout:\n{result.stdout.strip()}\nstderr:\n{result.stderr.strip()}",
            )

    async def _remove_taint(self, request: BootstrapRequest, result: BootstrapResult) -> None:
        node = request.node_name
        removed = await self._inspector.exec(
            node, "kubectl", f"--kubeconfig={ADMIN_KUBECONFIG_PATH}",
            "taint", "nodes", node, f"{CONTROL_PLANE_TAINT}-",
        )
        if is_done("taint", removed):
            result.taint_removed = True
            return
        warning = StepWarning(
            Step.REMOVE_TAINT,
            f"Could not remove the control-plane taint: {removed.stderr.strip()}",
            f"kubectl --context {request.cluster_name} taint nodes {node} {CONTROL_PLANE_TAINT}-",
        )
        log.warning("{msg}. Fix with: {fix}", msg=warning.message, fix=warning.remediation)
        result.warnings.append(warning)

    async def _install_cni(self, request: BootstrapRequest, result: BootstrapResult) -> None:
        try:
            installed = await install_cni(
                request.cni, self._inspector, request.node_name, pod_subnet=request.pod_subnet,
            )
            detail = installed.detail
            result.cni_installed = installed.installed
        except KinaError as e:
            detail = str(e)
        if result.cni_installed:
            return
        warning = StepWarning(
            Step.INSTALL_CNI,
            f"Network plugin {request.cni} was not installed: {detail}",
            f"kina delete {request.cluster_name} && kina create {request.cluster_name} --cni ptp",
        )
        log.warning("{msg}. Fix with: {fix}", msg=warning.message, fix=warning.remediation)
        result.warnings.append(warning)


@contextmanager
def _step(step: Step) -> Iterator[None]:
    """Re-raise any kina failure inside a fatal step as BootstrapError."""
    log.debug("Step {step}", step=step)
    try:
        yield
    except BootstrapError:
        raise
    except KinaError as e:
        raise BootstrapError(step, str(e)) from e
