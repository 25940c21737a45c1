"""Cluster lifecycle: create, inspect and delete kina clusters.

ClusterManager ties the runtime inspector, the bootstrap pipeline, the
kubeconfig manager and the CSR approver together. It never records cluster
state itself; every call re-reads the runtime.
"""

from __future__ import annotations

import asyncio
import re
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from loguru import logger

from kina.bootstrap.cni import CniPlugin
from kina.bootstrap.pipeline import (
    BootstrapPipeline,
    BootstrapRequest,
    StepWarning,
)
from kina.config import KinaConfig
from kina.constants import API_SETTLE_SECONDS, CSR_POLL_INTERVAL, network_name
from kina.core.exceptions import (
    BootstrapError,
    ClusterAlreadyExistsError,
    ClusterNotFoundError,
    CommandError,
    ConfigurationError,
    KinaError,
    KinaTimeoutError,
    KubeconfigError,
)
from kina.csr import CsrApprover, CsrReport
from kina.health import ClusterHealth, check_health
from kina.kubeconfig import KubeconfigManager
from kina.kubectl import Kubectl
from kina.process import Runner, run
from kina.runtime.inspector import RuntimeInspector
from kina.runtime.model import Cluster, ContainerSpec, Node
from kina.tools import ToolPaths
from kina.wait import wait_for_ready

log = logger.bind(component="cluster")

_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def validate_cluster_name(name: str) -> str:
    """Cluster names become container and node names: DNS labels only."""
    if not _NAME_RE.match(name):
        raise ConfigurationError(
            f"Invalid cluster name '{name}': use 1-63 lowercase letters, digits "
            "or hyphens, starting and ending with a letter or digit"
        )
    return name


@dataclass(frozen=True, slots=True)
class CreateClusterOptions:
    name: str
    image: str
    cni: CniPlugin = CniPlugin.PTP
    wait_timeout: int | None = None
    retain_on_failure: bool = False
    skip_csr_approval: bool = False
    csr_timeout: int = 60
    kubernetes_version: str | None = None

    @classmethod
    def from_config(
        cls,
        config: KinaConfig,
        name: str | None = None,
        *,
        image: str | None = None,
        cni: CniPlugin | None = None,
        wait_timeout: int | None = None,
        retain_on_failure: bool | None = None,
        skip_csr_approval: bool | None = None,
    ) -> CreateClusterOptions:
        defaults = config.cluster
        return cls(
            name=name or defaults.default_name,
            image=image or defaults.default_image,
            cni=cni or defaults.cni,
            wait_timeout=defaults.wait_timeout if wait_timeout is None else wait_timeout,
            retain_on_failure=defaults.retain_on_failure if retain_on_failure is None else retain_on_failure,
            skip_csr_approval=defaults.skip_csr_approval if skip_csr_approval is None else skip_csr_approval,
            csr_timeout=defaults.csr_timeout,
            kubernetes_version=config.kubernetes.version,
        )


@dataclass(slots=True)
class CreateResult:
    name: str
    vm_ip: str
    kubeconfig_path: Path
    cluster: Cluster | None = None
    ready: bool | None = None
    csr: CsrReport | None = None
    warnings: list[StepWarning] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ClusterStatusReport:
    cluster: Cluster
    health: ClusterHealth
    runtime_version: str


class ClusterManager:
    def __init__(
        self,
        config: KinaConfig,
        tools: ToolPaths,
        *,
        runner: Runner = run,
        inspector: RuntimeInspector | None = None,
        csr_approver: CsrApprover | None = None,
        api_settle: float = API_SETTLE_SECONDS,
        ready_interval: float = 5.0,
    ) -> None:
        self._config = config
        self._tools = tools
        self._run = runner
        self._inspector = inspector or RuntimeInspector(tools.container, runner=runner)
        self._kubectl = Kubectl(tools.kubectl, runner=runner)
        self._kubeconfigs = KubeconfigManager(
            config.kubernetes.kube_dir, self._inspector, self._kubectl,
        )
        self._pipeline = BootstrapPipeline(self._inspector, self._kubeconfigs)
        self._csr = csr_approver or CsrApprover(self._kubectl, interval=CSR_POLL_INTERVAL)
        self._api_settle = api_settle
        self._ready_interval = ready_interval

    @property
    def inspector(self) -> RuntimeInspector:
        return self._inspector

    @property
    def kubeconfigs(self) -> KubeconfigManager:
        return self._kubeconfigs

    # -- create ----------------------------------------------------------

    async def create(self, options: CreateClusterOptions) -> CreateResult:
        name = validate_cluster_name(options.name)
        if not options.image.strip():
            raise ConfigurationError("Image must not be empty")
        if await self._inspector.cluster_exists(name):
            raise ClusterAlreadyExistsError(name)

        request = BootstrapRequest(
            cluster_name=name,
            image=options.image,
            cni=options.cni,
            kubernetes_version=options.kubernetes_version or self._config.kubernetes.version,
            pod_subnet=self._config.kubernetes.pod_subnet,
            service_subnet=self._config.kubernetes.service_subnet,
        )
        try:
            boot = await self._pipeline.run(request)
        except BootstrapError as e:
            if options.retain_on_failure:
                log.warning(
                    "Cluster {name} failed at {step}; node kept for debugging. "
                    "Remove it with: kina delete {name}",
                    name=name, step=e.step,
                )
            else:
                await self._cleanup_failed(name)
            raise

        result = CreateResult(
            name=name,
            vm_ip=boot.vm_ip,
            kubeconfig_path=boot.kubeconfig_path,
            warnings=list(boot.warnings),
        )
        result.ready = await self._wait_ready(name, boot.kubeconfig_path, options.wait_timeout)

        if options.skip_csr_approval:
            log.info("Skipping CSR approval for {name}", name=name)
        else:
            try:
                result.csr = await self._csr.bootstrap(boot.kubeconfig_path, timeout=options.csr_timeout)
            except KinaError as e:
                log.warning(
                    "CSR approval failed: {err}. Run later with: kina approve-csr {name}",
                    err=e, name=name,
                )

        result.cluster = await self._inspector.get_cluster(name)
        log.info("Cluster {name} created", name=name)
        return result

    async def _wait_ready(self, name: str, kubeconfig: Path, timeout: int | None) -> bool | None:
        if not timeout:
            if self._api_settle:
                await asyncio.sleep(self._api_settle)
            return None

        async def _poll() -> ClusterHealth | None:
            cluster = await self._inspector.get_cluster(name)
            if cluster is None:
                return None
            return await check_health(self._kubectl, kubeconfig, cluster)

        try:
            await wait_for_ready(
                _poll,
                lambda h: h.ready,
                timeout=timeout,
                interval=self._ready_interval,
                description=f"cluster {name} to become ready",
            )
        except KinaTimeoutError as e:
            log.warning("{err}. Check progress with: kina status {name}", err=e, name=name)
            return False
        return True

    async def _cleanup_failed(self, name: str) -> None:
        log.info("Cleaning up after failed creation of {name}", name=name)
        try:
            cluster = await self._inspector.get_cluster(name)
            if cluster is not None:
                await self._inspector.delete_containers([n.container_id for n in cluster.nodes])
            await self._kubeconfigs.remove(name)
        except KinaError as e:
            log.warning("Cleanup of {name} incomplete: {err}", name=name, err=e)

    async def provision_nodes(self, specs: Sequence[ContainerSpec]) -> list[str]:
        """Start several node containers at once; all of them or none."""
        for network in sorted({s.network for s in specs if s.network}):
            await self._inspector.ensure_network(network)
        return await self._inspector.create_containers(specs)

    # -- delete ----------------------------------------------------------

    async def delete(self, name: str) -> bool:
        """Delete a cluster. Returns False when there was nothing to delete."""
        cluster = await self._inspector.get_cluster(name)
        if cluster is None:
            log.warning("Cluster {name} not found", name=name)
        else:
            await self._inspector.delete_containers([n.container_id for n in cluster.nodes])

        # stale entries go even when the containers are already gone
        await self._kubeconfigs.remove(name)

        if cluster is not None:
            await self._inspector.delete_network(network_name(name))
            log.info("Cluster {name} deleted", name=name)
        return cluster is not None

    async def delete_all(self) -> list[str]:
        deleted: list[str] = []
        failed: list[str] = []
        for cluster in await self._inspector.list_clusters():
            try:
                await self.delete(cluster.name)
                deleted.append(cluster.name)
            except KinaError as e:
                log.error("Failed to delete {name}: {err}", name=cluster.name, err=e)
                failed.append(cluster.name)
        if failed:
            raise KinaError(f"Failed to delete cluster(s): {', '.join(failed)}")
        return deleted

    # -- inspect ---------------------------------------------------------

    async def list(self) -> list[Cluster]:
        return [
            replace(c, kubeconfig_path=str(self._kubeconfigs.path_for(c.name)))
            if self._kubeconfigs.exists(c.name) else c
            for c in await self._inspector.list_clusters()
        ]

    async def _require(self, name: str, command: str) -> Cluster:
        clusters = await self.list()
        for cluster in clusters:
            if cluster.name == name:
                return cluster
        raise ClusterNotFoundError(name, [c.name for c in clusters], command)

    async def status(self, name: str) -> ClusterStatusReport:
        cluster = await self._require(name, "status")

        async def _with_version(node: Node) -> Node:
            if not node.running:
                return node
            return replace(node, version=await self._inspector.node_version(node.container_id))

        nodes = await asyncio.gather(*(_with_version(n) for n in cluster.nodes))
        cluster = replace(cluster, nodes=tuple(nodes))
        kubeconfig = Path(cluster.kubeconfig_path) if cluster.kubeconfig_path else None
        health = await check_health(self._kubectl, kubeconfig, cluster)
        return ClusterStatusReport(
            cluster=cluster,
            health=health,
            runtime_version=await self._inspector.runtime_version(),
        )

    async def get_nodes(self, name: str) -> list[Node]:
        return list((await self._require(name, "get nodes")).nodes)

    async def get_kubeconfig(self, name: str) -> str:
        """The cluster's kubeconfig, regenerated from the node if the file is gone."""
        cluster = await self._require(name, "export")
        text = self._kubeconfigs.read(name)
        if text is not None:
            return text

        node = cluster.control_plane
        if node is None:
            raise KubeconfigError(f"Cluster '{name}' has no control-plane node")
        vm_ip = await self._inspector.get_container_ip(node.container_id)
        if vm_ip is None:
            raise KubeconfigError(f"Cluster '{name}' is not running; start it to regenerate its kubeconfig")
        log.info("Regenerating kubeconfig for {name}", name=name)
        await self._kubeconfigs.install(name, node.container_id, vm_ip, switch_context=False)
        return self._kubeconfigs.read(name) or ""

    async def approve_csrs(self, name: str) -> CsrReport:
        await self.get_kubeconfig(name)
        return await self._csr.approve_pending(self._kubeconfigs.path_for(name))

    async def load_image(self, name: str, image: str) -> None:
        """Copy a host docker image into the cluster's containerd."""
        cluster = await self._require(name, "load")
        node = cluster.control_plane
        if node is None or not node.running:
            raise KinaError(f"Cluster '{name}' is not running")

        docker = self._tools.require_docker()
        remote = "/tmp/kina-image.tar"
        with tempfile.TemporaryDirectory(prefix="kina-") as tmp:
            archive = Path(tmp) / "image.tar"
            log.info("Saving {image} from docker", image=image)
            (await self._run(docker, "save", "-o", str(archive), image)).check(
                f"docker save {image} failed",
            )
            (await self._inspector.copy_to(node.container_id, str(archive), remote)).check(
                f"Copying {image} into {node.name} failed",
            )

        imported = await self._inspector.exec(
            node.container_id, "ctr", "--namespace=k8s.io", "images", "import", remote,
        )
        await self._inspector.exec(node.container_id, "rm", "-f", remote)
        if not imported.success:
            raise CommandError(f"Importing {image} into {node.name} failed", imported)
        log.info("Image {image} loaded into {name}", image=image, name=name)
