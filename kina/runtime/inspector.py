"""Everything kina knows about the container runtime.

Wraps Apple's ``container`` CLI: listing, creating, stopping and removing node
containers, running commands inside them, and projecting the JSON container
listing onto Cluster views through the ``io.kina.*`` labels.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable, Sequence
from typing import Any

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from kina.classify import Outcome, classify
from kina.constants import (
    CLUSTER_LABEL,
    CNI_LABEL,
    CREATED_LABEL,
    DEFAULT_IMAGE,
    IMAGE_LABEL,
    ROLE_LABEL,
    RUNNING_POLL_ATTEMPTS,
    RUNNING_POLL_INTERVAL,
    STOP_SETTLE_SECONDS,
)
from kina.core.exceptions import KinaTimeoutError, RuntimeCommandError
from kina.process import ExecResult, Runner, run
from kina.runtime.model import (
    Cluster,
    ClusterStatus,
    ContainerRecord,
    ContainerSpec,
    Node,
    NodeRole,
)

log = logger.bind(component="runtime")


class _NotRunningYet(Exception):
    pass


class _NoAddressYet(Exception):
    pass


def _address(entry: dict[str, Any]) -> str | None:
    networks = entry.get("networks") or []
    if not networks or not isinstance(networks[0], dict):
        return None
    raw = networks[0].get("address") or networks[0].get("ipv4Address")
    if not raw:
        return None
    return str(raw).split("/")[0]


def parse_container_list(stdout: str) -> list[ContainerRecord]:
    """Parse ``container list --format json``. Malformed output yields []."""
    if not stdout.strip():
        return []
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        log.warning("Container list output is not valid JSON, treating as empty")
        return []
    if not isinstance(data, list):
        return []

    records: list[ContainerRecord] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        configuration = entry.get("configuration") or {}
        container_id = configuration.get("id") or entry.get("id")
        if not container_id:
            continue
        labels = configuration.get("labels") or {}
        records.append(
            ContainerRecord(
                id=str(container_id),
                status=str(entry.get("status", "unknown")).lower(),
                labels={str(k): str(v) for k, v in labels.items()},
                ip_address=_address(entry),
            )
        )
    return records


def project_clusters(records: Iterable[ContainerRecord]) -> dict[str, Cluster]:
    """Group labeled containers into clusters.

    A cluster is Running only when every member container is running.
    Containers without the cluster label are not kina's and are ignored.
    """
    grouped: dict[str, list[ContainerRecord]] = {}
    for record in records:
        name = record.labels.get(CLUSTER_LABEL)
        if name:
            grouped.setdefault(name, []).append(record)

    clusters: dict[str, Cluster] = {}
    for name, members in grouped.items():
        nodes = tuple(
            Node(
                name=r.id,
                role=NodeRole.from_label(r.labels.get(ROLE_LABEL)),
                container_id=r.id,
                cluster_name=name,
                status=r.status,
                ip_address=r.ip_address,
            )
            for r in sorted(members, key=lambda r: r.id)
        )
        first = members[0].labels
        clusters[name] = Cluster(
            name=name,
            image=first.get(IMAGE_LABEL, DEFAULT_IMAGE),
            status=ClusterStatus.RUNNING if all(r.running for r in members) else ClusterStatus.STOPPED,
            nodes=nodes,
            created=first.get(CREATED_LABEL),
            cni=first.get(CNI_LABEL),
        )
    return clusters


class RuntimeInspector:
    def __init__(
        self,
        binary: str,
        *,
        runner: Runner = run,
        stop_settle: float = STOP_SETTLE_SECONDS,
        running_interval: float = RUNNING_POLL_INTERVAL,
        running_attempts: int = RUNNING_POLL_ATTEMPTS,
        ip_attempts: int = 8,
        ip_max_wait: float = 4.0,
    ) -> None:
        self._bin = binary
        self._run = runner
        self._stop_settle = stop_settle
        self._running_interval = running_interval
        self._running_attempts = running_attempts
        self._ip_attempts = ip_attempts
        self._ip_max_wait = ip_max_wait

    async def _cli(self, *args: str, stdin: str | None = None) -> ExecResult:
        return await self._run(self._bin, *args, stdin=stdin)

    # -- listing ---------------------------------------------------------

    async def list_containers(self, *, all_states: bool = True) -> list[ContainerRecord]:
        args = ["list", "--format", "json"]
        if all_states:
            args.append("--all")
        result = await self._cli(*args)
        result.check("Failed to list containers", RuntimeCommandError)
        return parse_container_list(result.stdout)

    async def list_clusters(self) -> list[Cluster]:
        clusters = project_clusters(await self.list_containers())
        return [clusters[name] for name in sorted(clusters)]

    async def get_cluster(self, name: str) -> Cluster | None:
        return project_clusters(await self.list_containers()).get(name)

    async def cluster_exists(self, name: str) -> bool:
        return await self.get_cluster(name) is not None

    async def get_container_ip(self, name: str) -> str | None:
        for record in await self.list_containers(all_states=False):
            if record.id == name:
                return record.ip_address
        return None

    async def wait_for_container_ip(self, name: str) -> str:
        async def _address() -> str:
            ip = await self.get_container_ip(name)
            if not ip:
                raise _NoAddressYet(name)
            return ip

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._ip_attempts),
                wait=wait_exponential(multiplier=0.5, max=self._ip_max_wait),
                retry=retry_if_exception_type(_NoAddressYet),
                reraise=True,
            ):
                with attempt:
                    ip = await _address()
        except _NoAddressYet as e:
            raise KinaTimeoutError(f"Container '{name}' has no network address") from e
        log.debug("Container {name} has address {ip}", name=name, ip=ip)
        return ip

    async def wait_for_running(self, name: str) -> None:
        async def _check_running() -> None:
            for record in await self.list_containers(all_states=False):
                if record.id == name and record.running:
                    return
            raise _NotRunningYet(name)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._running_attempts),
                wait=wait_fixed(self._running_interval),
                retry=retry_if_exception_type(_NotRunningYet),
                reraise=True,
            ):
                with attempt:
                    await _check_running()
        except _NotRunningYet as e:
            budget = self._running_attempts * self._running_interval
            raise KinaTimeoutError(
                f"Container '{name}' failed to become ready within {budget:.0f} seconds"
            ) from e
        log.info("Container {name} is running", name=name)

    # -- lifecycle -------------------------------------------------------

    async def run_container(self, spec: ContainerSpec) -> str:
        result = await self._cli(*spec.run_args())
        if classify("run", result) is Outcome.ALREADY_EXISTS:
            raise RuntimeCommandError(f"Container '{spec.name}' already exists", result)
        result.check(f"Failed to create container '{spec.name}'", RuntimeCommandError)
        log.info("Container {name} created from {image}", name=spec.name, image=spec.image)
        return spec.name

    async def create_containers(self, specs: Sequence[ContainerSpec]) -> list[str]:
        """Create several containers concurrently; all of them or none."""
        results = await asyncio.gather(
            *(self.run_container(s) for s in specs), return_exceptions=True,
        )
        created = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            if created:
                log.warning("Rolling back {n} container(s) after a failed batch", n=len(created))
                await self.delete_containers(created)
            raise failures[0]
        return created

    async def _stop(self, container_id: str) -> None:
        attempts = (
            ("--time", "5"),
            ("--signal", "SIGKILL", "--time", "10"),
        )
        for flags in attempts:
            result = await self._cli("stop", *flags, container_id)
            outcome = classify("stop", result)
            if outcome is Outcome.ALREADY_GONE:
                log.debug("Container {id} was not running", id=container_id)
                return
            if outcome is Outcome.OK:
                if self._stop_settle:
                    await asyncio.sleep(self._stop_settle)
                return
            log.debug(
                "stop {flags} {id} failed: {err}",
                flags=" ".join(flags), id=container_id, err=result.stderr.strip(),
            )
        log.warning("Could not stop container {id}, removing it anyway", id=container_id)

    async def delete_container(self, container_id: str) -> None:
        """Stop and remove a container. A container that is already gone is fine."""
        await self._stop(container_id)

        result = await self._cli("delete", container_id)
        outcome = classify("delete", result)
        if outcome is Outcome.STILL_RUNNING:
            log.debug("Container {id} still running, forcing removal", id=container_id)
            result = await self._cli("delete", "--force", container_id)
            outcome = classify("delete", result)

        if outcome in (Outcome.OK, Outcome.ALREADY_GONE):
            log.info("Container {id} removed", id=container_id)
            return
        raise RuntimeCommandError(f"Failed to delete container '{container_id}'", result)

    async def delete_containers(self, container_ids: Sequence[str]) -> None:
        await asyncio.gather(*(self.delete_container(cid) for cid in container_ids))

    # -- inside the node -------------------------------------------------

    async def exec(self, container: str, *command: str, stdin: str | None = None) -> ExecResult:
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        return await self._cli(*args, container, *command, stdin=stdin)

    async def write_file(self, container: str, path: str, content: str) -> ExecResult:
        directory = path.rsplit("/", 1)[0] or "/"
        return await self.exec(
            container, "sh", "-c", f"mkdir -p {directory} && cat > {path}", stdin=content,
        )

    async def read_file(self, container: str, path: str) -> ExecResult:
        return await self.exec(container, "cat", path)

    async def copy_to(self, container: str, source: str, destination: str) -> ExecResult:
        return await self._cli("cp", source, f"{container}:{destination}")

    async def node_version(self, container: str) -> str | None:
        result = await self.exec(container, "kubelet", "--version")
        if not result.success:
            return None
        # "Kubernetes v1.31.0"
        return result.stdout.strip().split()[-1] if result.stdout.strip() else None

    # -- networks --------------------------------------------------------

    async def ensure_network(self, name: str) -> str:
        result = await self._cli("network", "create", name)
        if classify("network create", result) is Outcome.FAILED:
            raise RuntimeCommandError(f"Failed to create network '{name}'", result)
        return name

    async def delete_network(self, name: str) -> None:
        result = await self._cli("network", "delete", name)
        if classify("network delete", result) is Outcome.FAILED:
            log.warning(
                "Failed to remove network {net}: {err}", net=name, err=result.stderr.strip(),
            )

    async def runtime_version(self) -> str:
        result = await self._cli("--version")
        return result.stdout.strip() if result.success else "unknown"
