"""Per-cluster and merged kubeconfig handling.

Each cluster gets ``<kube_dir>/<name>`` plus one cluster/context/user triple
in ``<kube_dir>/config``. The triple is named after the cluster (user
``<name>-admin``) and there is never more than one per cluster name.
"""

from __future__ import annotations

import ipaddress
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml
from loguru import logger

from kina.classify import is_done
from kina.constants import ADMIN_KUBECONFIG_PATH, API_SERVER_PORT, admin_user
from kina.core.exceptions import KubeconfigError
from kina.kubectl import Kubectl
from kina.runtime.inspector import RuntimeInspector

log = logger.bind(component="kubeconfig")

DEFAULT_CLUSTER_NAMES = frozenset({"kubernetes", "kina-cluster"})
DEFAULT_USER = "kubernetes-admin"
DEFAULT_CONTEXT_PREFIX = f"{DEFAULT_USER}@"


def _needs_rewrite(server: str, vm_ip: str) -> bool:
    host = urlsplit(server).hostname or ""
    if host == vm_ip:
        return urlsplit(server).port != API_SERVER_PORT
    if host == "localhost":
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_loopback or address.is_private


def _named(entries: Any) -> list[dict[str, Any]]:
    return [e for e in entries or [] if isinstance(e, dict)]


def rewrite_kubeconfig(text: str, cluster_name: str, vm_ip: str) -> str:
    """Point the admin kubeconfig at the VM and name it after the cluster.

    Only server URLs and entry names change; certificate and key data are
    carried over untouched. Applying it twice gives the same document.
    """
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise KubeconfigError(f"Admin kubeconfig is not valid YAML: {e}") from e
    if not isinstance(doc, dict):
        raise KubeconfigError("Admin kubeconfig is not a mapping")

    server = f"https://{vm_ip}:{API_SERVER_PORT}"
    user = admin_user(cluster_name)

    for entry in _named(doc.get("clusters")):
        body = entry.get("cluster") or {}
        if isinstance(body.get("server"), str) and _needs_rewrite(body["server"], vm_ip):
            body["server"] = server
        if entry.get("name") in DEFAULT_CLUSTER_NAMES:
            entry["name"] = cluster_name

    for entry in _named(doc.get("users")):
        if entry.get("name") == DEFAULT_USER:
            entry["name"] = user

    renamed_contexts: set[str] = set()
    for entry in _named(doc.get("contexts")):
        name = str(entry.get("name", ""))
        if name.startswith(DEFAULT_CONTEXT_PREFIX):
            renamed_contexts.add(name)
            entry["name"] = cluster_name
        body = entry.get("context") or {}
        if body.get("cluster") in DEFAULT_CLUSTER_NAMES:
            body["cluster"] = cluster_name
        if body.get("user") == DEFAULT_USER:
            body["user"] = user

    if doc.get("current-context") in renamed_contexts:
        doc["current-context"] = cluster_name

    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def _with_current_context(text: str, context: str | None) -> str:
    doc = yaml.safe_load(text)
    if not isinstance(doc, dict):
        raise KubeconfigError("kubectl returned a merged kubeconfig that is not a mapping")
    if context is None:
        doc.pop("current-context", None)
    else:
        doc["current-context"] = context
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def write_private(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` so that only the owner can ever read it."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        # O_CREAT's mode does not apply to a file that already exists
        os.fchmod(f.fileno(), 0o600)
        f.write(text)


class KubeconfigManager:
    def __init__(self, kube_dir: Path, inspector: RuntimeInspector, kubectl: Kubectl) -> None:
        self._dir = kube_dir
        self._inspector = inspector
        self._kubectl = kubectl

    @property
    def global_path(self) -> Path:
        return self._dir / "config"

    def path_for(self, cluster_name: str) -> Path:
        return self._dir / cluster_name

    def exists(self, cluster_name: str) -> bool:
        return self.path_for(cluster_name).is_file()

    def read(self, cluster_name: str) -> str | None:
        path = self.path_for(cluster_name)
        return path.read_text() if path.is_file() else None

    async def extract(self, container_id: str) -> str:
        result = await self._inspector.read_file(container_id, ADMIN_KUBECONFIG_PATH)
        if not result.success or not result.stdout.strip():
            raise KubeconfigError(
                f"Could not read {ADMIN_KUBECONFIG_PATH} from {container_id}: "
                f"{result.stderr.strip() or 'empty file'}"
            )
        return result.stdout

    async def install(
        self, cluster_name: str, container_id: str, vm_ip: str, *, switch_context: bool = True,
    ) -> Path:
        """Extract, rewrite and merge in one go."""
        raw = await self.extract(container_id)
        text = rewrite_kubeconfig(raw, cluster_name, vm_ip)
        return await self.merge(cluster_name, text, switch_context=switch_context)

    async def merge(self, cluster_name: str, text: str, *, switch_context: bool = True) -> Path:
        """Write the per-cluster file and fold it into the global kubeconfig.

        The per-cluster file goes first in the merge path so its entries
        replace any stale ones of the same name. With ``switch_context`` the
        new context also becomes the current one.
        """
        self._dir.mkdir(parents=True, exist_ok=True)
        previous = None if switch_context else self._current_context()
        individual = self.path_for(cluster_name)
        write_private(individual, text)

        sources = [individual]
        if self.global_path.is_file():
            sources.append(self.global_path)

        merged = await self._kubectl.view_flattened(sources)
        if not merged.success:
            raise KubeconfigError(f"kubectl could not merge kubeconfigs: {merged.stderr.strip()}")
        if switch_context:
            write_private(self.global_path, merged.stdout)
            await self._use_context(cluster_name)
        else:
            # the first file in the merge path also decides current-context
            write_private(self.global_path, _with_current_context(merged.stdout, previous))
        log.info("Kubeconfig for {name} merged into {path}", name=cluster_name, path=self.global_path)
        return individual

    async def remove(self, cluster_name: str) -> None:
        individual = self.path_for(cluster_name)
        if individual.exists():
            individual.unlink()
            log.debug("Removed {path}", path=individual)

        if not self.global_path.is_file():
            return

        for verb, target in (
            ("delete-context", cluster_name),
            ("delete-cluster", cluster_name),
            ("delete-user", admin_user(cluster_name)),
        ):
            result = await self._kubectl.config(self.global_path, verb, target)
            if not is_done(f"config {verb}", result):
                log.warning(
                    "kubectl config {verb} {target} failed: {err}",
                    verb=verb, target=target, err=result.stderr.strip(),
                )

    async def _use_context(self, cluster_name: str) -> None:
        switched = await self._kubectl.config(self.global_path, "use-context", cluster_name)
        if not switched.success:
            log.warning(
                "Could not switch current context to {name}: {err}",
                name=cluster_name, err=switched.stderr.strip(),
            )

    def _current_context(self) -> str | None:
        if not self.global_path.is_file():
            return None
        try:
            doc = yaml.safe_load(self.global_path.read_text())
        except yaml.YAMLError:
            return None
        if not isinstance(doc, dict):
            return None
        return doc.get("current-context") or None
