from __future__ import annotations

from pathlib import Path

import pytest
from fakes import CONTAINER, DOCKER, KUBECTL, FakeHost

from kina.cluster import ClusterManager
from kina.config import ClusterSettings, KinaConfig, KubernetesSettings
from kina.csr import CsrApprover
from kina.kubeconfig import KubeconfigManager
from kina.kubectl import Kubectl
from kina.runtime.inspector import RuntimeInspector
from kina.tools import ToolPaths


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def kube_dir(tmp_path: Path) -> Path:
    return tmp_path / ".kube"


@pytest.fixture
def config(kube_dir: Path) -> KinaConfig:
    return KinaConfig(
        cluster=ClusterSettings(csr_timeout=0),
        kubernetes=KubernetesSettings(kube_dir=kube_dir),
    )


@pytest.fixture
def tools() -> ToolPaths:
    return ToolPaths(container=CONTAINER, kubectl=KUBECTL, docker=DOCKER)


@pytest.fixture
def inspector(host: FakeHost) -> RuntimeInspector:
    return RuntimeInspector(
        CONTAINER,
        runner=host,
        stop_settle=0,
        running_interval=0,
        running_attempts=5,
        ip_attempts=3,
        ip_max_wait=0,
    )


@pytest.fixture
def kubectl(host: FakeHost) -> Kubectl:
    return Kubectl(KUBECTL, runner=host)


@pytest.fixture
def kubeconfigs(kube_dir: Path, inspector: RuntimeInspector, kubectl: Kubectl) -> KubeconfigManager:
    return KubeconfigManager(kube_dir, inspector, kubectl)


@pytest.fixture
def manager(
    host: FakeHost, config: KinaConfig, tools: ToolPaths,
    inspector: RuntimeInspector, kubectl: Kubectl,
) -> ClusterManager:
    return ClusterManager(
        config,
        tools,
        runner=host,
        inspector=inspector,
        csr_approver=CsrApprover(kubectl, interval=0),
        api_settle=0,
        ready_interval=0,
    )
