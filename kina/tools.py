"""Locate the external executables kina drives.

Discovery runs once per process and yields an immutable ToolPaths value that
is handed to every component.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from kina.config import ContainerSettings, KubernetesSettings
from kina.constants import CONTAINER_CLI_CANDIDATES, CONTAINER_CLI_NAMES
from kina.core.exceptions import ToolNotFoundError

log = logger.bind(component="tools")

CONTAINER_HINT = (
    "Install Apple Container from https://github.com/apple/container/releases "
    "and make sure 'container' is on your PATH."
)
KUBECTL_HINT = "Install kubectl, for example with: brew install kubectl"
DOCKER_HINT = "Install Docker (or a docker-compatible CLI) to export local images."


@dataclass(frozen=True, slots=True)
class ToolPaths:
    container: str
    kubectl: str
    docker: str | None = None

    def require_docker(self) -> str:
        if self.docker is None:
            raise ToolNotFoundError("docker", DOCKER_HINT)
        return self.docker


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def find_container_cli(
    configured: str | None = None,
    *,
    which: Callable[[str], str | None] = shutil.which,
    is_executable: Callable[[str], bool] = _is_executable,
) -> str:
    if configured:
        if is_executable(configured):
            return configured
        raise ToolNotFoundError(configured, f"Configured container CLI is not executable. {CONTAINER_HINT}")

    for candidate in CONTAINER_CLI_CANDIDATES:
        if is_executable(candidate):
            return candidate

    for name in CONTAINER_CLI_NAMES:
        if found := which(name):
            return found

    raise ToolNotFoundError("container", CONTAINER_HINT)


def find_kubectl(
    configured: str | None = None,
    *,
    which: Callable[[str], str | None] = shutil.which,
    is_executable: Callable[[str], bool] = _is_executable,
) -> str:
    if configured:
        if is_executable(configured):
            return configured
        raise ToolNotFoundError(configured, f"Configured kubectl is not executable. {KUBECTL_HINT}")
    if found := which("kubectl"):
        return found
    raise ToolNotFoundError("kubectl", KUBECTL_HINT)


def discover_tools(
    container: ContainerSettings,
    kubernetes: KubernetesSettings,
    *,
    which: Callable[[str], str | None] = shutil.which,
    is_executable: Callable[[str], bool] = _is_executable,
) -> ToolPaths:
    tools = ToolPaths(
        container=find_container_cli(container.cli_path, which=which, is_executable=is_executable),
        kubectl=find_kubectl(kubernetes.kubectl_path, which=which, is_executable=is_executable),
        docker=which("docker"),
    )
    log.debug(
        "Tools: container={c} kubectl={k} docker={d}",
        c=tools.container, k=tools.kubectl, d=tools.docker,
    )
    return tools
