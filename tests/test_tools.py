from __future__ import annotations

import pytest

from kina.config import ContainerSettings, KubernetesSettings
from kina.core.exceptions import ToolNotFoundError
from kina.tools import ToolPaths, discover_tools, find_container_cli, find_kubectl

pytestmark = [pytest.mark.unit]


def _which(available: dict[str, str]):
    return lambda name: available.get(name)


def _executables(*paths: str):
    return lambda path: path in paths


class TestFindContainerCli:
    def test_prefers_known_install_locations(self):
        found = find_container_cli(
            which=_which({"container": "/somewhere/else/container"}),
            is_executable=_executables("/opt/homebrew/bin/container"),
        )
        assert found == "/opt/homebrew/bin/container"

    def test_falls_back_to_path(self):
        found = find_container_cli(
            which=_which({"apple-container": "/custom/apple-container"}),
            is_executable=_executables(),
        )
        assert found == "/custom/apple-container"

    def test_configured_path_wins(self):
        found = find_container_cli(
            "/my/container",
            which=_which({"container": "/usr/bin/container"}),
            is_executable=_executables("/my/container", "/usr/local/bin/container"),
        )
        assert found == "/my/container"

    def test_configured_path_must_exist(self):
        with pytest.raises(ToolNotFoundError, match="/my/container"):
            find_container_cli("/my/container", which=_which({}), is_executable=_executables())

    def test_missing_everywhere(self):
        with pytest.raises(ToolNotFoundError, match="apple/container"):
            find_container_cli(which=_which({}), is_executable=_executables())


class TestFindKubectl:
    def test_from_path(self):
        assert find_kubectl(which=_which({"kubectl": "/usr/bin/kubectl"})) == "/usr/bin/kubectl"

    def test_missing(self):
        with pytest.raises(ToolNotFoundError, match="brew install kubectl"):
            find_kubectl(which=_which({}), is_executable=_executables())


class TestDiscoverTools:
    def test_resolves_all_tools_once(self):
        tools = discover_tools(
            ContainerSettings(),
            KubernetesSettings(),
            which=_which({"kubectl": "/usr/bin/kubectl", "docker": "/usr/bin/docker"}),
            is_executable=_executables("/usr/local/bin/container"),
        )
        assert tools == ToolPaths(
            container="/usr/local/bin/container",
            kubectl="/usr/bin/kubectl",
            docker="/usr/bin/docker",
        )

    def test_docker_is_optional_until_needed(self):
        tools = ToolPaths(container="c", kubectl="k")
        with pytest.raises(ToolNotFoundError, match="docker"):
            tools.require_docker()
