"""Network plugin variants.

CniPlugin is closed: each member has exactly one installer below and
``install_cni`` is the only place that dispatches on it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from kina.constants import (
    ADMIN_KUBECONFIG_PATH,
    CILIUM_VERSION,
    DEFAULT_POD_SUBNET,
    PTP_CONFLIST_PATH,
)

if TYPE_CHECKING:
    from kina.runtime.inspector import RuntimeInspector

log = logger.bind(component="cni")


class CniPlugin(StrEnum):
    PTP = "ptp"
    CILIUM = "cilium"


@dataclass(frozen=True, slots=True)
class CniResult:
    plugin: CniPlugin
    installed: bool
    detail: str = ""


def ptp_conflist(pod_subnet: str = DEFAULT_POD_SUBNET) -> str:
    return json.dumps(
        {
            "cniVersion": "0.4.0",
            "name": "ptp-net",
            "plugins": [
                {
                    "type": "ptp",
                    "ipMasq": True,
                    "ipam": {
                        "type": "host-local",
                        "subnet": pod_subnet,
                        "routes": [{"dst": "0.0.0.0/0"}],
                    },
                },
                {
                    "type": "portmap",
                    "capabilities": {"portMappings": True},
                },
            ],
        },
        indent=2,
    )


CILIUM_CLI_SCRIPT = (
    "set -e; "
    "CILIUM_CLI_VERSION=$(curl -fsSL https://raw.githubusercontent.com/cilium/cilium-cli/main/stable.txt); "
    "CLI_ARCH=$(uname -m | sed -e 's/x86_64/amd64/' -e 's/aarch64/arm64/'); "
    "cd /tmp; "
    "curl -fsSL --remote-name-all "
    "https://github.com/cilium/cilium-cli/releases/download/${CILIUM_CLI_VERSION}/cilium-linux-${CLI_ARCH}.tar.gz; "
    "tar -C /usr/local/bin -xzf cilium-linux-${CLI_ARCH}.tar.gz; "
    "rm -f cilium-linux-${CLI_ARCH}.tar.gz"
)


async def _install_ptp(inspector: RuntimeInspector, node: str, pod_subnet: str) -> CniResult:
    written = await inspector.write_file(node, PTP_CONFLIST_PATH, ptp_conflist(pod_subnet))
    if not written.success:
        return CniResult(CniPlugin.PTP, False, written.stderr.strip())

    restarted = await inspector.exec(node, "systemctl", "restart", "kubelet")
    if not restarted.success:
        log.warning(
            "kubelet restart after PTP install failed: {err}", err=restarted.stderr.strip(),
        )
    log.info("PTP network plugin configured on {node}", node=node)
    return CniResult(CniPlugin.PTP, True)


async def _install_cilium(inspector: RuntimeInspector, node: str, pod_subnet: str) -> CniResult:
    cli = await inspector.exec(node, "sh", "-c", CILIUM_CLI_SCRIPT)
    if not cli.success:
        return CniResult(CniPlugin.CILIUM, False, f"cilium CLI download failed: {cli.stderr.strip()}")

    install = await inspector.exec(
        node, "sh", "-c",
        f"export KUBECONFIG={ADMIN_KUBECONFIG_PATH} && "
        f"cilium install --version {CILIUM_VERSION} --set enableLocalNodeRoute=false",
    )
    if not install.success:
        return CniResult(CniPlugin.CILIUM, False, install.stderr.strip() or install.stdout.strip())
    log.info("Cilium {v} installed on {node}", v=CILIUM_VERSION, node=node)
    return CniResult(CniPlugin.CILIUM, True)


async def install_cni(
    plugin: CniPlugin,
    inspector: RuntimeInspector,
    node: str,
    *,
    pod_subnet: str = DEFAULT_POD_SUBNET,
) -> CniResult:
    match plugin:
        case CniPlugin.PTP:
            return await _install_ptp(inspector, node, pod_subnet)
        case CniPlugin.CILIUM:
            return await _install_cilium(inspector, node, pod_subnet)
