from __future__ import annotations

import json

import pytest
from fakes import CONTAINER, FakeHost, fail

from kina.bootstrap.cni import CniPlugin, install_cni, ptp_conflist
from kina.runtime.inspector import RuntimeInspector

pytestmark = [pytest.mark.unit]


class TestPtpConflist:
    def test_plugins(self):
        conf = json.loads(ptp_conflist())
        assert conf["cniVersion"] == "0.4.0"
        ptp, portmap = conf["plugins"]
        assert ptp["type"] == "ptp"
        assert ptp["ipMasq"] is True
        assert ptp["ipam"] == {
            "type": "host-local",
            "subnet": "10.244.0.0/16",
            "routes": [{"dst": "0.0.0.0/0"}],
        }
        assert portmap == {"type": "portmap", "capabilities": {"portMappings": True}}


class TestInstallCni:
    @pytest.mark.asyncio
    async def test_ptp_writes_conflist_and_restarts_kubelet(
        self, host: FakeHost, inspector: RuntimeInspector,
    ):
        node = host.add_container("demo-control-plane")

        result = await install_cni(CniPlugin.PTP, inspector, "demo-control-plane")

        assert result.installed
        assert json.loads(node.files["/etc/cni/net.d/10-ptp.conflist"])["name"] == "ptp-net"
        assert host.commands()[-1] == ("exec", "demo-control-plane", "systemctl", "restart", "kubelet")

    @pytest.mark.asyncio
    async def test_ptp_kubelet_restart_failure_is_tolerated(
        self, host: FakeHost, inspector: RuntimeInspector,
    ):
        host.add_container("demo-control-plane")
        host.script(
            CONTAINER, "exec", "demo-control-plane", "systemctl",
            result=fail("Failed to restart kubelet.service"),
        )

        result = await install_cni(CniPlugin.PTP, inspector, "demo-control-plane")

        assert result.installed

    @pytest.mark.asyncio
    async def test_cilium_runs_installer(self, host: FakeHost, inspector: RuntimeInspector):
        host.add_container("demo-control-plane")

        result = await install_cni(CniPlugin.CILIUM, inspector, "demo-control-plane")

        assert result.installed
        install = host.commands()[-1]
        assert "cilium install --version 1.18.2" in install[-1]
        assert "KUBECONFIG=/etc/kubernetes/admin.conf" in install[-1]

    @pytest.mark.asyncio
    async def test_cilium_download_failure_is_reported(
        self, host: FakeHost, inspector: RuntimeInspector,
    ):
        host.add_container("demo-control-plane")
        host.script(CONTAINER, "exec", "demo-control-plane", "sh", result=fail("curl: (6) Could not resolve host"))

        result = await install_cni(CniPlugin.CILIUM, inspector, "demo-control-plane")

        assert not result.installed
        assert "Could not resolve host" in result.detail
