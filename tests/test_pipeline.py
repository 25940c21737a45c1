from __future__ import annotations

import pytest
import yaml
from fakes import CA_DATA, CONTAINER, FakeHost, fail

from kina.bootstrap.cni import CniPlugin
from kina.bootstrap.pipeline import (
    BootstrapPipeline,
    BootstrapRequest,
    Step,
    node_container_spec,
)
from kina.core.exceptions import BootstrapError
from kina.kubeconfig import KubeconfigManager
from kina.runtime.inspector import RuntimeInspector

pytestmark = [pytest.mark.unit]


@pytest.fixture
def pipeline(inspector: RuntimeInspector, kubeconfigs: KubeconfigManager) -> BootstrapPipeline:
    return BootstrapPipeline(inspector, kubeconfigs)


REQUEST = BootstrapRequest(cluster_name="demo", image="kindest/node:v1.31.0")


class TestNodeContainerSpec:
    def test_labels_and_runtime_settings(self):
        spec = node_container_spec(BootstrapRequest("demo", "kindest/node:v1.31.0", cni=CniPlugin.CILIUM))
        assert spec.name == "demo-control-plane"
        assert spec.labels["io.kina.cluster"] == "demo"
        assert spec.labels["io.kina.role"] == "combined"
        assert spec.labels["io.kina.primary"] == "true"
        assert spec.labels["io.kina.single-node"] == "true"
        assert spec.labels["io.kina.image"] == "kindest/node:v1.31.0"
        assert spec.labels["io.kina.cni"] == "cilium"
        assert spec.labels["io.kina.created"].endswith("Z")
        assert spec.tmpfs == ("/tmp", "/run", "/run/lock")
        assert spec.env == {
            "container": "docker",
            "HOSTNAME": "demo-control-plane",
            "KINA_NODE_TYPE": "single-node",
        }
        assert spec.command == ("/sbin/init",)


class TestBootstrapPipeline:
    @pytest.mark.asyncio
    async def test_demo_cluster_bound_to_vm_address(
        self, host: FakeHost, pipeline: BootstrapPipeline, kube_dir,
    ):
        result = await pipeline.run(REQUEST)

        node = host.containers["demo-control-plane"]
        assert result.vm_ip == node.address
        assert "/" not in result.vm_ip

        docs = {d["kind"]: d for d in yaml.safe_load_all(node.files["/kind/kubeadm.conf"])}
        assert docs["InitConfiguration"]["localAPIEndpoint"]["advertiseAddress"] == node.address
        assert docs["ClusterConfiguration"]["controlPlaneEndpoint"] == f"{node.address}:6443"

        merged = yaml.safe_load((kube_dir / "config").read_text())
        [cluster] = merged["clusters"]
        assert cluster["name"] == "demo"
        assert cluster["cluster"]["server"] == f"https://{node.address}:6443"
        assert cluster["cluster"]["certificate-authority-data"] == CA_DATA
        assert [u["name"] for u in merged["users"]] == ["demo-admin"]
        assert result.taint_removed
        assert result.cni_installed
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, host: FakeHost, pipeline: BootstrapPipeline):
        await pipeline.run(REQUEST)

        container_calls = host.commands()
        kinds = []
        for args in container_calls:
            if args[0] == "exec":
                cmd = args[2:] if args[1] != "-i" else args[3:]
                kinds.append(cmd[0] if cmd[0] != "sh" else cmd[-1].split()[-1])
            else:
                kinds.append(args[0])
        assert kinds.index("run") < kinds.index("/kind/kubeadm.conf")
        assert kinds.index("/kind/kubeadm.conf") < kinds.index("kubeadm")
        assert kinds.index("kubeadm") < kinds.index("cat")
        assert kinds.index("cat") < kinds.index("kubectl")
        assert kinds.index("kubectl") < kinds.index("/etc/cni/net.d/10-ptp.conflist")

    @pytest.mark.asyncio
    async def test_kubeconfig_written_before_cni(self, host: FakeHost, pipeline: BootstrapPipeline, kube_dir):
        host.script(CONTAINER, "exec", "-i", "demo-control-plane", "sh", "-c",
                    "mkdir -p /etc/cni/net.d && cat > /etc/cni/net.d/10-ptp.conflist",
                    result=fail("read-only file system"))

        result = await pipeline.run(REQUEST)

        assert (kube_dir / "demo").is_file()
        assert not result.cni_installed
        [warning] = result.warnings
        assert warning.step is Step.INSTALL_CNI
        assert "read-only file system" in warning.message
        assert warning.remediation == "kina delete demo && kina create demo --cni ptp"

    @pytest.mark.asyncio
    async def test_taint_failure_is_a_warning(self, host: FakeHost, pipeline: BootstrapPipeline):
        host.script(CONTAINER, "exec", "demo-control-plane", "kubectl",
                    result=fail("Unable to connect to the server"))

        result = await pipeline.run(REQUEST)

        assert not result.taint_removed
        assert result.cni_installed
        [warning] = result.warnings
        assert warning.step is Step.REMOVE_TAINT
        assert "taint nodes demo-control-plane" in warning.remediation

    @pytest.mark.asyncio
    async def test_taint_already_gone_is_fine(self, host: FakeHost, pipeline: BootstrapPipeline):
        host.script(CONTAINER, "exec", "demo-control-plane", "kubectl",
                    result=fail('error: taint "node-role.kubernetes.io/control-plane:NoSchedule" not found'))

        result = await pipeline.run(REQUEST)

        assert result.taint_removed
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_kubeadm_failure_names_step_and_output(self, host: FakeHost, pipeline: BootstrapPipeline):
        host.fail_kubeadm = True

        with pytest.raises(BootstrapError) as info:
            await pipeline.run(REQUEST)

        assert info.value.step == Step.KUBEADM_INIT
        assert "Using Kubernetes version" in info.value.reason
        assert "wait-control-plane" in info.value.reason

    @pytest.mark.asyncio
    async def test_create_failure(self, host: FakeHost, pipeline: BootstrapPipeline):
        host.script(CONTAINER, "run", result=fail("image not found: kindest/node:v9"))

        with pytest.raises(BootstrapError, match="create-container") as info:
            await pipeline.run(REQUEST)

        assert info.value.step == Step.CREATE_CONTAINER

    @pytest.mark.asyncio
    async def test_never_running(self, host: FakeHost, pipeline: BootstrapPipeline):
        host.polls_until_running = 1000

        with pytest.raises(BootstrapError) as info:
            await pipeline.run(REQUEST)

        assert info.value.step == Step.WAIT_RUNNING
        assert "failed to become ready" in info.value.reason

    @pytest.mark.asyncio
    async def test_kubeconfig_extract_failure(self, host: FakeHost, pipeline: BootstrapPipeline):
        host.script(CONTAINER, "exec", "demo-control-plane", "cat", result=fail("Permission denied"))

        with pytest.raises(BootstrapError) as info:
            await pipeline.run(REQUEST)

        assert info.value.step == Step.KUBECONFIG
