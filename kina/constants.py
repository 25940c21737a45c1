"""Names, paths and defaults shared across kina."""

from __future__ import annotations

from pathlib import Path

LABEL_PREFIX = "io.kina"
CLUSTER_LABEL = f"{LABEL_PREFIX}.cluster"
ROLE_LABEL = f"{LABEL_PREFIX}.role"
PRIMARY_LABEL = f"{LABEL_PREFIX}.primary"
SINGLE_NODE_LABEL = f"{LABEL_PREFIX}.single-node"
IMAGE_LABEL = f"{LABEL_PREFIX}.image"
CNI_LABEL = f"{LABEL_PREFIX}.cni"
CREATED_LABEL = f"{LABEL_PREFIX}.created"

COMBINED_ROLE = "combined"
NODE_SUFFIX = "control-plane"
NETWORK_PREFIX = "kina"

DEFAULT_CLUSTER_NAME = "kina"
DEFAULT_IMAGE = "kindest/node:v1.31.0"
DEFAULT_KUBERNETES_VERSION = "v1.31.0"
DEFAULT_POD_SUBNET = "10.244.0.0/16"
DEFAULT_SERVICE_SUBNET = "10.96.0.0/16"
DEFAULT_DNS_DOMAIN = "cluster.local"
API_SERVER_PORT = 6443

# seconds to wait for readiness after create; 0 skips the wait
DEFAULT_WAIT_TIMEOUT = 0
DEFAULT_CSR_TIMEOUT = 60
CSR_POLL_INTERVAL = 5.0
RUNNING_POLL_INTERVAL = 2.0
RUNNING_POLL_ATTEMPTS = 30
STOP_SETTLE_SECONDS = 5.0
API_SETTLE_SECONDS = 10.0

CILIUM_VERSION = "1.18.2"

# Paths inside the node
KUBEADM_CONFIG_PATH = "/kind/kubeadm.conf"
ADMIN_KUBECONFIG_PATH = "/etc/kubernetes/admin.conf"
PTP_CONFLIST_PATH = "/etc/cni/net.d/10-ptp.conflist"
CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane:NoSchedule"

KUBELET_SERVING_SIGNER = "kubernetes.io/kubelet-serving"

GLOBAL_CONFIG_PATH = Path.home() / ".config" / "kina" / "config.toml"
PROJECT_CONFIG_NAME = "kina.toml"
KUBE_DIR = Path.home() / ".kube"

CONTAINER_CLI_CANDIDATES = (
    "/usr/local/bin/container",
    "/opt/homebrew/bin/container",
    "/usr/local/bin/apple-container",
    "/opt/homebrew/bin/apple-container",
)
CONTAINER_CLI_NAMES = ("container", "apple-container")


def node_name(cluster_name: str) -> str:
    return f"{cluster_name}-{NODE_SUFFIX}"


def network_name(cluster_name: str) -> str:
    return f"{NETWORK_PREFIX}-{cluster_name}"


def admin_user(cluster_name: str) -> str:
    return f"{cluster_name}-admin"
