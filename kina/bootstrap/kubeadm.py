"""Render the kubeadm configuration for a single-node control plane."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml

from kina.constants import (
    API_SERVER_PORT,
    DEFAULT_DNS_DOMAIN,
    DEFAULT_KUBERNETES_VERSION,
    DEFAULT_POD_SUBNET,
    DEFAULT_SERVICE_SUBNET,
)

KUBEADM_API = "kubeadm.k8s.io/v1beta3"
CRI_SOCKET = "unix:///run/containerd/containerd.sock"


@dataclass(frozen=True, slots=True)
class KubeadmParams:
    cluster_name: str
    node_name: str
    node_ip: str
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    pod_subnet: str = DEFAULT_POD_SUBNET
    service_subnet: str = DEFAULT_SERVICE_SUBNET
    dns_domain: str = DEFAULT_DNS_DOMAIN

    @property
    def endpoint(self) -> str:
        return f"{self.node_ip}:{API_SERVER_PORT}"


def _node_registration(p: KubeadmParams) -> dict[str, Any]:
    return {
        "name": p.node_name,
        "criSocket": CRI_SOCKET,
        "kubeletExtraArgs": {
            "node-ip": p.node_ip,
            "provider-id": f"kind://container/{p.cluster_name}/{p.node_name}",
        },
    }


def kubeadm_documents(p: KubeadmParams) -> list[dict[str, Any]]:
    """The five kubeadm/kubelet/kube-proxy documents, bound to the node address.

    The API server advertises, and is reached through, the VM address; the
    loopback default would be unreachable from the host.
    """
    return [
        {
            "apiVersion": KUBEADM_API,
            "kind": "InitConfiguration",
            "localAPIEndpoint": {
                "advertiseAddress": p.node_ip,
                "bindPort": API_SERVER_PORT,
            },
            "nodeRegistration": _node_registration(p),
        },
        {
            "apiVersion": KUBEADM_API,
            "kind": "ClusterConfiguration",
            "kubernetesVersion": p.kubernetes_version,
            "clusterName": p.cluster_name,
            "controlPlaneEndpoint": p.endpoint,
            "apiServer": {
                "certSANs": [p.node_ip, "localhost", "127.0.0.1"],
                "extraArgs": {"runtime-config": "api/all=true"},
            },
            "networking": {
                "serviceSubnet": p.service_subnet,
                "podSubnet": p.pod_subnet,
                "dnsDomain": p.dns_domain,
            },
            "controllerManager": {
                "extraArgs": {"enable-hostpath-provisioner": "true"},
            },
            "scheduler": {},
            "etcd": {"local": {"dataDir": "/var/lib/etcd"}},
        },
        {
            "apiVersion": KUBEADM_API,
            "kind": "JoinConfiguration",
            "nodeRegistration": _node_registration(p),
            "discovery": {
                "bootstrapToken": {
                    "apiServerEndpoint": p.endpoint,
                    "token": "abcdef.0123456789abcdef",
                    "unsafeSkipCAVerification": True,
                },
            },
        },
        {
            "apiVersion": "kubelet.config.k8s.io/v1beta1",
            "kind": "KubeletConfiguration",
            "cgroupDriver": "systemd",
            "failSwapOn": False,
            "authentication": {
                "anonymous": {"enabled": False},
                "webhook": {"enabled": True},
            },
            "authorization": {"mode": "Webhook"},
            "serverTLSBootstrap": True,
        },
        {
            "apiVersion": "kubeproxy.config.k8s.io/v1alpha1",
            "kind": "KubeProxyConfiguration",
            "bindAddress": "0.0.0.0",
            "healthzBindAddress": "0.0.0.0:10256",
            "metricsBindAddress": "0.0.0.0:10249",
            "clusterCIDR": p.pod_subnet,
        },
    ]


def render_kubeadm_config(p: KubeadmParams) -> str:
    return yaml.safe_dump_all(kubeadm_documents(p), sort_keys=False, default_flow_style=False)
