"""
talos_hyperv/deployment/platform.py

Installs the platform stack on a running cluster, in order:
  1) Cilium (CNI)
  2) MetalLB (load balancer) + an L2 address pool carved from the node subnet
  3) ingress-nginx
  4) kube-prometheus-stack (monitoring)

The MetalLB pool is derived from the first node's InternalIP: the third octet
is aligned down to a 16 block and the pool is `.240`-`.250` of the last /24
in that block.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field

from talos_hyperv.errors import AddressUnresolvable, PreconditionError
from talos_hyperv.models.report import OperationReport
from talos_hyperv.utils.helm import HelmClient
from talos_hyperv.utils.k8s import KubeClient

logger = logging.getLogger(__name__)

METALLB_POOL_NAME = "talos-pool"


def metallb_pool(node_ip: str) -> Tuple[str, str]:
    """
    Example:
        metallb_pool("172.20.3.45") -> ("172.20.15.240", "172.20.15.250")
    """
    a, b, c, _ = ipaddress.IPv4Address(node_ip).packed
    block = (c & 0xF0) + 15
    return f"{a}.{b}.{block}.240", f"{a}.{b}.{block}.250"


class PlatformRelease(BaseModel):
    release: str
    chart: str
    repo: str
    namespace: str
    version: Optional[str] = None
    privileged_namespace: bool = False
    values: Dict[str, Any] = Field(default_factory=dict)


def platform_releases() -> List[PlatformRelease]:
    return [
        PlatformRelease(
            release="cilium",
            chart="cilium",
            repo="https://helm.cilium.io/",
            namespace="kube-system",
            values={
                "ipam": {"mode": "kubernetes"},
                "kubeProxyReplacement": False,
                "securityContext": {
                    "capabilities": {
                        "ciliumAgent": [
                            "CHOWN", "KILL", "NET_ADMIN", "NET_RAW", "IPC_LOCK",
                            "SYS_ADMIN", "SYS_RESOURCE", "DAC_OVERRIDE", "FOWNER",
                            "SETGID", "SETUID",
                        ],
                        "cleanCiliumState": ["NET_ADMIN", "SYS_ADMIN", "SYS_RESOURCE"],
                    }
                },
                "cgroup": {"autoMount": {"enabled": False}, "hostRoot": "/sys/fs/cgroup"},
            },
        ),
        PlatformRelease(
            release="metallb",
            chart="metallb",
            repo="https://metallb.github.io/metallb",
            namespace="metallb-system",
            privileged_namespace=True,
        ),
        PlatformRelease(
            release="ingress-nginx",
            chart="ingress-nginx",
            repo="https://kubernetes.github.io/ingress-nginx",
            namespace="ingress-nginx",
            values={"controller": {"service": {"type": "LoadBalancer"}}},
        ),
        PlatformRelease(
            release="kube-prometheus-stack",
            chart="kube-prometheus-stack",
            repo="https://prometheus-community.github.io/helm-charts",
            namespace="monitoring",
            privileged_namespace=True,
            values={"grafana": {"service": {"type": "LoadBalancer"}}},
        ),
    ]


def privileged_namespace_manifest(name: str) -> str:
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {
                "name": name,
                "labels": {
                    "pod-security.kubernetes.io/enforce": "privileged",
                    "pod-security.kubernetes.io/audit": "privileged",
                    "pod-security.kubernetes.io/warn": "privileged",
                },
            },
        },
        sort_keys=False,
    )


def metallb_pool_manifest(pool: Tuple[str, str], namespace: str = "metallb-system") -> str:
    docs = [
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "IPAddressPool",
            "metadata": {"name": METALLB_POOL_NAME, "namespace": namespace},
            "spec": {"addresses": [f"{pool[0]}-{pool[1]}"]},
        },
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "L2Advertisement",
            "metadata": {"name": METALLB_POOL_NAME, "namespace": namespace},
            "spec": {"ipAddressPools": [METALLB_POOL_NAME]},
        },
    ]
    return yaml.safe_dump_all(docs, sort_keys=False)


async def deploy_platform(kube: KubeClient, helm: HelmClient) -> OperationReport:
    """
    Install the platform stack in order. Any failure is fatal; re-running is
    safe because every install is an upgrade.

    Raises:
        PreconditionError: The cluster has no nodes.
        AddressUnresolvable: No node reports an InternalIP.
        CommandError: On any helm or kubectl failure.
    """
    report = OperationReport(operation="platform")
    nodes = await kube.list_nodes()
    if not nodes:
        raise PreconditionError("Cluster has no nodes; create it first.")
    with_ip = [n for n in nodes if n.internal_ip]
    if not with_ip:
        raise AddressUnresolvable(nodes[0].name)

    first = with_ip[0]
    assert first.internal_ip is not None
    pool = metallb_pool(first.internal_ip)
    logger.info("MetalLB pool %s-%s (from %s %s)", pool[0], pool[1], first.name, first.internal_ip)

    for rel in platform_releases():
        if rel.privileged_namespace:
            await kube.apply_manifest(privileged_namespace_manifest(rel.namespace))
        await helm.upgrade_install(
            rel.release,
            rel.chart,
            namespace=rel.namespace,
            repo=rel.repo,
            version=rel.version,
            values=rel.values,
        )
        if rel.release == "metallb":
            await kube.apply_manifest(metallb_pool_manifest(pool, rel.namespace))

    return report
