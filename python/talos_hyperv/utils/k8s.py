"""
talos_hyperv/utils/k8s.py

Node-level Kubernetes operations via `kubectl`, always against an explicit
kubeconfig path: list/get nodes, drain, delete, wait for readiness, and
`apply -f -` for manifests.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from talos_hyperv.models.node import KubeNode
from talos_hyperv.utils.async_command_runner import CommandError, run_command


def kube_node_from_json(item: Dict[str, Any]) -> KubeNode:
    """Reduce a v1 Node object to a KubeNode."""
    meta = item.get("metadata", {})
    status = item.get("status", {})
    internal_ips = [
        addr.get("address")
        for addr in status.get("addresses", [])
        if addr.get("type") == "InternalIP"
    ]
    ready = any(
        cond.get("type") == "Ready" and cond.get("status") == "True"
        for cond in status.get("conditions", [])
    )
    return KubeNode(
        name=meta.get("name", ""),
        labels=meta.get("labels") or {},
        internal_ip=internal_ips[0] if internal_ips else None,
        ready=ready,
    )


class KubeClient:
    def __init__(self, kubeconfig: str, executable: str = "kubectl") -> None:
        self.kubeconfig = kubeconfig
        self.executable = executable

    def _cmd(self, *args: str) -> List[str]:
        return [self.executable, "--kubeconfig", self.kubeconfig] + list(args)

    async def list_nodes(self) -> List[KubeNode]:
        raw = await run_command(self._cmd("get", "nodes", "-o", "json"), retries=2)
        return [kube_node_from_json(item) for item in json.loads(raw).get("items", [])]

    async def get_node(self, name: str) -> Optional[KubeNode]:
        """Return the node, or None if Kubernetes reports NotFound."""
        try:
            raw = await run_command(self._cmd("get", "node", name, "-o", "json"))
        except CommandError as ex:
            if "NotFound" in ex.stderr or "not found" in ex.stderr:
                return None
            raise
        return kube_node_from_json(json.loads(raw))

    async def drain(self, name: str, timeout: float) -> None:
        await run_command(
            self._cmd(
                "drain",
                name,
                "--ignore-daemonsets",
                "--delete-emptydir-data",
                f"--timeout={int(timeout)}s",
            ),
            timeout=timeout + 30,
        )

    async def delete_node(self, name: str) -> None:
        await run_command(self._cmd("delete", "node", name, "--wait=false"))

    async def wait_ready(self, name: str, timeout: float) -> bool:
        try:
            await run_command(
                self._cmd(
                    "wait", "--for=condition=Ready", f"node/{name}", f"--timeout={int(timeout)}s"
                ),
                timeout=timeout + 30,
            )
        except CommandError:
            return False
        return True

    async def apply_manifest(self, manifest: str) -> None:
        await run_command(self._cmd("apply", "-f", "-"), input_data=manifest, retries=3, retry_delay=10.0)
