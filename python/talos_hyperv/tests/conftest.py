"""
Pytest configuration, in-memory collaborators and fixtures.

FakeProvider, FakeTalos and FakeKube stand in for Hyper-V, talosctl and
kubectl. Together they simulate a DHCP network: every VM boot hands out the
next address from a per-VM plan, and a node registers with Kubernetes once
its Talos API answers.
"""

import itertools
import os
from typing import Dict, List, Optional

import pytest
import yaml

from talos_hyperv.deployment.lifecycle import NodeLifecycle
from talos_hyperv.models.cluster import ClusterSettings, PollSettings, VMSizing
from talos_hyperv.models.node import (
    CONTROL_PLANE_LABEL,
    KubeNode,
    NeighborEntry,
    VMInfo,
    VMState,
    normalize_mac,
)
from talos_hyperv.secrets.artifacts import ClusterArtifacts
from talos_hyperv.utils.async_command_runner import CommandError
from talos_hyperv.utils.hyperv import VMProvider
from talos_hyperv.utils.talosctl import EtcdMember


# ============================================
# Fakes
# ============================================


class FakeProvider(VMProvider):
    """Hyper-V stand-in with a scripted DHCP server."""

    def __init__(self) -> None:
        self.vms: Dict[str, VMInfo] = {}
        self.disks: set = set()
        self.neighbors: List[NeighborEntry] = []
        self.ip_plans: Dict[str, List[str]] = {}
        self.mac_delays: Dict[str, int] = {}
        self.fail_delete: set = set()
        self.calls: List[tuple] = []
        self._macs = itertools.count(1)
        self._ips = itertools.count(10)

    # -- helpers for tests --

    def add_existing_vm(self, name: str, ip: Optional[str] = None, state: VMState = VMState.RUNNING) -> VMInfo:
        mac = self._next_mac()
        disk = f"/vhd/{name}.vhdx"
        vm = VMInfo(name=name, state=state, mac_address=mac, disk_paths=[disk])
        self.vms[name] = vm
        self.disks.add(disk)
        if ip:
            self.neighbors.append(NeighborEntry(ip_address=ip, mac_address=mac))
        return vm

    def set_ip(self, mac: str, ip: Optional[str]) -> None:
        wanted = normalize_mac(mac)
        self.neighbors = [n for n in self.neighbors if n.mac_address != wanted]
        if ip:
            self.neighbors.append(NeighborEntry(ip_address=ip, mac_address=wanted))

    def vm_for_ip(self, ip: str) -> Optional[VMInfo]:
        macs = {n.mac_address for n in self.neighbors if n.ip_address == ip}
        return next((vm for vm in self.vms.values() if vm.mac_address in macs), None)

    def _next_mac(self) -> str:
        return "00155D{:06X}".format(next(self._macs))

    def _boot(self, name: str) -> None:
        vm = self.vms[name]
        plan = self.ip_plans.get(name)
        ip = plan.pop(0) if plan else f"192.168.50.{next(self._ips)}"
        assert vm.mac_address is not None
        self.set_ip(vm.mac_address, ip)

    # -- VMProvider --

    async def list_vms(self, name_pattern: str) -> List[VMInfo]:
        prefix = name_pattern.rstrip("*")
        return [vm.model_copy() for name, vm in sorted(self.vms.items()) if name.startswith(prefix)]

    async def get_vm(self, name: str) -> Optional[VMInfo]:
        vm = self.vms.get(name)
        return vm.model_copy() if vm else None

    async def create_vm(self, name, sizing, switch_name, vhd_path, boot_media_path) -> None:
        self.calls.append(("create", name, sizing.cpu, vhd_path, boot_media_path))
        self.vms[name] = VMInfo(
            name=name, state=VMState.STOPPED, mac_address=self._next_mac(), disk_paths=[vhd_path]
        )
        self.disks.add(vhd_path)

    async def start_vm(self, name: str) -> None:
        self.calls.append(("start", name))
        self.vms[name].state = VMState.RUNNING
        self._boot(name)

    async def stop_vm(self, name: str) -> None:
        self.calls.append(("stop", name))
        vm = self.vms[name]
        vm.state = VMState.STOPPED
        if vm.mac_address:
            self.set_ip(vm.mac_address, None)

    async def eject_boot_media(self, name: str) -> None:
        self.calls.append(("eject", name))

    async def delete_vm(self, name: str) -> None:
        self.calls.append(("delete", name))
        if name in self.fail_delete:
            raise CommandError(f"Remove-VM failed for {name}", 1)
        self.vms.pop(name)

    async def delete_disk(self, path: str) -> bool:
        self.calls.append(("delete_disk", path))
        if path in self.disks:
            self.disks.remove(path)
            return True
        return False

    async def get_mac_address(self, name: str) -> Optional[str]:
        remaining = self.mac_delays.get(name, 0)
        if remaining > 0:
            self.mac_delays[name] = remaining - 1
            return None
        vm = self.vms.get(name)
        return vm.mac_address if vm else None

    async def neighbor_table(self) -> List[NeighborEntry]:
        return list(self.neighbors)


class FakeKube:
    def __init__(self) -> None:
        self.nodes: Dict[str, KubeNode] = {}
        self.drain_error: Optional[CommandError] = None
        self.delete_error: Optional[CommandError] = None
        self.list_error: Optional[CommandError] = None
        self.auto_join = True
        self.join_address: Optional[str] = None
        self.calls: List[tuple] = []
        self._hostnames = itertools.count(1)

    def register(self, ip: str, control_plane: bool, name: Optional[str] = None, ready: bool = True) -> KubeNode:
        name = name or f"talos-gen-{next(self._hostnames):03d}"
        labels = {CONTROL_PLANE_LABEL: ""} if control_plane else {}
        node = KubeNode(name=name, labels=labels, internal_ip=ip, ready=ready)
        self.nodes[name] = node
        return node

    async def list_nodes(self) -> List[KubeNode]:
        if self.list_error:
            raise self.list_error
        return list(self.nodes.values())

    async def get_node(self, name: str) -> Optional[KubeNode]:
        return self.nodes.get(name)

    async def drain(self, name: str, timeout: float) -> None:
        self.calls.append(("drain", name))
        if self.drain_error:
            raise self.drain_error

    async def delete_node(self, name: str) -> None:
        self.calls.append(("delete_node", name))
        if self.delete_error:
            raise self.delete_error
        self.nodes.pop(name, None)

    async def wait_ready(self, name: str, timeout: float) -> bool:
        node = self.nodes.get(name)
        return bool(node and node.ready)


class FakeTalos:
    """talosctl stand-in. A node joins Kubernetes the first time its API answers."""

    def __init__(self, provider: FakeProvider, kube: FakeKube, cluster_name: str) -> None:
        self.provider = provider
        self.kube = kube
        self.cluster_name = cluster_name
        self.calls: List[tuple] = []
        self.apply_error: Optional[CommandError] = None
        self.etcd_error: Optional[CommandError] = None
        self.api_down: set = set()
        self.healthy = True
        self.removed_members: List[str] = []
        self.endpoint: Optional[str] = None
        self._joined: set = set()

    async def gen_config(self, cluster_name, endpoint_url, output_dir, install_disk) -> None:
        self.calls.append(("gen_config", endpoint_url))
        os.makedirs(output_dir, exist_ok=True)
        for role in ("controlplane", "worker"):
            with open(os.path.join(output_dir, f"{role}.yaml"), "w") as f:
                yaml.safe_dump({"cluster": {"controlPlane": {"endpoint": endpoint_url}}}, f)
        with open(os.path.join(output_dir, "talosconfig"), "w") as f:
            yaml.safe_dump(
                {"context": cluster_name, "contexts": {cluster_name: {"endpoints": []}}}, f
            )
        self.talosconfig_dir = output_dir

    async def apply_config(self, ip: str, config_file: str) -> None:
        self.calls.append(("apply", ip, os.path.basename(config_file)))
        if self.apply_error:
            raise self.apply_error

    async def set_endpoint(self, ip: str) -> None:
        self.calls.append(("set_endpoint", ip))
        self.endpoint = ip
        path = os.path.join(self.talosconfig_dir, "talosconfig")
        with open(path) as f:
            data = yaml.safe_load(f)
        data["contexts"][data["context"]]["endpoints"] = [ip]
        with open(path, "w") as f:
            yaml.safe_dump(data, f)

    async def bootstrap(self, ip: str) -> None:
        self.calls.append(("bootstrap", ip))

    async def version(self, ip: str, timeout: float = 10.0) -> bool:
        self.calls.append(("version", ip))
        if ip in self.api_down:
            return False
        vm = self.provider.vm_for_ip(ip)
        if vm is not None and vm.name not in self._joined and self.kube.auto_join:
            self._joined.add(vm.name)
            self.kube.register(self.kube.join_address or ip, control_plane="-controlplane-" in vm.name)
        return True

    async def health(self, ip: str, wait_timeout: float) -> bool:
        self.calls.append(("health", ip))
        return self.healthy

    async def kubeconfig(self, ip: str, destination: str) -> None:
        self.calls.append(("kubeconfig", ip))
        with open(destination, "w") as f:
            f.write("apiVersion: v1\nkind: Config\n")

    async def etcd_members(self, ip: str) -> List[EtcdMember]:
        self.calls.append(("etcd_members", ip))
        if self.etcd_error:
            raise self.etcd_error
        return [
            EtcdMember(member_id=f"{i:016x}", hostname=n.name, peer_urls=[f"https://{n.internal_ip}:2380"])
            for i, n in enumerate(self.kube.nodes.values())
            if n.role.value == "controlplane"
        ]

    async def etcd_remove_member(self, ip: str, hostname: str) -> None:
        self.calls.append(("etcd_remove_member", ip, hostname))
        self.removed_members.append(hostname)


# ============================================
# Fixtures
# ============================================


@pytest.fixture
def settings(tmp_path) -> ClusterSettings:
    image = tmp_path / "talos.iso"
    image.write_bytes(b"iso")
    zero = {k: 0.0 for k in PollSettings.model_fields}
    return ClusterSettings(
        cluster_name="lab",
        output_dir=str(tmp_path / "out"),
        image_path=str(image),
        vhd_dir="/vhd",
        control_plane=VMSizing(cpu=2),
        worker=VMSizing(cpu=2),
        polling=PollSettings(**zero),
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def talos(provider, kube, settings) -> FakeTalos:
    return FakeTalos(provider, kube, settings.cluster_name)


@pytest.fixture
def answers() -> List[str]:
    """Queue of operator answers returned by the confirmation prompt."""
    return []


@pytest.fixture
def prompts() -> List[str]:
    return []


@pytest.fixture
def lifecycle(settings, provider, talos, kube, answers, prompts) -> NodeLifecycle:
    def prompt(question: str) -> str:
        prompts.append(question)
        return answers.pop(0) if answers else ""

    async def fetch_image(url: str, path: str) -> bool:
        return False

    return NodeLifecycle(
        settings,
        provider,
        talos,
        kube,
        artifacts=ClusterArtifacts(settings.output_dir),
        prompt=prompt,
        fetch_image=fetch_image,
    )
