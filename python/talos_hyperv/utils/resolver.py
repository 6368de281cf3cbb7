"""
talos_hyperv/utils/resolver.py

Correlates hypervisor identity (VM name, MAC) with network and Kubernetes
identity (IPv4 address, node name).

The host neighbor (ARP) table is the only place a VM's DHCP-leased address is
visible, so every lookup here re-reads it; nothing is cached. Lookups are
inherently racy during a lease transition, which is why callers re-verify an
address with `confirm` right before pushing configuration to it.

Fallback order for `resolve_node`:
  1) exact VM name
  2) Kubernetes node name -> InternalIP -> neighbor MAC -> VM
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel

from talos_hyperv.errors import (
    AddressTimeout,
    AddressUnresolvable,
    MacAddressTimeout,
    NodeNotFound,
)
from talos_hyperv.models.cluster import PollSettings
from talos_hyperv.models.node import KubeNode, NeighborEntry, VMInfo, normalize_mac
from talos_hyperv.utils.async_command_runner import CommandError
from talos_hyperv.utils.async_retry import poll_until
from talos_hyperv.utils.hyperv import VMProvider

logger = logging.getLogger(__name__)


class NodeDirectory(Protocol):
    """The part of the Kubernetes client the resolver needs."""

    async def get_node(self, name: str) -> Optional[KubeNode]:
        ...

    async def list_nodes(self) -> List[KubeNode]:
        ...


class ResolvedNode(BaseModel):
    """A cluster member identified on both the hypervisor and Kubernetes side."""

    vm: VMInfo
    kube_node: Optional[KubeNode] = None
    ip_address: Optional[str] = None


def is_candidate_address(ip: str, gateway_filter: bool = True) -> bool:
    """
    True for an IPv4 address that can belong to a VM: not link-local,
    not loopback/multicast, and (with gateway_filter) not a `.1` gateway.
    """
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    if addr.is_link_local or addr.is_loopback or addr.is_multicast or addr.is_unspecified:
        return False
    if gateway_filter and ip.rsplit(".", 1)[-1] == "1":
        return False
    return True


class AddressResolver:
    def __init__(
        self,
        provider: VMProvider,
        polling: PollSettings,
        *,
        gateway_filter: bool = True,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        self.provider = provider
        self.polling = polling
        self.gateway_filter = gateway_filter
        self.cancel = cancel

    async def wait_for_mac(self, vm_name: str) -> str:
        """Poll until the VM's adapter reports a non-zero MAC."""

        async def check() -> Optional[str]:
            mac = await self.provider.get_mac_address(vm_name)
            return normalize_mac(mac) if mac else None

        return await poll_until(
            check,
            interval=self.polling.mac_interval,
            timeout=self.polling.mac_timeout,
            subject=vm_name,
            error=MacAddressTimeout,
            cancel=self.cancel,
        )

    async def lookup_ip(self, mac: str) -> Optional[str]:
        """One scan of the neighbor table for the first qualifying IPv4 entry of `mac`."""
        wanted = normalize_mac(mac)
        for entry in await self.provider.neighbor_table():
            if entry.mac_address == wanted and is_candidate_address(
                entry.ip_address, self.gateway_filter
            ):
                return entry.ip_address
        return None

    async def resolve_vm_address(self, vm_name: str) -> NeighborEntry:
        """
        Discover the current address of a running VM: wait for its MAC, then
        poll the neighbor table for it.

        Raises:
            MacAddressTimeout: The adapter never reported a MAC.
            AddressTimeout: No qualifying neighbor entry appeared in time.
        """
        mac = await self.wait_for_mac(vm_name)
        logger.info("VM %s has MAC %s; waiting for a neighbor entry", vm_name, mac)

        async def check() -> Optional[str]:
            return await self.lookup_ip(mac)

        ip = await poll_until(
            check,
            interval=self.polling.address_interval,
            timeout=self.polling.address_timeout,
            subject=vm_name,
            error=AddressTimeout,
            cancel=self.cancel,
            detail=f"MAC {mac}",
        )
        logger.info("VM %s resolved to %s", vm_name, ip)
        return NeighborEntry(ip_address=ip, mac_address=mac)

    async def confirm(self, vm_name: str, entry: NeighborEntry) -> NeighborEntry:
        """
        Re-check that `entry` is still current. If the MAC no longer maps to
        the same address, resolve again from scratch.
        """
        current = await self.lookup_ip(entry.mac_address)
        if current == entry.ip_address:
            return entry
        logger.warning(
            "Address of %s moved from %s to %s; re-resolving",
            vm_name,
            entry.ip_address,
            current,
        )
        return await self.resolve_vm_address(vm_name)

    async def find_vm_by_ip(self, ip: str, vms: List[VMInfo]) -> Optional[VMInfo]:
        """Reverse lookup: the VM whose MAC currently holds `ip` in the neighbor table."""
        macs_for_ip = {
            entry.mac_address
            for entry in await self.provider.neighbor_table()
            if entry.ip_address == ip
        }
        for vm in vms:
            if vm.mac_address and vm.mac_address in macs_for_ip:
                return vm
        return None

    async def kube_node_for_vm(
        self, vm: VMInfo, kube: NodeDirectory
    ) -> ResolvedNode:
        """
        Best-effort match of a VM to its Kubernetes node.

        Matches by the VM's current neighbor-table address first, then by a
        node named exactly like the VM (the ARP entry may have expired).
        """
        ip = await self.lookup_ip(vm.mac_address) if vm.mac_address else None
        if ip is not None:
            by_ip: Dict[str, KubeNode] = {
                n.internal_ip: n for n in await kube.list_nodes() if n.internal_ip
            }
            if ip in by_ip:
                return ResolvedNode(vm=vm, kube_node=by_ip[ip], ip_address=ip)

        named = await kube.get_node(vm.name)
        if named is None:
            return ResolvedNode(vm=vm, ip_address=ip)
        return ResolvedNode(vm=vm, kube_node=named, ip_address=ip or named.internal_ip)

    async def resolve_node(
        self,
        identifier: str,
        cluster_vms: List[VMInfo],
        kube: Optional[NodeDirectory],
    ) -> ResolvedNode:
        """
        Resolve an identifier that may be a VM name or a Kubernetes node name.

        Raises:
            NodeNotFound: Neither lookup matched.
            AddressUnresolvable: The Kubernetes node has no InternalIP.
        """
        exact = [vm for vm in cluster_vms if vm.name == identifier]
        if exact:
            if kube is None:
                return ResolvedNode(vm=exact[0])
            try:
                return await self.kube_node_for_vm(exact[0], kube)
            except (CommandError, ValueError) as exc:
                logger.warning("Could not match VM %s to a Kubernetes node: %s", identifier, exc)
                return ResolvedNode(vm=exact[0])

        if kube is None:
            raise NodeNotFound(identifier)
        kube_node = await kube.get_node(identifier)
        if kube_node is None:
            raise NodeNotFound(identifier)
        if not kube_node.internal_ip:
            raise AddressUnresolvable(identifier)

        vm = await self.find_vm_by_ip(kube_node.internal_ip, cluster_vms)
        if vm is None:
            raise NodeNotFound(identifier)
        logger.info(
            "Kubernetes node %s (%s) is VM %s", identifier, kube_node.internal_ip, vm.name
        )
        return ResolvedNode(vm=vm, kube_node=kube_node, ip_address=kube_node.internal_ip)
