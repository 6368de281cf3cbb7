"""
talos_hyperv/models/node.py

Pydantic models for cluster members and the hypervisor/Kubernetes views of them:
 - NodeRole, VMState, Membership, LifecyclePhase
 - VMInfo: one VM as the hypervisor reports it
 - NeighborEntry: one row of the host neighbor (ARP) table
 - KubeNode: one Kubernetes node object, reduced to what the lifecycle needs
 - Node: the orchestrator's record for one cluster member
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

_MAC_CLEAN = re.compile(r"[^0-9A-Fa-f]")
CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"


def normalize_mac(raw: str) -> str:
    """
    Normalize a MAC address to upper-case, colon separated form.

    Hyper-V reports adapters as '00155D010203' while the neighbor table uses
    '00-15-5D-01-02-03'; both normalize to '00:15:5D:01:02:03'.
    """
    digits = _MAC_CLEAN.sub("", raw).upper()
    if len(digits) != 12:
        raise ValueError(f"Not a MAC address: {raw!r}")
    return ":".join(digits[i : i + 2] for i in range(0, 12, 2))


def is_zero_mac(mac: Optional[str]) -> bool:
    """True if the MAC is missing or all zeros (adapter not yet initialized)."""
    if not mac:
        return True
    return set(_MAC_CLEAN.sub("", mac)) <= {"0"}


class NodeRole(str, Enum):
    CONTROL_PLANE = "controlplane"
    WORKER = "worker"

    @property
    def machine_config_file(self) -> str:
        """File name `talosctl gen config` writes for this role."""
        return f"{self.value}.yaml"


class VMState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


class Membership(str, Enum):
    NOT_JOINED = "not-joined"
    JOINING = "joining"
    READY = "ready"
    ETCD_MEMBER = "etcd-member"
    REMOVED = "removed"


class LifecyclePhase(str, Enum):
    """Steps of the node add flow, in order."""

    PROVISIONING = "Provisioning"
    AWAITING_ADDRESS = "AwaitingAddress"
    CONFIG_APPLYING = "ConfigApplying"
    REBOOTING = "Rebooting"
    AWAITING_ADDRESS_AFTER_REBOOT = "AwaitingAddress(2)"
    AWAITING_API = "AwaitingAPI"
    JOIN_VERIFICATION = "JoinVerification"
    ETCD_VERIFICATION = "EtcdVerification"
    READY = "Ready"


class VMInfo(BaseModel):
    """A VM as reported by the hypervisor."""

    name: str
    state: VMState
    mac_address: Optional[str] = None
    disk_paths: List[str] = Field(default_factory=list)

    @field_validator("mac_address")
    @classmethod
    def _normalize(cls, val: Optional[str]) -> Optional[str]:
        if val is None or is_zero_mac(val):
            return None
        return normalize_mac(val)


class NeighborEntry(BaseModel):
    """A single IPv4 entry of the host neighbor table."""

    ip_address: str
    mac_address: str

    @field_validator("mac_address")
    @classmethod
    def _normalize(cls, val: str) -> str:
        return normalize_mac(val)


class KubeNode(BaseModel):
    """A Kubernetes node, reduced to name, labels, InternalIP and readiness."""

    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    internal_ip: Optional[str] = None
    ready: bool = False

    @property
    def role(self) -> NodeRole:
        if CONTROL_PLANE_LABEL in self.labels:
            return NodeRole.CONTROL_PLANE
        return NodeRole.WORKER


class Node(BaseModel):
    """
    The orchestrator's view of one cluster member.

    `name` is the VM name and never changes. `ip_address` may change across
    reboots since addresses are DHCP leased, so it is rediscovered rather than
    trusted after any power cycle.
    """

    name: str
    role: NodeRole
    mac_address: Optional[str] = None
    ip_address: Optional[str] = None
    vm_state: VMState = VMState.ABSENT
    membership: Membership = Membership.NOT_JOINED
    phase: Optional[LifecyclePhase] = None
    kube_name: Optional[str] = None
