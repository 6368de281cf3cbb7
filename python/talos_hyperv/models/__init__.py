"""
models/__init__.py

Aggregate imports so the lifecycle models can be accessed directly from this package.
"""

from talos_hyperv.models.cluster import ClusterSettings, PollSettings, VMSizing
from talos_hyperv.models.node import (
    KubeNode,
    LifecyclePhase,
    Membership,
    NeighborEntry,
    Node,
    NodeRole,
    VMInfo,
    VMState,
)
from talos_hyperv.models.report import OperationReport
from talos_hyperv.models.talos import MachineConfigEndpoint, TalosClientConfig

__all__ = [
    "ClusterSettings",
    "PollSettings",
    "VMSizing",
    "KubeNode",
    "LifecyclePhase",
    "Membership",
    "NeighborEntry",
    "Node",
    "NodeRole",
    "VMInfo",
    "VMState",
    "OperationReport",
    "MachineConfigEndpoint",
    "TalosClientConfig",
]
