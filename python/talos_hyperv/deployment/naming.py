"""
talos_hyperv/deployment/naming.py

VM names follow `<cluster>-<role>-<NN>`. The next number for a role is one more
than the highest number among VMs that currently exist, so gaps left by
removed nodes are never backfilled below the current maximum.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional, Pattern

from talos_hyperv.models.node import NodeRole


def node_pattern(cluster_name: str, role: Optional[NodeRole] = None) -> Pattern[str]:
    roles = role.value if role else "|".join(r.value for r in NodeRole)
    return re.compile(rf"^{re.escape(cluster_name)}-({roles})-(\d+)$")


def format_node_name(cluster_name: str, role: NodeRole, number: int) -> str:
    return f"{cluster_name}-{role.value}-{number:02d}"


def is_cluster_vm(cluster_name: str, vm_name: str) -> bool:
    return node_pattern(cluster_name).match(vm_name) is not None


def role_from_name(cluster_name: str, vm_name: str) -> Optional[NodeRole]:
    match = node_pattern(cluster_name).match(vm_name)
    return NodeRole(match.group(1)) if match else None


def next_node_name(
    cluster_name: str, role: NodeRole, existing_names: Iterable[str]
) -> str:
    """
    Example:
        next_node_name("talos", NodeRole.WORKER, ["talos-worker-01", "talos-worker-03"])
        -> "talos-worker-04"
    """
    pattern = node_pattern(cluster_name, role)
    numbers = [
        int(m.group(2)) for m in (pattern.match(n) for n in existing_names) if m
    ]
    return format_node_name(cluster_name, role, max(numbers, default=0) + 1)
