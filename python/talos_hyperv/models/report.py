"""
talos_hyperv/models/report.py

OperationReport collects the outcome of one lifecycle operation: the nodes it
touched, non-fatal warnings, and per-resource failures (destroy only).
"""

from __future__ import annotations

import logging
from typing import Dict, List

from pydantic import BaseModel, Field

from talos_hyperv.models.node import Node

logger = logging.getLogger(__name__)


class OperationReport(BaseModel):
    operation: str
    nodes: List[Node] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def fail(self, resource: str, message: str) -> None:
        logger.error("%s: %s", resource, message)
        self.failures[resource] = message

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        lines = [f"{self.operation}: {'completed' if self.ok else 'completed with failures'}"]
        lines += [
            f"  node {n.name} role={n.role.value} ip={n.ip_address or '-'} "
            f"vm={n.vm_state.value} membership={n.membership.value}"
            for n in self.nodes
        ]
        lines += [f"  WARNING: {w}" for w in self.warnings]
        lines += [f"  FAILED: {name}: {err}" for name, err in sorted(self.failures.items())]
        return "\n".join(lines)
