#!/usr/bin/env python3
"""
talos_hyperv/cli/scale_add.py

Add one node to an existing cluster:

    python -m talos_hyperv.cli.scale_add --role worker
    python -m talos_hyperv.cli.scale_add --role controlplane --strict-join

Exits non-zero on provisioning or timeout failures; a node that is slow to
join Kubernetes only produces a warning unless --strict-join is given.
"""

from __future__ import annotations

import asyncio
import sys

from talos_hyperv.cli.common import (
    build_lifecycle,
    build_parser,
    load_settings,
    run_operation,
    setup_logging,
)
from talos_hyperv.models.node import NodeRole
from talos_hyperv.models.report import OperationReport


def main() -> int:
    parser = build_parser(
        "talos_hyperv.cli.scale_add", "Add a control-plane or worker node to the cluster."
    )
    parser.add_argument(
        "--role",
        required=True,
        choices=[r.value for r in NodeRole] + ["control-plane"],
        help="Role of the new node.",
    )
    parser.add_argument(
        "--strict-join",
        action="store_true",
        help="Fail instead of warning when the node does not join Kubernetes in time.",
    )
    args = parser.parse_args()
    setup_logging(args.verbose)
    settings = load_settings(args)
    if args.strict_join:
        settings = settings.model_copy(update={"strict_join": True})
    role = NodeRole.CONTROL_PLANE if args.role == "control-plane" else NodeRole(args.role)

    async def _add(cancel: asyncio.Event) -> OperationReport:
        lifecycle = build_lifecycle(settings, args.powershell, cancel)
        return await lifecycle.add_node(role)

    return run_operation(_add)


if __name__ == "__main__":
    sys.exit(main())
