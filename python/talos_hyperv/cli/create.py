#!/usr/bin/env python3
"""
talos_hyperv/cli/create.py

Create a new cluster: one control-plane VM and one worker VM, bootstrap the
control plane, and write talosconfig/kubeconfig to the output directory.

    python -m talos_hyperv.cli.create --config cluster.yaml
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
from talos_hyperv.models.report import OperationReport


def main() -> int:
    parser = build_parser(
        "talos_hyperv.cli.create",
        "Create a Talos cluster (1 control plane + 1 worker) on Hyper-V.",
    )
    parser.add_argument(
        "--strict-join",
        action="store_true",
        help="Fail instead of warning when a node does not join Kubernetes in time.",
    )
    args = parser.parse_args()
    setup_logging(args.verbose)
    settings = load_settings(args)
    if args.strict_join:
        settings = settings.model_copy(update={"strict_join": True})

    async def _create(cancel: asyncio.Event) -> OperationReport:
        lifecycle = build_lifecycle(settings, args.powershell, cancel)
        return await lifecycle.create_cluster()

    return run_operation(_create)


if __name__ == "__main__":
    sys.exit(main())
