#!/usr/bin/env python3
"""
talos_hyperv/cli/scale_remove.py

Remove one node, identified by VM name or Kubernetes node name:

    python -m talos_hyperv.cli.scale_remove talos-worker-02
    python -m talos_hyperv.cli.scale_remove talos-abc-xyz --force

Without --force the operator must type 'yes', and a failed drain aborts.
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
        "talos_hyperv.cli.scale_remove", "Drain and remove a node, then delete its VM and disk."
    )
    parser.add_argument("node", help="VM name or Kubernetes node name.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation and continue past a failed drain.",
    )
    args = parser.parse_args()
    setup_logging(args.verbose)
    settings = load_settings(args)

    async def _remove(cancel: asyncio.Event) -> OperationReport:
        lifecycle = build_lifecycle(settings, args.powershell, cancel)
        return await lifecycle.remove_node(args.node, force=args.force)

    return run_operation(_remove)


if __name__ == "__main__":
    sys.exit(main())
