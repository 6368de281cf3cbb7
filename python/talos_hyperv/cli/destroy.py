#!/usr/bin/env python3
"""
talos_hyperv/cli/destroy.py

Delete every VM of the cluster, their disks, and the credential directory.
Works even when the cluster itself is unreachable.

    python -m talos_hyperv.cli.destroy --force
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
    parser = build_parser("talos_hyperv.cli.destroy", "Tear down the whole cluster.")
    parser.add_argument("--force", action="store_true", help="Skip confirmation.")
    args = parser.parse_args()
    setup_logging(args.verbose)
    settings = load_settings(args)

    async def _destroy(cancel: asyncio.Event) -> OperationReport:
        # Only Hyper-V and the filesystem are touched; talosctl/kubectl are not required.
        lifecycle = build_lifecycle(
            settings, args.powershell, cancel, tools=[args.powershell]
        )
        return await lifecycle.destroy_cluster(force=args.force)

    return run_operation(_destroy)


if __name__ == "__main__":
    sys.exit(main())
