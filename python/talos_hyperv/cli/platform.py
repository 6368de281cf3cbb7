#!/usr/bin/env python3
"""
talos_hyperv/cli/platform.py

Install the platform stack (Cilium, MetalLB, ingress-nginx,
kube-prometheus-stack) on a created cluster.

    python -m talos_hyperv.cli.platform --output-dir _out
"""

from __future__ import annotations

import asyncio
import sys

from talos_hyperv.cli.common import (
    build_parser,
    load_settings,
    run_operation,
    setup_logging,
)
from talos_hyperv.deployment.platform import deploy_platform
from talos_hyperv.models.report import OperationReport
from talos_hyperv.secrets.artifacts import ClusterArtifacts
from talos_hyperv.utils.async_command_runner import require_tools
from talos_hyperv.utils.helm import HelmClient
from talos_hyperv.utils.k8s import KubeClient


def main() -> int:
    parser = build_parser("talos_hyperv.cli.platform", "Install CNI, load balancer, ingress and monitoring.")
    args = parser.parse_args()
    setup_logging(args.verbose)
    settings = load_settings(args)

    async def _platform(cancel: asyncio.Event) -> OperationReport:
        require_tools(["kubectl", "helm"])
        artifacts = ClusterArtifacts(settings.output_dir)
        artifacts.require(artifacts.kubeconfig)
        return await deploy_platform(
            KubeClient(artifacts.kubeconfig), HelmClient(artifacts.kubeconfig)
        )

    return run_operation(_platform)


if __name__ == "__main__":
    sys.exit(main())
