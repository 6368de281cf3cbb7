"""
talos_hyperv/utils/helm.py

`helm upgrade --install` against an explicit kubeconfig, with values rendered
to an ephemeral YAML file.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import yaml

from talos_hyperv.utils.async_command_runner import run_command
from talos_hyperv.utils.ephemeral_file import ephemeral_file

logger = logging.getLogger(__name__)


class HelmClient:
    def __init__(self, kubeconfig: str, executable: str = "helm") -> None:
        self.kubeconfig = kubeconfig
        self.executable = executable

    async def upgrade_install(
        self,
        release: str,
        chart: str,
        *,
        namespace: str,
        repo: Optional[str] = None,
        version: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        timeout: str = "10m",
    ) -> None:
        """Install or upgrade a release and wait for its resources to become ready."""
        cmd: List[str] = [
            self.executable,
            "upgrade",
            "--install",
            release,
            chart,
            "--namespace",
            namespace,
            "--create-namespace",
            "--kubeconfig",
            self.kubeconfig,
            "--wait",
            "--timeout",
            timeout,
        ]
        if repo:
            cmd += ["--repo", repo]
        if version:
            cmd += ["--version", version]

        rendered = yaml.safe_dump(values or {}, sort_keys=False)
        async with ephemeral_file(rendered, file_name=f"{release}-values.yaml") as path:
            logger.info("Installing %s (%s) into %s", release, chart, namespace)
            await run_command(cmd + ["--values", path], retries=2, retry_delay=15.0)
