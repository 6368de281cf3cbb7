"""
talos_hyperv/utils/talosctl.py

Thin async wrapper over the `talosctl` CLI. Every authenticated call passes
`--talosconfig`, `--endpoints` and `--nodes` explicitly; the TALOSCONFIG
environment variable is never read or written.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from talos_hyperv.utils.async_command_runner import CommandError, run_command

logger = logging.getLogger(__name__)


class EtcdMember(BaseModel):
    """One row of `talosctl etcd members`."""

    member_id: str
    hostname: str
    peer_urls: List[str] = Field(default_factory=list)
    learner: bool = False

    def has_address(self, ip: str) -> bool:
        return any(f"//{ip}:" in url for url in self.peer_urls)


def parse_etcd_members(output: str) -> List[EtcdMember]:
    """
    Parse the table printed by `talosctl etcd members`:

        NODE       ID                HOSTNAME    PEER URLS              CLIENT URLS            LEARNER
        10.0.0.2   1b3f9e4c8e0a7b6d  talos-cp-1  https://10.0.0.2:2380  https://10.0.0.2:2379  false
    """
    members: List[EtcdMember] = []
    for line in output.splitlines():
        cols = line.split()
        if len(cols) < 5 or cols[0] == "NODE":
            continue
        members.append(
            EtcdMember(
                member_id=cols[1],
                hostname=cols[2],
                peer_urls=cols[3].split(","),
                learner=len(cols) > 5 and cols[5].lower() == "true",
            )
        )
    return members


class TalosClient:
    def __init__(self, talosconfig: str, executable: str = "talosctl") -> None:
        self.talosconfig = talosconfig
        self.executable = executable

    def _cmd(self, endpoint: Optional[str], *args: str) -> List[str]:
        base = [self.executable, "--talosconfig", self.talosconfig]
        if endpoint:
            base += ["--endpoints", endpoint, "--nodes", endpoint]
        return base + list(args)

    async def gen_config(
        self, cluster_name: str, endpoint_url: str, output_dir: str, install_disk: str
    ) -> None:
        """Generate controlplane.yaml, worker.yaml and talosconfig into output_dir."""
        await run_command(
            [
                self.executable,
                "gen",
                "config",
                cluster_name,
                endpoint_url,
                "--output-dir",
                output_dir,
                "--install-disk",
                install_disk,
                "--force",
            ],
            retries=1,
        )

    async def apply_config(self, ip: str, config_file: str) -> None:
        """Push a machine config to a node in maintenance mode (no credentials yet)."""
        await run_command(
            [
                self.executable,
                "apply-config",
                "--insecure",
                "--nodes",
                ip,
                "--file",
                config_file,
            ],
            retries=3,
            retry_delay=5.0,
            sensitive=True,
        )

    async def set_endpoint(self, ip: str) -> None:
        """Record ip as endpoint and default node in the talosconfig file."""
        await run_command(self._cmd(None, "config", "endpoint", ip))
        await run_command(self._cmd(None, "config", "node", ip))

    async def bootstrap(self, ip: str) -> None:
        await run_command(self._cmd(ip, "bootstrap"), retries=5, retry_delay=10.0)

    async def version(self, ip: str, timeout: float = 10.0) -> bool:
        """True if the Talos API at ip answers an authenticated version call."""
        try:
            await run_command(
                self._cmd(ip, "version", "--short"), retries=1, timeout=timeout
            )
        except CommandError as exc:
            logger.debug("talosctl version against %s failed: %s", ip, exc)
            return False
        return True

    async def health(self, ip: str, wait_timeout: float) -> bool:
        try:
            await run_command(
                self._cmd(ip, "health", f"--wait-timeout={int(max(wait_timeout, 1))}s"),
                retries=1,
            )
        except CommandError as exc:
            logger.debug("talosctl health against %s not passing yet: %s", ip, exc)
            return False
        return True

    async def kubeconfig(self, ip: str, destination: str) -> None:
        await run_command(
            self._cmd(ip, "kubeconfig", destination, "--force", "--merge=false"),
            retries=6,
            retry_delay=10.0,
        )

    async def etcd_members(self, ip: str) -> List[EtcdMember]:
        out = await run_command(self._cmd(ip, "etcd", "members"), retries=2)
        return parse_etcd_members(out)

    async def etcd_remove_member(self, ip: str, hostname: str) -> None:
        await run_command(self._cmd(ip, "etcd", "remove-member", hostname))
