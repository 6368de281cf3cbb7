"""
talos_hyperv/secrets/artifacts.py

The credential artifact directory written by cluster creation and read by every
later operation:

  <output_dir>/controlplane.yaml   machine config template (control plane)
  <output_dir>/worker.yaml         machine config template (worker)
  <output_dir>/talosconfig         Talos client credentials + endpoint
  <output_dir>/kubeconfig          Kubernetes admin credentials

The control-plane endpoint is read by parsing these files as YAML, never by
pattern matching their text.
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Optional

import aiofiles
import yaml
from pydantic import ValidationError

from talos_hyperv.errors import PreconditionError
from talos_hyperv.models.node import NodeRole
from talos_hyperv.models.talos import MachineConfigEndpoint, TalosClientConfig

logger = logging.getLogger(__name__)


class ClusterArtifacts:
    def __init__(self, output_dir: str) -> None:
        self.output_dir = output_dir

    @property
    def talosconfig(self) -> str:
        return os.path.join(self.output_dir, "talosconfig")

    @property
    def kubeconfig(self) -> str:
        return os.path.join(self.output_dir, "kubeconfig")

    def machine_config(self, role: NodeRole) -> str:
        return os.path.join(self.output_dir, role.machine_config_file)

    def exists(self) -> bool:
        return os.path.isdir(self.output_dir)

    def require(self, *paths: str) -> None:
        """
        Raises:
            PreconditionError: If any of the given artifact paths is missing.
        """
        missing = [p for p in paths if not os.path.isfile(p)]
        if missing:
            raise PreconditionError(
                "Missing cluster artifact(s): "
                + ", ".join(missing)
                + ". Was the cluster created with this output directory?"
            )

    async def _read(self, path: str) -> str:
        async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
            return await f.read()

    async def load_talosconfig(self) -> TalosClientConfig:
        """
        Raises:
            PreconditionError: If talosconfig is missing or does not parse.
        """
        self.require(self.talosconfig)
        try:
            return TalosClientConfig.from_yaml(await self._read(self.talosconfig))
        except (yaml.YAMLError, ValidationError) as exc:
            raise PreconditionError(f"Cannot parse {self.talosconfig}: {exc}") from exc

    async def control_plane_endpoint(self) -> str:
        """
        Address of the bootstrap control-plane node.

        Prefers the talosconfig current-context endpoint; falls back to the
        host of `cluster.controlPlane.endpoint` in controlplane.yaml.

        Raises:
            PreconditionError: If neither artifact yields an endpoint.
        """
        endpoint: Optional[str] = (await self.load_talosconfig()).primary_endpoint()
        if endpoint:
            return endpoint

        cp_path = self.machine_config(NodeRole.CONTROL_PLANE)
        if os.path.isfile(cp_path):
            try:
                parsed = MachineConfigEndpoint.from_yaml(await self._read(cp_path))
            except yaml.YAMLError as exc:
                raise PreconditionError(f"Cannot parse {cp_path}: {exc}") from exc
            if parsed is not None and parsed.host:
                logger.debug("Using endpoint %s from %s", parsed.host, cp_path)
                return parsed.host

        raise PreconditionError(
            f"No control-plane endpoint in {self.talosconfig} or {cp_path}."
        )

    def remove(self) -> bool:
        """Delete the artifact directory. Returns False if it did not exist."""
        if not self.exists():
            return False
        shutil.rmtree(self.output_dir)
        logger.info("Removed credential directory %s", self.output_dir)
        return True
