"""
talos_hyperv/models/cluster.py

Settings for a Talos-on-Hyper-V cluster. Every field can be overridden through
environment variables prefixed with `TALOS_HV_` (nested fields use `__`, e.g.
`TALOS_HV_POLLING__BOOT_TIMEOUT=600`), or loaded from a YAML file with
ClusterSettings.from_yaml_file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from talos_hyperv.models.node import NodeRole

GIB = 1024**3

DEFAULT_IMAGE_URL = (
    "https://github.com/siderolabs/talos/releases/download/v1.7.6/metal-amd64.iso"
)


class VMSizing(BaseModel):
    """CPU, memory and disk size for one VM role."""

    cpu: int = Field(default=2, ge=1)
    memory_bytes: int = Field(default=4 * GIB, gt=0)
    disk_bytes: int = Field(default=20 * GIB, gt=0)


class PollSettings(BaseModel):
    """Timeouts, intervals and settle delays (seconds) for every wait point."""

    mac_timeout: float = 30.0
    mac_interval: float = 2.0
    address_timeout: float = 180.0
    address_interval: float = 5.0
    boot_timeout: float = 300.0
    boot_interval: float = 10.0
    health_timeout: float = 300.0
    health_interval: float = 15.0
    join_timeout: float = 300.0
    join_interval: float = 10.0
    install_settle: float = 60.0
    etcd_settle: float = 30.0
    drain_timeout: float = 300.0

    @model_validator(mode="after")
    def check_non_negative(self) -> PollSettings:
        negative = [k for k, v in self.model_dump().items() if v < 0]
        if negative:
            raise ValueError(f"Poll settings must not be negative: {negative}")
        return self


class ClusterSettings(BaseSettings):
    """
    Single configuration object threaded through every operation.

    Credential paths derived from `output_dir` are passed explicitly to each
    talosctl/kubectl/helm call; nothing is exported into the process environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="TALOS_HV_", env_nested_delimiter="__", extra="ignore"
    )

    cluster_name: str = Field(default="talos", pattern=r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
    output_dir: str = "_out"

    switch_name: str = "Default Switch"
    vhd_dir: str = r"C:\ProgramData\Microsoft\Windows\Virtual Hard Disks"
    image_url: str = DEFAULT_IMAGE_URL
    image_path: str = "talos-metal-amd64.iso"

    install_disk: str = "/dev/sda"
    kubernetes_api_port: int = Field(default=6443, ge=1, le=65535)

    control_plane: VMSizing = Field(default_factory=VMSizing)
    worker: VMSizing = Field(default_factory=VMSizing)
    polling: PollSettings = Field(default_factory=PollSettings)

    strict_join: bool = False
    gateway_filter: bool = True

    def sizing_for(self, role: NodeRole) -> VMSizing:
        return self.control_plane if role is NodeRole.CONTROL_PLANE else self.worker

    def vhd_path_for(self, vm_name: str) -> str:
        """Deterministic disk path used both at creation and as the destroy fallback."""
        sep = "\\" if "\\" in self.vhd_dir else "/"
        return f"{self.vhd_dir.rstrip(sep)}{sep}{vm_name}.vhdx"

    @classmethod
    def from_yaml_file(cls, path: Optional[str]) -> ClusterSettings:
        """
        Build settings from an optional YAML file. Environment variables still
        apply to any field the file leaves unset.
        """
        if not path:
            return cls()
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Settings file '{path}' must contain a YAML mapping.")
        return cls(**data)
