"""
talos_hyperv/models/talos.py

Structured views of the Talos artifacts written by `talosctl gen config`:
 - TalosClientConfig: the talosconfig client file (contexts, endpoints, nodes)
 - MachineConfigEndpoint: the control-plane endpoint embedded in a machine config
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field


class TalosContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    endpoints: List[str] = Field(default_factory=list)
    nodes: List[str] = Field(default_factory=list)
    ca: Optional[str] = None
    crt: Optional[str] = None
    key: Optional[str] = None


class TalosClientConfig(BaseModel):
    """
    The talosconfig file. Only the fields the lifecycle reads are modelled;
    certificates are carried through untouched.
    """

    model_config = ConfigDict(extra="allow")

    context: Optional[str] = None
    contexts: Dict[str, TalosContext] = Field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: str) -> TalosClientConfig:
        return cls.model_validate(yaml.safe_load(text) or {})

    @property
    def current(self) -> Optional[TalosContext]:
        if self.context is None:
            return None
        return self.contexts.get(self.context)

    def primary_endpoint(self) -> Optional[str]:
        """First endpoint of the current context, stripped of any port."""
        ctx = self.current
        if ctx is None or not ctx.endpoints:
            return None
        return _host_of(ctx.endpoints[0])


class MachineConfigEndpoint(BaseModel):
    """The `cluster.controlPlane.endpoint` URL of a generated machine config."""

    url: str

    @classmethod
    def from_yaml(cls, text: str) -> Optional[MachineConfigEndpoint]:
        # Multi-document configs are allowed; the v1alpha1 document carries the cluster block.
        for doc in yaml.safe_load_all(text):
            url = _dig(doc, "cluster", "controlPlane", "endpoint")
            if isinstance(url, str) and url:
                return cls(url=url)
        return None

    @property
    def host(self) -> Optional[str]:
        return urlparse(self.url).hostname


def _dig(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _host_of(endpoint: str) -> str:
    if "://" in endpoint:
        return urlparse(endpoint).hostname or endpoint
    if endpoint.count(":") == 1:
        return endpoint.split(":", 1)[0]
    return endpoint
