"""
talos_hyperv/utils/hyperv.py

VM provider surface used by the lifecycle:
 - VMProvider: abstract create/start/stop/delete, disk cleanup, MAC and
   neighbor-table reads.
 - HyperVProvider: implementation over the Hyper-V and NetTCPIP PowerShell
   modules, invoked through `powershell.exe -Command` and parsed from
   `ConvertTo-Json` output.

All methods are idempotent where Hyper-V allows it: stopping a stopped VM and
deleting a missing disk are no-ops.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from pydantic import TypeAdapter

from talos_hyperv.models.cluster import VMSizing
from talos_hyperv.models.node import NeighborEntry, VMInfo, VMState, is_zero_mac
from talos_hyperv.utils.async_command_runner import run_command

logger = logging.getLogger(__name__)

_RUNNING_STATES = {"Running", "Starting", "RunningCritical"}

# Projection shared by every VM query so VMInfo parsing sees one shape.
_VM_PROJECTION = (
    "ForEach-Object { [pscustomobject]@{ "
    "Name = $_.Name; "
    "State = $_.State.ToString(); "
    "MacAddress = (@($_.NetworkAdapters) | Select-Object -First 1).MacAddress; "
    "DiskPaths = @(Get-VMHardDiskDrive -VM $_ | ForEach-Object { $_.Path }) "
    "} }"
)


class VMProvider(ABC):
    """Hypervisor operations the lifecycle depends on."""

    @abstractmethod
    async def list_vms(self, name_pattern: str) -> List[VMInfo]:
        """Return all VMs whose name matches the wildcard pattern."""

    @abstractmethod
    async def get_vm(self, name: str) -> Optional[VMInfo]:
        """Return the VM with exactly this name, or None."""

    @abstractmethod
    async def create_vm(
        self,
        name: str,
        sizing: VMSizing,
        switch_name: str,
        vhd_path: str,
        boot_media_path: str,
    ) -> None:
        """Create a VM with a new disk, attach boot media, boot media first, secure boot off."""

    @abstractmethod
    async def start_vm(self, name: str) -> None:
        ...

    @abstractmethod
    async def stop_vm(self, name: str) -> None:
        """Hard power-off; no-op if already off."""

    @abstractmethod
    async def eject_boot_media(self, name: str) -> None:
        """Remove the installer media and make the disk the first boot device."""

    @abstractmethod
    async def delete_vm(self, name: str) -> None:
        ...

    @abstractmethod
    async def delete_disk(self, path: str) -> bool:
        """Delete a disk file. Returns False if it did not exist."""

    @abstractmethod
    async def get_mac_address(self, name: str) -> Optional[str]:
        """MAC of the VM's first network adapter, or None if not yet assigned."""

    @abstractmethod
    async def neighbor_table(self) -> List[NeighborEntry]:
        """Current IPv4 neighbor (ARP) entries of the host."""

    async def power_cycle(self, name: str) -> None:
        await self.stop_vm(name)
        await self.start_vm(name)


def ps_quote(value: str) -> str:
    """Quote a string as a PowerShell single-quoted literal."""
    return "'" + value.replace("'", "''") + "'"


class HyperVProvider(VMProvider):
    """
    Hyper-V provider. Requires an elevated PowerShell session with the
    Hyper-V module available.
    """

    def __init__(self, executable: str = "powershell.exe", command_timeout: float = 120.0) -> None:
        self.executable = executable
        self.command_timeout = command_timeout

    async def _ps(self, script: str, retries: int = 1) -> str:
        return await run_command(
            [
                self.executable,
                "-NoProfile",
                "-NonInteractive",
                "-Command",
                "$ErrorActionPreference = 'Stop'; " + script,
            ],
            retries=retries,
            timeout=self.command_timeout,
        )

    async def _ps_json(self, script: str) -> Any:
        out = await self._ps(script, retries=2)
        return json.loads(out) if out else []

    async def list_vms(self, name_pattern: str) -> List[VMInfo]:
        raw = await self._ps_json(
            "ConvertTo-Json -Compress -Depth 4 -InputObject "
            f"@(Get-VM -Name {ps_quote(name_pattern)} -ErrorAction SilentlyContinue | {_VM_PROJECTION})"
        )
        return [_vm_from_json(item) for item in raw]

    async def get_vm(self, name: str) -> Optional[VMInfo]:
        matches = [vm for vm in await self.list_vms(name) if vm.name == name]
        return matches[0] if matches else None

    async def create_vm(
        self,
        name: str,
        sizing: VMSizing,
        switch_name: str,
        vhd_path: str,
        boot_media_path: str,
    ) -> None:
        vm = ps_quote(name)
        script = "; ".join(
            [
                f"New-VM -Name {vm} -Generation 2 -MemoryStartupBytes {sizing.memory_bytes} "
                f"-NewVHDPath {ps_quote(vhd_path)} -NewVHDSizeBytes {sizing.disk_bytes} "
                f"-SwitchName {ps_quote(switch_name)} | Out-Null",
                f"Set-VMProcessor -VMName {vm} -Count {sizing.cpu}",
                f"Set-VMMemory -VMName {vm} -DynamicMemoryEnabled $false",
                f"Add-VMDvdDrive -VMName {vm} -Path {ps_quote(boot_media_path)}",
                f"$dvd = Get-VMDvdDrive -VMName {vm}",
                f"$hdd = Get-VMHardDiskDrive -VMName {vm}",
                f"Set-VMFirmware -VMName {vm} -EnableSecureBoot Off -BootOrder $dvd, $hdd",
            ]
        )
        logger.info("Creating VM %s (%d vCPU, %d bytes RAM)", name, sizing.cpu, sizing.memory_bytes)
        await self._ps(script)

    async def start_vm(self, name: str) -> None:
        await self._ps(f"Start-VM -Name {ps_quote(name)}")

    async def stop_vm(self, name: str) -> None:
        vm = ps_quote(name)
        await self._ps(
            f"$vm = Get-VM -Name {vm}; "
            "if ($vm.State -ne 'Off') { Stop-VM -VM $vm -TurnOff -Force }"
        )

    async def eject_boot_media(self, name: str) -> None:
        vm = ps_quote(name)
        await self._ps(
            f"Get-VMDvdDrive -VMName {vm} | Set-VMDvdDrive -Path $null; "
            f"Set-VMFirmware -VMName {vm} -FirstBootDevice (Get-VMHardDiskDrive -VMName {vm})"
        )

    async def delete_vm(self, name: str) -> None:
        await self._ps(f"Remove-VM -Name {ps_quote(name)} -Force")

    async def delete_disk(self, path: str) -> bool:
        p = ps_quote(path)
        out = await self._ps(
            f"if (Test-Path -LiteralPath {p}) "
            f"{{ Remove-Item -LiteralPath {p} -Force; 'True' }} else {{ 'False' }}"
        )
        return out.strip() == "True"

    async def get_mac_address(self, name: str) -> Optional[str]:
        out = await self._ps(
            f"(Get-VMNetworkAdapter -VMName {ps_quote(name)} | Select-Object -First 1).MacAddress"
        )
        mac = out.strip()
        return None if is_zero_mac(mac) else mac

    async def neighbor_table(self) -> List[NeighborEntry]:
        raw = await self._ps_json(
            "ConvertTo-Json -Compress -InputObject @(Get-NetNeighbor -AddressFamily IPv4 | "
            "Where-Object { $_.State -ne 'Unreachable' -and $_.LinkLayerAddress } | "
            "ForEach-Object { [pscustomobject]@{ IPAddress = $_.IPAddress; "
            "LinkLayerAddress = $_.LinkLayerAddress } })"
        )
        return [
            NeighborEntry(ip_address=row["IPAddress"], mac_address=row["LinkLayerAddress"])
            for row in raw
            if not is_zero_mac(row.get("LinkLayerAddress"))
        ]


_DISK_PATHS = TypeAdapter(List[str])


def _vm_from_json(item: Any) -> VMInfo:
    disks = item.get("DiskPaths") or []
    if isinstance(disks, str):
        disks = [disks]
    state = VMState.RUNNING if item.get("State") in _RUNNING_STATES else VMState.STOPPED
    return VMInfo(
        name=item["Name"],
        state=state,
        mac_address=item.get("MacAddress"),
        disk_paths=_DISK_PATHS.validate_python(disks),
    )
