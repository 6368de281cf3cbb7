"""
talos_hyperv/errors.py

Exception hierarchy for cluster lifecycle operations.

Fatal errors abort the current operation immediately; they never roll back
resources that were already created. Non-fatal conditions (join lag, etcd
membership lag, best-effort deletes) are not raised at all but recorded as
warnings on the OperationReport.

External command failures are represented by
talos_hyperv.utils.async_command_runner.CommandError.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TalosHyperVError(Exception):
    """Base class for all errors raised by this package."""


class PreconditionError(TalosHyperVError):
    """A required tool or credential artifact is missing. Raised before any side effect."""


class ProvisionError(TalosHyperVError):
    """VM provisioning failed."""


class NameCollisionError(ProvisionError):
    """A VM with the target name already exists."""

    def __init__(self, vm_name: str) -> None:
        super().__init__(f"VM '{vm_name}' already exists; refusing to provision over it.")
        self.vm_name = vm_name


class PollTimeout(TalosHyperVError, TimeoutError):
    """
    A bounded poll did not converge before its deadline.

    Attributes:
        subject: What was being waited on (usually a VM or node name).
        timeout: The deadline in seconds.
    """

    what = "condition"

    def __init__(self, subject: str, timeout: float, detail: str = "") -> None:
        msg = f"Timed out after {timeout:g}s waiting for {self.what} of '{subject}'"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.subject = subject
        self.timeout = timeout


class MacAddressTimeout(PollTimeout):
    what = "a non-zero MAC address"


class AddressTimeout(PollTimeout):
    what = "an IPv4 neighbor entry"


class BootTimeout(PollTimeout):
    what = "the Talos API"


class HealthTimeout(PollTimeout):
    what = "cluster health"


class JoinTimeout(PollTimeout):
    what = "Kubernetes node registration"


class NodeNotFound(TalosHyperVError):
    """Neither a VM nor a Kubernetes node matches the given identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"No VM or Kubernetes node matches '{identifier}'."
        )
        self.identifier = identifier


class AddressUnresolvable(TalosHyperVError):
    """A Kubernetes node exists but has no InternalIP recorded."""

    def __init__(self, node_name: str) -> None:
        super().__init__(f"Kubernetes node '{node_name}' has no InternalIP address.")
        self.node_name = node_name


class UserAbort(TalosHyperVError):
    """The operator declined a confirmation prompt. Not an error exit."""


class DestroyError(TalosHyperVError):
    """
    One or more VMs could not be fully torn down.

    Attributes:
        failures: Mapping of VM name to the error text collected for it.
        report: The OperationReport of the destroy run, if available.
    """

    def __init__(self, failures: Dict[str, str], report: Optional[Any] = None) -> None:
        super().__init__(
            f"{len(failures)} VM(s) failed to tear down: "
            + "; ".join(f"{name}: {err}" for name, err in sorted(failures.items()))
        )
        self.failures = failures
        self.report = report


class PhaseFailed(TalosHyperVError):
    """
    An external command failed during a lifecycle step that treats such
    failures as fatal (provisioning, config apply, bootstrap, drain).
    """

    def __init__(self, node_name: str, phase: str, cause: BaseException) -> None:
        super().__init__(f"{node_name}: {phase} failed: {cause}")
        self.node_name = node_name
        self.phase = phase
        self.cause = cause
