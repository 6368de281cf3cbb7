"""
talos_hyperv/deployment/lifecycle.py

Node lifecycle orchestration for a Talos cluster on Hyper-V. Four operations:

  create_cluster   one control plane + one worker, bootstrap, health poll
  add_node         one new node of a given role joins the existing cluster
  remove_node      drain (workers), leave Kubernetes/etcd, delete VM + disk
  destroy_cluster  delete every cluster VM + disk and the credential directory

Each new node walks the same phases:

  Provisioning -> AwaitingAddress -> ConfigApplying -> Rebooting
    -> AwaitingAddress(2) -> AwaitingAPI -> JoinVerification
    -> [EtcdVerification, control plane only] -> Ready

Address discovery and API boot timeouts are fatal. Join and etcd membership
checks only produce warnings (unless strict_join is set), since both converge
asynchronously. Nothing is rolled back on failure: a half-built VM stays for
the operator to inspect or destroy.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, List, Optional

from talos_hyperv.deployment.naming import (
    format_node_name,
    is_cluster_vm,
    next_node_name,
    role_from_name,
)
from talos_hyperv.errors import (
    DestroyError,
    HealthTimeout,
    JoinTimeout,
    NameCollisionError,
    PhaseFailed,
    PreconditionError,
    BootTimeout,
    TalosHyperVError,
    UserAbort,
)
from talos_hyperv.models.cluster import ClusterSettings
from talos_hyperv.models.node import (
    KubeNode,
    LifecyclePhase,
    Membership,
    NeighborEntry,
    Node,
    NodeRole,
    VMInfo,
    VMState,
)
from talos_hyperv.models.report import OperationReport
from talos_hyperv.secrets.artifacts import ClusterArtifacts
from talos_hyperv.utils.async_command_runner import CommandError
from talos_hyperv.utils.async_retry import poll_until
from talos_hyperv.utils.download import ensure_boot_image
from talos_hyperv.utils.hyperv import VMProvider
from talos_hyperv.utils.k8s import KubeClient
from talos_hyperv.utils.resolver import AddressResolver, ResolvedNode
from talos_hyperv.utils.talosctl import TalosClient

logger = logging.getLogger(__name__)

Prompt = Callable[[str], str]
ImageFetcher = Callable[[str, str], Awaitable[Any]]


class NodeLifecycle:
    """
    Sequences hypervisor, Talos and Kubernetes calls for one cluster.

    Args:
        settings: Cluster configuration.
        provider: Hypervisor surface.
        talos: talosctl wrapper bound to the cluster's talosconfig.
        kube: kubectl wrapper bound to the cluster's kubeconfig.
        artifacts: Credential artifact directory (defaults to settings.output_dir).
        resolver: Address resolver (defaults to one built on `provider`).
        prompt: Reads the operator's answer to a confirmation question.
        fetch_image: Coroutine that ensures the boot image is cached locally.
        cancel: Optional event; when set, every wait point aborts.
    """

    def __init__(
        self,
        settings: ClusterSettings,
        provider: VMProvider,
        talos: TalosClient,
        kube: KubeClient,
        *,
        artifacts: Optional[ClusterArtifacts] = None,
        resolver: Optional[AddressResolver] = None,
        prompt: Prompt = input,
        fetch_image: ImageFetcher = ensure_boot_image,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.talos = talos
        self.kube = kube
        self.artifacts = artifacts or ClusterArtifacts(settings.output_dir)
        self.cancel = cancel
        self.resolver = resolver or AddressResolver(
            provider,
            settings.polling,
            gateway_filter=settings.gateway_filter,
            cancel=cancel,
        )
        self.prompt = prompt
        self.fetch_image = fetch_image

    ####################################################################
    # Operations
    ####################################################################

    async def create_cluster(self) -> OperationReport:
        """
        Build a fresh cluster: one control plane, one worker, bootstrap once
        against the control plane, fetch kubeconfig, then poll health.

        Raises:
            PreconditionError: Cluster VMs already exist.
            NameCollisionError, PollTimeout, PhaseFailed: On any fatal step.
        """
        report = OperationReport(operation="create")
        cluster = self.settings.cluster_name

        existing = await self._cluster_vms()
        if existing:
            raise PreconditionError(
                f"Cluster '{cluster}' already has VMs: "
                + ", ".join(vm.name for vm in existing)
                + ". Destroy it first or scale it instead."
            )

        await self.fetch_image(self.settings.image_url, self.settings.image_path)
        os.makedirs(self.artifacts.output_dir, exist_ok=True)

        cp = Node(name=format_node_name(cluster, NodeRole.CONTROL_PLANE, 1), role=NodeRole.CONTROL_PLANE)
        worker = Node(name=format_node_name(cluster, NodeRole.WORKER, 1), role=NodeRole.WORKER)
        report.nodes += [cp, worker]

        # Control plane first: its first address becomes the embedded endpoint.
        await self._provision(cp)
        first = await self._discover(cp, LifecyclePhase.AWAITING_ADDRESS)
        endpoint_url = f"https://{first.ip_address}:{self.settings.kubernetes_api_port}"
        with self._phase(cp, LifecyclePhase.CONFIG_APPLYING):
            logger.info("Generating machine configs for %s at %s", cluster, endpoint_url)
            await self.talos.gen_config(
                cluster, endpoint_url, self.artifacts.output_dir, self.settings.install_disk
            )
        await self._configure_and_boot(cp, first)
        if cp.ip_address != first.ip_address:
            report.warn(
                f"{cp.name} moved from {first.ip_address} to {cp.ip_address} after reboot; "
                f"machine configs still embed {endpoint_url}"
            )
        await self.talos.set_endpoint(self._require_ip(cp))

        await self._provision(worker)
        await self._configure_and_boot(
            worker, await self._discover(worker, LifecyclePhase.AWAITING_ADDRESS)
        )

        cp_ip = self._require_ip(cp)
        with self._phase(cp, "Bootstrap"):
            logger.info("Bootstrapping etcd on %s (%s)", cp.name, cp_ip)
            await self.talos.bootstrap(cp_ip)
            await self.talos.kubeconfig(cp_ip, self.artifacts.kubeconfig)

        await self._wait_healthy(cp, report)

        await self._verify_join(cp, baseline=0, report=report)
        await self._verify_join(worker, baseline=1, report=report)
        await self._verify_etcd(cp, cp_ip, report)
        self._finish(cp)
        self._finish(worker)
        return report

    async def add_node(self, role: NodeRole) -> OperationReport:
        """
        Provision one node of `role` and join it to the existing cluster.

        Raises:
            PreconditionError: Missing artifacts or boot image.
            NameCollisionError, PollTimeout, PhaseFailed: On any fatal step.
            JoinTimeout: Only when strict_join is enabled.
        """
        report = OperationReport(operation="scale-add")
        config_file = self.artifacts.machine_config(role)
        self.artifacts.require(self.artifacts.talosconfig, self.artifacts.kubeconfig, config_file)
        if not os.path.isfile(self.settings.image_path):
            raise PreconditionError(
                f"Boot image {self.settings.image_path} not found; run create first."
            )
        endpoint = await self.artifacts.control_plane_endpoint()

        existing = await self._cluster_vms()
        node = Node(
            name=next_node_name(self.settings.cluster_name, role, [vm.name for vm in existing]),
            role=role,
        )
        report.nodes.append(node)
        baseline = await self._node_count(report)

        await self._provision(node)
        await self._configure_and_boot(
            node, await self._discover(node, LifecyclePhase.AWAITING_ADDRESS)
        )
        await self._verify_join(node, baseline, report)
        if role is NodeRole.CONTROL_PLANE:
            await self._verify_etcd(node, endpoint, report)
        self._finish(node)
        return report

    async def remove_node(self, identifier: str, force: bool = False) -> OperationReport:
        """
        Remove a node identified by VM name or Kubernetes node name.

        Workers are drained first; a drain failure is fatal unless `force`.
        Deleting the Kubernetes node object and leaving etcd are best-effort.

        Raises:
            PreconditionError: kubeconfig missing.
            NodeNotFound, AddressUnresolvable: Identifier could not be resolved.
            UserAbort: Confirmation declined.
            PhaseFailed: Drain failed without force, or VM deletion failed.
        """
        report = OperationReport(operation="scale-remove")
        self.artifacts.require(self.artifacts.kubeconfig)

        resolved = await self.resolver.resolve_node(
            identifier, await self._cluster_vms(), self.kube
        )
        node = self._node_from_resolved(resolved)
        report.nodes.append(node)

        if node.role is NodeRole.CONTROL_PLANE:
            report.warn(
                f"{node.name} is a control-plane node; make sure the remaining "
                "control planes still form an etcd quorum."
            )
        if not force:
            self._confirm(f"Remove node {node.name} ({node.role.value}, ip={node.ip_address or 'unknown'})?")

        if node.kube_name and node.role is NodeRole.WORKER:
            await self._drain(node, force, report)
        if node.role is NodeRole.CONTROL_PLANE:
            await self._leave_etcd(node, report)
        if node.kube_name:
            try:
                await self.kube.delete_node(node.kube_name)
                node.membership = Membership.REMOVED
            except CommandError as exc:
                report.warn(f"Could not delete Kubernetes node {node.kube_name}: {exc}")
        else:
            report.warn(f"{node.name} has no matching Kubernetes node; skipping drain and delete.")

        with self._phase(node, "VMTeardown"):
            await self._teardown_vm(resolved.vm)
        node.vm_state = VMState.REMOVED
        return report

    async def destroy_cluster(self, force: bool = False) -> OperationReport:
        """
        Delete every VM matching the cluster naming scheme, their disks, and the
        credential directory. Works without a reachable cluster.

        Per-VM failures are collected; the credential directory is kept when
        any VM could not be removed so the survivors stay manageable.

        Raises:
            UserAbort: Confirmation declined.
            DestroyError: One or more VMs failed to tear down.
        """
        report = OperationReport(operation="destroy")
        vms = await self._cluster_vms()

        if not vms and not self.artifacts.exists():
            logger.info("Nothing to destroy for cluster '%s'", self.settings.cluster_name)
            return report

        if not force:
            self._confirm(
                f"Destroy cluster '{self.settings.cluster_name}' "
                f"({len(vms)} VM(s): {', '.join(vm.name for vm in vms) or 'none'})?"
            )

        for vm in vms:
            node = Node(
                name=vm.name,
                role=role_from_name(self.settings.cluster_name, vm.name) or NodeRole.WORKER,
                mac_address=vm.mac_address,
                vm_state=vm.state,
            )
            report.nodes.append(node)
            try:
                await self._teardown_vm(vm)
            except (CommandError, TalosHyperVError, OSError) as exc:
                report.fail(vm.name, str(exc))
                continue
            node.vm_state = VMState.REMOVED
            node.membership = Membership.REMOVED

        if report.failures:
            report.warn(
                f"Kept credential directory {self.artifacts.output_dir} because some VMs remain."
            )
            raise DestroyError(report.failures, report)

        try:
            self.artifacts.remove()
        except OSError as exc:
            report.fail(self.artifacts.output_dir, f"could not delete credentials: {exc}")
            raise DestroyError(report.failures, report) from exc
        return report

    ####################################################################
    # Phases
    ####################################################################

    @contextmanager
    def _phase(self, node: Node, phase: Any) -> Iterator[None]:
        """Record the phase on the node, log it, and label fatal command failures."""
        label = phase.value if isinstance(phase, LifecyclePhase) else str(phase)
        if isinstance(phase, LifecyclePhase):
            node.phase = phase
        logger.info("[%s] %s", node.name, label)
        try:
            yield
        except CommandError as exc:
            logger.error("[%s] %s failed: %s", node.name, label, exc)
            raise PhaseFailed(node.name, label, exc) from exc
        except TalosHyperVError as exc:
            logger.error("[%s] %s failed: %s", node.name, label, exc)
            raise

    async def _provision(self, node: Node) -> None:
        with self._phase(node, LifecyclePhase.PROVISIONING):
            if await self.provider.get_vm(node.name) is not None:
                raise NameCollisionError(node.name)
            node.vm_state = VMState.CREATING
            await self.provider.create_vm(
                node.name,
                self.settings.sizing_for(node.role),
                self.settings.switch_name,
                self.settings.vhd_path_for(node.name),
                os.path.abspath(self.settings.image_path),
            )
            await self.provider.start_vm(node.name)
            node.vm_state = VMState.RUNNING

    async def _discover(self, node: Node, phase: LifecyclePhase) -> NeighborEntry:
        with self._phase(node, phase):
            entry = await self.resolver.resolve_vm_address(node.name)
            node.mac_address = entry.mac_address
            node.ip_address = entry.ip_address
            return entry

    async def _configure_and_boot(self, node: Node, entry: NeighborEntry) -> None:
        """ConfigApplying -> Rebooting -> AwaitingAddress(2) -> AwaitingAPI."""
        with self._phase(node, LifecyclePhase.CONFIG_APPLYING):
            entry = await self.resolver.confirm(node.name, entry)
            node.ip_address = entry.ip_address
            await self.talos.apply_config(
                entry.ip_address, self.artifacts.machine_config(node.role)
            )

        with self._phase(node, LifecyclePhase.REBOOTING):
            await self._settle(
                self.settings.polling.install_settle, f"{node.name} installing to disk"
            )
            await self.provider.eject_boot_media(node.name)
            await self.provider.power_cycle(node.name)

        # The DHCP lease may change across the reboot; never reuse the old address.
        after = await self._discover(node, LifecyclePhase.AWAITING_ADDRESS_AFTER_REBOOT)
        if after.ip_address != entry.ip_address:
            logger.info(
                "[%s] address changed across reboot: %s -> %s",
                node.name,
                entry.ip_address,
                after.ip_address,
            )

        with self._phase(node, LifecyclePhase.AWAITING_API):
            ip = after.ip_address

            async def check() -> Optional[bool]:
                return True if await self.talos.version(ip) else None

            await poll_until(
                check,
                interval=self.settings.polling.boot_interval,
                timeout=self.settings.polling.boot_timeout,
                subject=node.name,
                error=BootTimeout,
                cancel=self.cancel,
                detail=ip,
            )
            node.membership = Membership.JOINING

    async def _verify_join(
        self, node: Node, baseline: Optional[int], report: OperationReport
    ) -> None:
        """
        Wait for the node to register with Kubernetes (matched by InternalIP,
        or by name when the hostname equals the VM name), then for Ready.
        A timeout is a warning unless strict_join is set.
        """
        polling = self.settings.polling
        with self._phase(node, LifecyclePhase.JOIN_VERIFICATION):
            node.membership = Membership.JOINING

            async def check() -> Optional[KubeNode]:
                for kn in await self.kube.list_nodes():
                    if kn.name == node.name or (
                        node.ip_address and kn.internal_ip == node.ip_address
                    ):
                        return kn
                return None

            try:
                matched = await poll_until(
                    check,
                    interval=polling.join_interval,
                    timeout=polling.join_timeout,
                    subject=node.name,
                    error=JoinTimeout,
                    cancel=self.cancel,
                )
            except JoinTimeout as exc:
                count = await self._node_count(report, quiet=True)
                if baseline is not None and count is not None and count > baseline:
                    message = (
                        f"{node.name}: node count rose from {baseline} to {count} but no node "
                        f"matched {node.ip_address}; assuming it joined under another address"
                    )
                else:
                    message = (
                        f"{node.name} did not appear in Kubernetes within "
                        f"{polling.join_timeout:g}s; it may still be joining"
                    )
                if self.settings.strict_join:
                    raise JoinTimeout(node.name, polling.join_timeout, message) from exc
                report.warn(message)
                return

            node.kube_name = matched.name
            if matched.ready or await self.kube.wait_ready(matched.name, polling.join_timeout):
                node.membership = Membership.READY
                logger.info("[%s] registered as Kubernetes node %s and Ready", node.name, matched.name)
                return

            message = f"{node.name} registered as {matched.name} but is not Ready yet"
            if self.settings.strict_join:
                raise JoinTimeout(node.name, polling.join_timeout, message)
            report.warn(message)

    async def _verify_etcd(self, node: Node, endpoint: str, report: OperationReport) -> None:
        with self._phase(node, LifecyclePhase.ETCD_VERIFICATION):
            await self._settle(self.settings.polling.etcd_settle, "etcd membership sync")
            try:
                members = await self.talos.etcd_members(endpoint)
            except CommandError as exc:
                report.warn(f"Could not list etcd members via {endpoint}: {exc}")
                return
            if node.ip_address and any(m.has_address(node.ip_address) for m in members):
                node.membership = Membership.ETCD_MEMBER
                logger.info("[%s] is an etcd member", node.name)
            else:
                report.warn(
                    f"{node.name} ({node.ip_address}) is not yet listed as an etcd member"
                )

    async def _wait_healthy(self, cp: Node, report: OperationReport) -> None:
        polling = self.settings.polling
        ip = self._require_ip(cp)

        async def check() -> Optional[bool]:
            return True if await self.talos.health(ip, polling.health_interval) else None

        try:
            await poll_until(
                check,
                interval=polling.health_interval,
                timeout=polling.health_timeout,
                subject=self.settings.cluster_name,
                error=HealthTimeout,
                cancel=self.cancel,
            )
            logger.info("Cluster %s reports healthy", self.settings.cluster_name)
        except HealthTimeout as exc:
            report.warn(f"{exc}; the cluster may still be converging")

    async def _drain(self, node: Node, force: bool, report: OperationReport) -> None:
        assert node.kube_name is not None
        try:
            await self.kube.drain(node.kube_name, self.settings.polling.drain_timeout)
        except CommandError as exc:
            if not force:
                logger.error("[%s] Drain failed: %s", node.name, exc)
                raise PhaseFailed(node.name, "Drain", exc) from exc
            report.warn(f"Drain of {node.kube_name} failed, continuing because of force: {exc}")

    async def _leave_etcd(self, node: Node, report: OperationReport) -> None:
        """Best-effort removal of a control-plane node from etcd membership."""
        try:
            endpoint = await self.artifacts.control_plane_endpoint()
            members = await self.talos.etcd_members(endpoint)
        except (CommandError, PreconditionError) as exc:
            report.warn(f"etcd membership query failed, continuing removal: {exc}")
            return

        member = next(
            (
                m
                for m in members
                if (node.ip_address and m.has_address(node.ip_address))
                or (node.kube_name and m.hostname == node.kube_name)
            ),
            None,
        )
        if member is None:
            report.warn(f"{node.name} is not listed as an etcd member")
            return
        if endpoint == node.ip_address:
            report.warn(
                f"{node.name} is the stored control-plane endpoint; remove etcd member "
                f"{member.hostname} from another control plane and rotate the talosconfig endpoint"
            )
            return
        try:
            await self.talos.etcd_remove_member(endpoint, member.hostname)
            logger.info("[%s] removed etcd member %s", node.name, member.hostname)
        except CommandError as exc:
            report.warn(f"Could not remove etcd member {member.hostname}: {exc}")

    async def _teardown_vm(self, vm: VMInfo) -> None:
        """Stop, delete, then remove every known disk plus the deterministic fallback path."""
        if vm.state is not VMState.STOPPED:
            await self.provider.stop_vm(vm.name)
        await self.provider.delete_vm(vm.name)
        fallback = self.settings.vhd_path_for(vm.name)
        for path in dict.fromkeys(vm.disk_paths + [fallback]):
            if await self.provider.delete_disk(path):
                logger.info("Deleted disk %s", path)
        logger.info("VM %s removed", vm.name)

    ####################################################################
    # Helpers
    ####################################################################

    async def _cluster_vms(self) -> List[VMInfo]:
        cluster = self.settings.cluster_name
        return [
            vm
            for vm in await self.provider.list_vms(f"{cluster}-*")
            if is_cluster_vm(cluster, vm.name)
        ]

    async def _node_count(self, report: OperationReport, quiet: bool = False) -> Optional[int]:
        try:
            return len(await self.kube.list_nodes())
        except CommandError as exc:
            if not quiet:
                report.warn(f"Could not list Kubernetes nodes: {exc}")
            return None

    async def _settle(self, seconds: float, reason: str) -> None:
        """Sleep for a fixed delay, returning early with CancelledError if cancelled."""
        if seconds <= 0:
            return
        logger.info("Waiting %gs: %s", seconds, reason)
        if self.cancel is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self.cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise asyncio.CancelledError(f"Cancelled while waiting: {reason}")

    def _confirm(self, question: str) -> None:
        """Only the literal answer 'yes' proceeds."""
        try:
            answer = self.prompt(f"{question} Type 'yes' to continue: ")
        except (EOFError, KeyboardInterrupt):
            answer = ""
        if answer.strip() != "yes":
            raise UserAbort("Aborted by operator; nothing was changed.")

    def _node_from_resolved(self, resolved: ResolvedNode) -> Node:
        vm = resolved.vm
        if resolved.kube_node is not None:
            role = resolved.kube_node.role
        else:
            role = role_from_name(self.settings.cluster_name, vm.name) or NodeRole.WORKER
        return Node(
            name=vm.name,
            role=role,
            mac_address=vm.mac_address,
            ip_address=resolved.ip_address,
            vm_state=vm.state,
            membership=(
                Membership.READY
                if resolved.kube_node is not None and resolved.kube_node.ready
                else Membership.NOT_JOINED
            ),
            kube_name=resolved.kube_node.name if resolved.kube_node else None,
        )

    @staticmethod
    def _require_ip(node: Node) -> str:
        if not node.ip_address:
            raise PreconditionError(f"{node.name} has no resolved address")
        return node.ip_address

    @staticmethod
    def _finish(node: Node) -> None:
        node.phase = LifecyclePhase.READY
        logger.info("[%s] %s", node.name, LifecyclePhase.READY.value)
