"""
End-to-end lifecycle tests against the in-memory hypervisor, talosctl and
kubectl fakes from conftest.py.
"""

import os

import pytest

from talos_hyperv.errors import (
    AddressTimeout,
    BootTimeout,
    DestroyError,
    JoinTimeout,
    NameCollisionError,
    NodeNotFound,
    PhaseFailed,
    PreconditionError,
    UserAbort,
)
from talos_hyperv.models.node import LifecyclePhase, Membership, NodeRole, VMState
from talos_hyperv.utils.async_command_runner import CommandError


def _node(report, name):
    return next(n for n in report.nodes if n.name == name)


class TestCreateCluster:
    @pytest.mark.asyncio
    async def test_one_control_plane_one_worker(self, lifecycle, provider, talos, kube, settings):
        report = await lifecycle.create_cluster()

        assert sorted(provider.vms) == ["lab-controlplane-01", "lab-worker-01"]
        assert len(kube.nodes) == 2
        for name in ("lab-controlplane-01", "lab-worker-01"):
            node = _node(report, name)
            assert node.phase is LifecyclePhase.READY
            assert node.ip_address
            assert node.kube_name
        assert _node(report, "lab-controlplane-01").membership is Membership.ETCD_MEMBER
        assert [c for c in talos.calls if c[0] == "bootstrap"] == [
            ("bootstrap", _node(report, "lab-controlplane-01").ip_address)
        ]
        assert os.path.isfile(os.path.join(settings.output_dir, "kubeconfig"))
        assert report.ok

    @pytest.mark.asyncio
    async def test_configs_are_applied_by_role(self, lifecycle, talos):
        await lifecycle.create_cluster()
        applied = [c[2] for c in talos.calls if c[0] == "apply"]
        assert applied == ["controlplane.yaml", "worker.yaml"]

    @pytest.mark.asyncio
    async def test_post_reboot_address_is_used(self, lifecycle, provider, talos):
        provider.ip_plans["lab-controlplane-01"] = ["192.168.50.20", "192.168.50.21"]
        provider.ip_plans["lab-worker-01"] = ["192.168.50.30", "192.168.50.31"]

        report = await lifecycle.create_cluster()

        assert ("apply", "192.168.50.20", "controlplane.yaml") in talos.calls
        assert ("apply", "192.168.50.30", "worker.yaml") in talos.calls
        assert ("version", "192.168.50.21") in talos.calls
        assert ("version", "192.168.50.31") in talos.calls
        assert ("bootstrap", "192.168.50.21") in talos.calls
        assert talos.endpoint == "192.168.50.21"
        assert _node(report, "lab-worker-01").ip_address == "192.168.50.31"
        # The endpoint embedded in the configs still points at the first address.
        assert any("moved from 192.168.50.20" in w for w in report.warnings)

    @pytest.mark.asyncio
    async def test_stable_address_has_no_warnings(self, lifecycle, provider):
        provider.ip_plans["lab-controlplane-01"] = ["192.168.50.20", "192.168.50.20"]
        provider.ip_plans["lab-worker-01"] = ["192.168.50.30", "192.168.50.30"]

        report = await lifecycle.create_cluster()

        assert report.warnings == []

    @pytest.mark.asyncio
    async def test_refuses_when_cluster_vms_exist(self, lifecycle, provider):
        provider.add_existing_vm("lab-worker-01", ip="192.168.50.20")
        with pytest.raises(PreconditionError):
            await lifecycle.create_cluster()
        assert not any(c[0] == "create" for c in provider.calls)

    @pytest.mark.asyncio
    async def test_unresolvable_address_is_fatal(self, lifecycle, provider, talos):
        provider.ip_plans["lab-controlplane-01"] = ["169.254.1.2"]
        with pytest.raises(AddressTimeout):
            await lifecycle.create_cluster()
        # No rollback: the half-built VM stays for inspection.
        assert "lab-controlplane-01" in provider.vms
        assert not any(c[0] == "apply" for c in talos.calls)

    @pytest.mark.asyncio
    async def test_api_never_answers(self, lifecycle, provider, talos):
        provider.ip_plans["lab-controlplane-01"] = ["192.168.50.20", "192.168.50.21"]
        talos.api_down.add("192.168.50.21")
        with pytest.raises(BootTimeout):
            await lifecycle.create_cluster()

    @pytest.mark.asyncio
    async def test_apply_failure_names_the_phase(self, lifecycle, talos):
        talos.apply_error = CommandError("connection refused", 1)
        with pytest.raises(PhaseFailed) as excinfo:
            await lifecycle.create_cluster()
        assert excinfo.value.phase == LifecyclePhase.CONFIG_APPLYING.value
        assert excinfo.value.node_name == "lab-controlplane-01"

    @pytest.mark.asyncio
    async def test_unhealthy_cluster_only_warns(self, lifecycle, talos):
        talos.healthy = False
        report = await lifecycle.create_cluster()
        assert any("cluster health" in w for w in report.warnings)
        assert report.ok


class TestAddNode:
    @pytest.mark.asyncio
    async def test_adds_next_worker(self, lifecycle, provider, kube):
        await lifecycle.create_cluster()

        report = await lifecycle.add_node(NodeRole.WORKER)

        node = _node(report, "lab-worker-02")
        assert node.phase is LifecyclePhase.READY
        assert node.membership is Membership.READY
        assert len(kube.nodes) == 3
        assert "lab-worker-02" in provider.vms

    @pytest.mark.asyncio
    async def test_adds_control_plane_and_checks_etcd(self, lifecycle, talos):
        await lifecycle.create_cluster()

        report = await lifecycle.add_node(NodeRole.CONTROL_PLANE)

        node = _node(report, "lab-controlplane-02")
        assert node.membership is Membership.ETCD_MEMBER
        assert ("etcd_members", talos.endpoint) in talos.calls

    @pytest.mark.asyncio
    async def test_numbering_skips_past_highest_existing(self, lifecycle, provider):
        await lifecycle.create_cluster()
        await lifecycle.add_node(NodeRole.WORKER)
        await lifecycle.add_node(NodeRole.WORKER)
        provider.vms.pop("lab-worker-02")

        report = await lifecycle.add_node(NodeRole.WORKER)

        assert report.nodes[0].name == "lab-worker-04"

    @pytest.mark.asyncio
    async def test_requires_artifacts(self, lifecycle, provider):
        with pytest.raises(PreconditionError):
            await lifecycle.add_node(NodeRole.WORKER)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_requires_boot_image(self, lifecycle, settings):
        await lifecycle.create_cluster()
        os.remove(settings.image_path)
        with pytest.raises(PreconditionError):
            await lifecycle.add_node(NodeRole.WORKER)

    @pytest.mark.asyncio
    async def test_name_collision(self, lifecycle, provider, monkeypatch):
        await lifecycle.create_cluster()
        monkeypatch.setattr(
            "talos_hyperv.deployment.lifecycle.next_node_name",
            lambda *args: "lab-worker-01",
        )
        with pytest.raises(NameCollisionError):
            await lifecycle.add_node(NodeRole.WORKER)

    @pytest.mark.asyncio
    async def test_join_lag_is_a_warning(self, lifecycle, kube):
        await lifecycle.create_cluster()
        kube.auto_join = False

        report = await lifecycle.add_node(NodeRole.WORKER)

        assert any("did not appear in Kubernetes" in w for w in report.warnings)
        assert report.nodes[0].phase is LifecyclePhase.READY

    @pytest.mark.asyncio
    async def test_join_lag_with_strict_join(self, lifecycle, kube):
        await lifecycle.create_cluster()
        lifecycle.settings = lifecycle.settings.model_copy(update={"strict_join": True})
        kube.auto_join = False

        with pytest.raises(JoinTimeout):
            await lifecycle.add_node(NodeRole.WORKER)

    @pytest.mark.asyncio
    async def test_join_under_unexpected_address_uses_node_count(self, lifecycle, kube):
        await lifecycle.create_cluster()
        kube.join_address = "10.99.0.5"

        report = await lifecycle.add_node(NodeRole.WORKER)

        assert any("node count rose from 2 to 3" in w for w in report.warnings)
        assert report.nodes[0].kube_name is None

    @pytest.mark.asyncio
    async def test_etcd_query_failure_is_a_warning(self, lifecycle, talos):
        await lifecycle.create_cluster()
        talos.etcd_error = CommandError("etcd unavailable", 1)

        report = await lifecycle.add_node(NodeRole.CONTROL_PLANE)

        assert any("Could not list etcd members" in w for w in report.warnings)
        assert report.nodes[0].phase is LifecyclePhase.READY


class TestRemoveNode:
    @pytest.mark.asyncio
    async def test_remove_worker_by_vm_name(self, lifecycle, provider, kube, answers):
        await lifecycle.create_cluster()
        await lifecycle.add_node(NodeRole.WORKER)
        answers.append("yes")

        report = await lifecycle.remove_node("lab-worker-02")

        node = report.nodes[0]
        assert node.vm_state is VMState.REMOVED
        assert node.membership is Membership.REMOVED
        assert ("drain", node.kube_name) in kube.calls
        assert node.kube_name not in kube.nodes
        assert "lab-worker-02" not in provider.vms
        assert "/vhd/lab-worker-02.vhdx" not in provider.disks

    @pytest.mark.asyncio
    async def test_remove_worker_by_kubernetes_name(self, lifecycle, provider, kube):
        await lifecycle.create_cluster()
        added = await lifecycle.add_node(NodeRole.WORKER)
        kube_name = added.nodes[0].kube_name

        report = await lifecycle.remove_node(kube_name, force=True)

        assert report.nodes[0].name == "lab-worker-02"
        assert "lab-worker-02" not in provider.vms

    @pytest.mark.asyncio
    async def test_add_after_remove_reuses_nothing_below_max(self, lifecycle):
        await lifecycle.create_cluster()
        await lifecycle.add_node(NodeRole.WORKER)
        await lifecycle.add_node(NodeRole.WORKER)
        await lifecycle.remove_node("lab-worker-02", force=True)

        report = await lifecycle.add_node(NodeRole.WORKER)

        assert report.nodes[0].name == "lab-worker-04"

    @pytest.mark.asyncio
    async def test_declined_confirmation_changes_nothing(self, lifecycle, provider, kube, answers, prompts):
        await lifecycle.create_cluster()
        answers.append("y")

        with pytest.raises(UserAbort):
            await lifecycle.remove_node("lab-worker-01")

        assert "lab-worker-01" in provider.vms
        assert kube.calls == []
        assert "lab-worker-01" in prompts[0]

    @pytest.mark.asyncio
    async def test_drain_failure_is_fatal_without_force(self, lifecycle, provider, kube, answers):
        await lifecycle.create_cluster()
        kube.drain_error = CommandError("pdb violation", 1)
        answers.append("yes")

        with pytest.raises(PhaseFailed) as excinfo:
            await lifecycle.remove_node("lab-worker-01")

        assert excinfo.value.phase == "Drain"
        assert "lab-worker-01" in provider.vms

    @pytest.mark.asyncio
    async def test_drain_failure_with_force_warns_and_continues(self, lifecycle, provider, kube):
        await lifecycle.create_cluster()
        kube.drain_error = CommandError("pdb violation", 1)

        report = await lifecycle.remove_node("lab-worker-01", force=True)

        assert any("Drain" in w for w in report.warnings)
        assert "lab-worker-01" not in provider.vms

    @pytest.mark.asyncio
    async def test_control_plane_leaves_etcd(self, lifecycle, provider, talos):
        await lifecycle.create_cluster()
        await lifecycle.add_node(NodeRole.CONTROL_PLANE)

        report = await lifecycle.remove_node("lab-controlplane-02", force=True)

        node = report.nodes[0]
        assert node.role is NodeRole.CONTROL_PLANE
        assert talos.removed_members == [node.kube_name]
        assert any("quorum" in w for w in report.warnings)
        assert "lab-controlplane-02" not in provider.vms

    @pytest.mark.asyncio
    async def test_control_plane_etcd_failure_does_not_block(self, lifecycle, provider, talos):
        await lifecycle.create_cluster()
        await lifecycle.add_node(NodeRole.CONTROL_PLANE)
        talos.etcd_error = CommandError("etcd unavailable", 1)

        report = await lifecycle.remove_node("lab-controlplane-02", force=True)

        assert any("etcd membership query failed" in w for w in report.warnings)
        assert talos.removed_members == []
        assert "lab-controlplane-02" not in provider.vms

    @pytest.mark.asyncio
    async def test_unreadable_talosconfig_does_not_block(self, lifecycle, provider, talos, settings):
        await lifecycle.create_cluster()
        await lifecycle.add_node(NodeRole.CONTROL_PLANE)
        with open(os.path.join(settings.output_dir, "talosconfig"), "w") as f:
            f.write("contexts: [broken]\n")

        report = await lifecycle.remove_node("lab-controlplane-02", force=True)

        assert any("etcd membership query failed" in w for w in report.warnings)
        assert talos.removed_members == []
        assert "lab-controlplane-02" not in provider.vms

    @pytest.mark.asyncio
    async def test_stored_endpoint_is_not_removed_from_etcd(self, lifecycle, talos):
        await lifecycle.create_cluster()

        report = await lifecycle.remove_node("lab-controlplane-01", force=True)

        assert talos.removed_members == []
        assert any("stored control-plane endpoint" in w for w in report.warnings)

    @pytest.mark.asyncio
    async def test_unknown_node(self, lifecycle, provider):
        await lifecycle.create_cluster()
        with pytest.raises(NodeNotFound):
            await lifecycle.remove_node("lab-worker-42", force=True)
        assert len(provider.vms) == 2

    @pytest.mark.asyncio
    async def test_requires_kubeconfig(self, lifecycle):
        with pytest.raises(PreconditionError):
            await lifecycle.remove_node("lab-worker-01", force=True)


class TestDestroyCluster:
    @pytest.mark.asyncio
    async def test_destroys_everything(self, lifecycle, provider, settings, answers):
        await lifecycle.create_cluster()
        await lifecycle.add_node(NodeRole.WORKER)
        answers.append("yes")

        report = await lifecycle.destroy_cluster()

        assert provider.vms == {}
        assert provider.disks == set()
        assert not os.path.exists(settings.output_dir)
        assert all(n.vm_state is VMState.REMOVED for n in report.nodes)
        assert len(report.nodes) == 3

    @pytest.mark.asyncio
    async def test_works_without_kubernetes(self, lifecycle, provider, kube):
        await lifecycle.create_cluster()
        kube.list_error = CommandError("connection refused", 1)

        await lifecycle.destroy_cluster(force=True)

        assert provider.vms == {}

    @pytest.mark.asyncio
    async def test_empty_cluster_is_a_no_op(self, lifecycle, provider, prompts):
        report = await lifecycle.destroy_cluster()
        assert report.nodes == []
        assert prompts == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_other_vms_are_untouched(self, lifecycle, provider):
        provider.add_existing_vm("lab-worker-01", ip="192.168.50.20")
        provider.add_existing_vm("lab-old-backup", ip="192.168.50.40")
        provider.add_existing_vm("prod-worker-01", ip="192.168.50.50")

        await lifecycle.destroy_cluster(force=True)

        assert sorted(provider.vms) == ["lab-old-backup", "prod-worker-01"]

    @pytest.mark.asyncio
    async def test_stopped_vm_is_not_stopped_again(self, lifecycle, provider):
        provider.add_existing_vm("lab-worker-01", state=VMState.STOPPED)

        await lifecycle.destroy_cluster(force=True)

        assert ("stop", "lab-worker-01") not in provider.calls
        assert ("delete", "lab-worker-01") in provider.calls

    @pytest.mark.asyncio
    async def test_declined_confirmation(self, lifecycle, provider, answers):
        provider.add_existing_vm("lab-worker-01", ip="192.168.50.20")
        answers.append("no")
        with pytest.raises(UserAbort):
            await lifecycle.destroy_cluster()
        assert "lab-worker-01" in provider.vms

    @pytest.mark.asyncio
    async def test_ctrl_c_at_the_prompt_aborts(self, lifecycle, provider):
        provider.add_existing_vm("lab-worker-01", ip="192.168.50.20")

        def interrupted(question):
            raise KeyboardInterrupt

        lifecycle.prompt = interrupted
        with pytest.raises(UserAbort):
            await lifecycle.destroy_cluster()
        assert "lab-worker-01" in provider.vms

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_credentials(self, lifecycle, provider, settings):
        await lifecycle.create_cluster()
        provider.fail_delete.add("lab-worker-01")

        with pytest.raises(DestroyError) as excinfo:
            await lifecycle.destroy_cluster(force=True)

        assert list(excinfo.value.failures) == ["lab-worker-01"]
        assert "lab-controlplane-01" not in provider.vms
        assert os.path.isdir(settings.output_dir)
        assert excinfo.value.report is not None
        assert not excinfo.value.report.ok

    @pytest.mark.asyncio
    async def test_credential_cleanup_failure_is_reported(self, lifecycle, provider, settings, monkeypatch):
        await lifecycle.create_cluster()

        def locked():
            raise PermissionError(13, "Permission denied", settings.output_dir)

        monkeypatch.setattr(lifecycle.artifacts, "remove", locked)

        with pytest.raises(DestroyError) as excinfo:
            await lifecycle.destroy_cluster(force=True)

        assert provider.vms == {}
        assert list(excinfo.value.failures) == [settings.output_dir]
        assert "Permission denied" in excinfo.value.failures[settings.output_dir]

