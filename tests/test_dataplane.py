"""Unit tests for dataplane.py - Receive adapter reconciliation."""

import pytest

from conditions import ConditionStatus, ConditionType
from conftest import IMAGE, PROJECT, SINK_URL, TOPIC, source_spec, subscription_config
from dataplane import (
    DataPlaneReconciler,
    find_auth_failure,
    make_binding,
    make_workload,
)
from events import Reason, ReconcileError
from models import PubSubSource, SourceSpec, SourceStatus
from resolver import DesiredConfig, ScalingOptions

SUB_ID = "cre-ps_default_orders_uid-1"


def make_source(**spec_overrides) -> PubSubSource:
    return PubSubSource(
        namespace="default",
        name="orders",
        uid="uid-1",
        spec=SourceSpec.from_dict(source_spec(**spec_overrides)),
    )


def make_desired(scaling=None, transformer_uri=None) -> DesiredConfig:
    return DesiredConfig(
        project_id=PROJECT,
        topic=TOPIC,
        subscription=subscription_config(),
        sink_uri=SINK_URL,
        transformer_uri=transformer_uri,
        scaling=scaling or ScalingOptions(),
    )


ELASTIC = ScalingOptions(autoscaling_class="elastic", min_scale=0, max_scale=5)


def new_status() -> SourceStatus:
    status = SourceStatus()
    status.conditions.initialize()
    return status


class TestMakeWorkload:
    def test_env_and_owner(self):
        spec = make_workload(make_source(), make_desired(), SUB_ID, IMAGE)

        assert spec.image == IMAGE
        assert spec.env == {
            "PROJECT_ID": PROJECT,
            "PUBSUB_TOPIC_ID": TOPIC,
            "PUBSUB_SUBSCRIPTION_ID": SUB_ID,
            "SINK_URI": SINK_URL,
            "NAME": "orders",
            "NAMESPACE": "default",
        }
        assert spec.owner.uid == "uid-1"
        assert spec.owner.kind == "PubSubSource"
        assert spec.replicas == 1

    def test_transformer_and_secret(self):
        source = make_source(secret={"name": "creds", "key": "key.json"})
        spec = make_workload(source, make_desired(transformer_uri="http://fn"), SUB_ID, IMAGE)

        assert spec.env["TRANSFORMER_URI"] == "http://fn"
        assert (spec.secret_name, spec.secret_key) == ("creds", "key.json")

    def test_elastic_leaves_replicas_to_autoscaler(self):
        spec = make_workload(make_source(), make_desired(ELASTIC), SUB_ID, IMAGE)
        assert spec.replicas is None

    def test_binding_targets_workload(self):
        desired = make_desired(ELASTIC)
        workload = make_workload(make_source(), desired, SUB_ID, IMAGE)
        binding = make_binding(make_source(), desired, workload, SUB_ID)

        assert binding.target == workload.name
        assert binding.subscription_id == SUB_ID
        assert (binding.min_scale, binding.max_scale) == (0, 5)


class TestFindAuthFailure:
    @pytest.mark.parametrize(
        "message",
        [
            "checking authentication: could not find default credentials",
            'couldn\'t find key key.json in Secret default/google-cloud-key',
            'secret "google-cloud-key" not found',
            "rpc error: code = PermissionDenied desc = denied",
        ],
    )
    def test_matches(self, message):
        assert find_auth_failure(["unrelated", message]) == message

    def test_no_match(self):
        assert find_auth_failure(["Back-off pulling image", ""]) is None


@pytest.mark.asyncio
class TestDataPlaneReconciler:
    @pytest.fixture
    def reconciler(self, workload_admin, binder):
        return DataPlaneReconciler(workload_admin, IMAGE, binder)

    async def test_creates_available_workload(self, reconciler, workload_admin):
        status = new_status()

        workload = await reconciler.reconcile(make_source(), status, make_desired(), SUB_ID)

        assert workload_admin.calls == [("create", workload.spec.name)]
        cond = status.conditions.get(ConditionType.DEPLOYED)
        assert cond.is_true()
        assert cond.reason == "Deployed"

    async def test_unchanged_workload_is_not_updated(self, reconciler, workload_admin):
        await reconciler.reconcile(make_source(), new_status(), make_desired(), SUB_ID)
        workload_admin.calls.clear()

        await reconciler.reconcile(make_source(), new_status(), make_desired(), SUB_ID)

        assert workload_admin.calls == []

    async def test_changed_workload_is_updated(self, reconciler, workload_admin):
        await reconciler.reconcile(make_source(), new_status(), make_desired(), SUB_ID)
        workload_admin.calls.clear()

        await reconciler.reconcile(
            make_source(), new_status(), make_desired(transformer_uri="http://fn"), SUB_ID
        )

        assert [c[0] for c in workload_admin.calls] == ["update"]

    async def test_renamed_workload_replaces_old_one(self, reconciler, workload_admin):
        old = await reconciler.reconcile(make_source(), new_status(), make_desired(), SUB_ID)
        workload_admin.calls.clear()

        new = await reconciler.reconcile(
            make_source(), new_status(), make_desired(), "custom-subscription"
        )

        assert new.spec.name != old.spec.name
        assert workload_admin.calls == [
            ("create", new.spec.name),
            ("delete", old.spec.name),
        ]
        assert list(workload_admin.workloads) == [new.spec.name]

    async def test_stale_workload_delete_failure(self, reconciler, workload_admin):
        await reconciler.reconcile(make_source(), new_status(), make_desired(), SUB_ID)
        workload_admin.delete_error = RuntimeError("forbidden")
        status = new_status()

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(
                make_source(), status, make_desired(), "custom-subscription"
            )

        assert "stale Receive Adapter" in exc_info.value.message
        cond = status.conditions.get(ConditionType.DEPLOYED)
        assert cond.reason == "WorkloadDeleteFailed"

    async def test_get_failure_marks_unknown(self, reconciler, workload_admin):
        workload_admin.list_error = RuntimeError("apiserver down")
        status = new_status()

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(make_source(), status, make_desired(), SUB_ID)

        assert exc_info.value.reason == Reason.DATA_PLANE_RECONCILE_FAILED
        cond = status.conditions.get(ConditionType.DEPLOYED)
        assert cond.status == ConditionStatus.UNKNOWN
        assert cond.reason == "WorkloadGetFailed"

    async def test_create_failure_marks_false(self, reconciler, workload_admin):
        workload_admin.create_error = RuntimeError("forbidden")
        status = new_status()

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(make_source(), status, make_desired(), SUB_ID)

        assert exc_info.value.message == (
            "Failed to reconcile Data Plane resource(s): "
            "Error creating the Receive Adapter: forbidden"
        )
        cond = status.conditions.get(ConditionType.DEPLOYED)
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == "WorkloadCreateFailed"

    async def test_elastic_binds_autoscaler(self, reconciler, binder):
        workload = await reconciler.reconcile(
            make_source(), new_status(), make_desired(ELASTIC), SUB_ID
        )
        assert binder.bindings[workload.spec.name].target == workload.spec.name

    async def test_binding_failure(self, reconciler, binder):
        binder.error = RuntimeError("CRD missing")
        status = new_status()

        with pytest.raises(ReconcileError):
            await reconciler.reconcile(make_source(), status, make_desired(ELASTIC), SUB_ID)

        assert status.conditions.get(ConditionType.DEPLOYED).reason == (
            "AutoscalerBindingFailed"
        )

    async def test_both_failures_reported(self, reconciler, workload_admin, binder):
        workload_admin.create_error = RuntimeError("forbidden")
        binder.error = RuntimeError("CRD missing")
        status = new_status()

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(make_source(), status, make_desired(ELASTIC), SUB_ID)

        assert "forbidden" in exc_info.value.message
        assert "CRD missing" in exc_info.value.message
        assert status.conditions.get(ConditionType.DEPLOYED).reason == (
            "WorkloadCreateFailed"
        )

    async def test_elastic_without_binder_fails(self, workload_admin):
        reconciler = DataPlaneReconciler(workload_admin, IMAGE)
        with pytest.raises(ReconcileError):
            await reconciler.reconcile(
                make_source(), new_status(), make_desired(ELASTIC), SUB_ID
            )

    async def test_unavailable_with_auth_failure(self, reconciler, workload_admin):
        workload_admin.available = False
        message = "checking authentication: could not find default credentials"
        workload_admin.diagnostics = ["Started container", message]
        status = new_status()

        await reconciler.reconcile(make_source(), status, make_desired(), SUB_ID)

        cond = status.conditions.get(ConditionType.DEPLOYED)
        assert cond.status == ConditionStatus.UNKNOWN
        assert cond.reason == "AuthenticationCheckPending"
        assert cond.message == message
        assert not status.conditions.is_ready()

    async def test_unavailable_without_diagnosis(self, reconciler, workload_admin):
        workload_admin.available = False
        status = new_status()

        await reconciler.reconcile(make_source(), status, make_desired(), SUB_ID)

        cond = status.conditions.get(ConditionType.DEPLOYED)
        assert cond.status == ConditionStatus.UNKNOWN
        assert cond.reason == "WorkloadUnavailable"
