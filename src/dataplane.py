"""
Data-Plane Reconciler - Converge the receive adapter of a source.

Ensures exactly one receive adapter workload exists with the desired
configuration, binds it to the autoscaler when elastic scaling is
requested, and reflects the workload's health on the Deployed condition.
"""

import logging
import re
from typing import Dict, List, Optional

from conditions import ConditionType
from events import Reason, ReconcileError
from models import PubSubSource, SourceStatus
from naming import workload_labels, workload_name_for
from plugins.base import OwnerReference
from plugins.workloads.base import (
    AutoscalerBinder,
    BindingSpec,
    Workload,
    WorkloadAdmin,
    WorkloadSpec,
)
from resolver import DesiredConfig

logger = logging.getLogger(__name__)

SOURCE_API_VERSION = "events.cloud/v1"
SOURCE_KIND = "PubSubSource"

WORKLOAD_GET_FAILED = "WorkloadGetFailed"
WORKLOAD_CREATE_FAILED = "WorkloadCreateFailed"
WORKLOAD_UPDATE_FAILED = "WorkloadUpdateFailed"
WORKLOAD_DELETE_FAILED = "WorkloadDeleteFailed"
AUTOSCALER_BINDING_FAILED = "AutoscalerBindingFailed"
AUTHENTICATION_CHECK_PENDING = "AuthenticationCheckPending"
WORKLOAD_UNAVAILABLE = "WorkloadUnavailable"
DEPLOYED = "Deployed"

# Messages the adapter and the kubelet produce when credentials are missing
# or rejected.
AUTH_FAILURE_PATTERN = re.compile(
    r"checking authentication"
    r"|unauthenticated"
    r"|authentication (?:failed|error)"
    r"|permission[ _]?denied"
    r"|couldn't find key \S+ in secret"
    r"|secrets? \S+ not found"
    r"|could not find default credentials"
    r"|invalid_grant",
    re.IGNORECASE,
)


class _StepFailed(Exception):
    """A data-plane step failed with a condition reason."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


def find_auth_failure(messages: List[str]) -> Optional[str]:
    """Return the first diagnostic message that signals an auth failure."""
    for message in messages:
        if message and AUTH_FAILURE_PATTERN.search(message):
            return message
    return None


def owner_reference(source: PubSubSource) -> OwnerReference:
    return OwnerReference(
        api_version=SOURCE_API_VERSION,
        kind=SOURCE_KIND,
        name=source.name,
        uid=source.uid,
    )


def make_workload(
    source: PubSubSource, desired: DesiredConfig, subscription_id: str, image: str
) -> WorkloadSpec:
    """Build the desired receive adapter workload of a source."""
    env: Dict[str, str] = {
        "PROJECT_ID": desired.project_id,
        "PUBSUB_TOPIC_ID": desired.topic,
        "PUBSUB_SUBSCRIPTION_ID": subscription_id,
        "SINK_URI": desired.sink_uri,
        "NAME": source.name,
        "NAMESPACE": source.namespace,
    }
    if desired.transformer_uri:
        env["TRANSFORMER_URI"] = desired.transformer_uri

    secret = source.spec.secret
    return WorkloadSpec(
        name=workload_name_for(source.name, subscription_id),
        namespace=source.namespace,
        image=image,
        env=env,
        labels=workload_labels(source.name),
        replicas=None if desired.scaling.elastic else desired.scaling.static_replicas,
        secret_name=secret.name if secret else None,
        secret_key=secret.key if secret else None,
        owner=owner_reference(source),
    )


def make_binding(
    source: PubSubSource,
    desired: DesiredConfig,
    workload: WorkloadSpec,
    subscription_id: str,
) -> BindingSpec:
    """Build the autoscaler binding targeting a workload."""
    scaling = desired.scaling
    return BindingSpec(
        name=workload.name,
        namespace=source.namespace,
        target=workload.name,
        subscription_id=subscription_id,
        project_id=desired.project_id,
        min_scale=scaling.min_scale,
        max_scale=scaling.max_scale,
        queue_depth_target=scaling.queue_depth_target,
        cooldown_period=scaling.cooldown_period,
        polling_interval=scaling.polling_interval,
        labels=dict(workload.labels),
        owner=owner_reference(source),
    )


class DataPlaneReconciler:
    """Creates and updates receive adapters through a WorkloadAdmin."""

    def __init__(
        self,
        workloads: WorkloadAdmin,
        image: str,
        binder: Optional[AutoscalerBinder] = None,
    ):
        self.workloads = workloads
        self.image = image
        self.binder = binder

    async def reconcile(
        self,
        source: PubSubSource,
        status: SourceStatus,
        desired: DesiredConfig,
        subscription_id: str,
    ) -> Workload:
        """
        Ensure the receive adapter (and autoscaler binding) of a source.

        The workload and the binding are both attempted in the same pass;
        either may fail independently.

        Raises:
            ReconcileError: The workload or the binding step failed
        """
        conditions = status.conditions
        desired_workload = make_workload(source, desired, subscription_id, self.image)
        errors: List[str] = []
        workload: Optional[Workload] = None

        try:
            workload = await self._ensure_workload(source, desired_workload)
        except _StepFailed as e:
            if e.reason == WORKLOAD_GET_FAILED:
                conditions.mark_unknown(ConditionType.DEPLOYED, e.reason, e.message)
            else:
                conditions.mark_false(ConditionType.DEPLOYED, e.reason, e.message)
            errors.append(e.message)

        if desired.scaling.elastic:
            try:
                await self._ensure_binding(
                    source, desired, desired_workload, subscription_id
                )
            except _StepFailed as e:
                if workload is not None:
                    conditions.mark_false(ConditionType.DEPLOYED, e.reason, e.message)
                errors.append(e.message)

        if errors:
            raise ReconcileError(
                Reason.DATA_PLANE_RECONCILE_FAILED,
                f"Failed to reconcile Data Plane resource(s): {'; '.join(errors)}",
            )

        await self.propagate_health(source, status, workload)
        return workload

    async def _ensure_workload(
        self, source: PubSubSource, desired: WorkloadSpec
    ) -> Workload:
        try:
            live = await self.workloads.list_workloads(source.namespace, desired.labels)
        except Exception as e:
            raise _StepFailed(
                WORKLOAD_GET_FAILED, f"Error getting the Receive Adapter: {e}"
            ) from e

        current = next((w for w in live if w.spec.name == desired.name), None)
        if current is None:
            try:
                workload = await self.workloads.create_workload(desired)
            except Exception as e:
                raise _StepFailed(
                    WORKLOAD_CREATE_FAILED, f"Error creating the Receive Adapter: {e}"
                ) from e
            logger.info(f"[{source.key}] Created receive adapter {desired.name}")
        elif desired.differs_from(current.spec):
            try:
                workload = await self.workloads.update_workload(desired)
            except Exception as e:
                raise _StepFailed(
                    WORKLOAD_UPDATE_FAILED, f"Error updating the Receive Adapter: {e}"
                ) from e
            logger.info(f"[{source.key}] Updated receive adapter {desired.name}")
        else:
            workload = current

        await self._remove_stale(source, desired, live)
        return workload

    async def _remove_stale(
        self, source: PubSubSource, desired: WorkloadSpec, live: List[Workload]
    ) -> None:
        """Delete adapters of this source left under an older derived name."""
        for stale in live:
            if stale.spec.name == desired.name:
                continue
            logger.warning(
                f"[{source.key}] Deleting stale receive adapter {stale.spec.name}"
            )
            try:
                await self.workloads.delete_workload(source.namespace, stale.spec.name)
            except Exception as e:
                raise _StepFailed(
                    WORKLOAD_DELETE_FAILED,
                    f"Error deleting the stale Receive Adapter {stale.spec.name}: {e}",
                ) from e

    async def _ensure_binding(
        self,
        source: PubSubSource,
        desired: DesiredConfig,
        workload: WorkloadSpec,
        subscription_id: str,
    ) -> None:
        if self.binder is None:
            raise _StepFailed(
                AUTOSCALER_BINDING_FAILED,
                "Elastic scaling requested but no autoscaler backend is configured",
            )
        try:
            await self.binder.create_or_update_binding(
                make_binding(source, desired, workload, subscription_id)
            )
        except Exception as e:
            raise _StepFailed(
                AUTOSCALER_BINDING_FAILED, f"Error binding the autoscaler: {e}"
            ) from e

    async def propagate_health(
        self, source: PubSubSource, status: SourceStatus, workload: Workload
    ) -> None:
        """
        Reflect workload availability on the Deployed condition.

        An unavailable workload whose diagnostics show an authentication
        failure reports that message verbatim.
        """
        conditions = status.conditions
        if workload.available:
            conditions.mark_true(ConditionType.DEPLOYED, DEPLOYED)
            return

        try:
            diagnostics = await self.workloads.get_diagnostics(
                source.namespace, workload.spec.labels, workload.spec.name
            )
        except Exception as e:
            logger.warning(f"[{source.key}] Could not read adapter diagnostics: {e}")
            diagnostics = []

        auth_message = find_auth_failure(diagnostics)
        if auth_message:
            conditions.mark_unknown(
                ConditionType.DEPLOYED, AUTHENTICATION_CHECK_PENDING, auth_message
            )
        else:
            conditions.mark_unknown(
                ConditionType.DEPLOYED,
                WORKLOAD_UNAVAILABLE,
                workload.message or "Receive adapter is not available",
            )