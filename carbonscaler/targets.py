"""
KEDA target access for the reconciler.

A CarbonAwareKedaScaler points at a KEDA ScaledObject or ScaledJob. The
reconciler reads the HPA behind a ScaledObject for the demand signal, writes
``spec.maxReplicaCount`` on the target and reports status conditions and
events on the scaler resource itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import InvalidPolicyError, TargetError
from .models import EcoPolicy, format_rfc3339

_LOGGER = logging.getLogger("carbonscaler.targets")

SCALER_GROUP = "carbonaware.kubernetes.azure.com"
SCALER_VERSION = "v1alpha1"
SCALER_PLURAL = "carbonawarekedascalers"
SCALER_KIND = "CarbonAwareKedaScaler"

KEDA_GROUP = "keda.sh"
KEDA_VERSION = "v1alpha1"
SCALED_OBJECT = "scaledobjects.keda.sh"
SCALED_JOB = "scaledjobs.keda.sh"

CONDITION_TYPE = "OperatorDegraded"

# Reasons why the operator is (or is not) in degraded status
REASON_SUCCEEDED = "OperatorSucceeded"
REASON_TARGET_UPDATE_FAILED = "OperatorTargetUpdateFailed"
REASON_TARGET_NOT_FOUND = "OperatorTargetNotFound"
REASON_TARGET_FETCH_ERROR = "OperatorTargetFetchError"
REASON_CARBON_DATA_FETCH_ERROR = "OperatorCarbonDataFetchError"
REASON_MAX_REPLICAS_COUNT_ERROR = "OperatorMaxReplicasCountError"
REASON_ECO_MODE_DISABLED_ERROR = "OperatorEcoModeDisabledError"
REASON_ECO_MODE_DISABLED = "OperatorEcoModeDisabled"


@dataclass(frozen=True)
class ScalerSpec:
    """
    Parsed CarbonAwareKedaScaler resource.

    Attributes:
        namespace: Namespace of the scaler resource
        name: Name of the scaler resource
        keda_target: ``scaledobjects.keda.sh`` or ``scaledjobs.keda.sh``
        target_name: Name of the KEDA object to cap
        target_namespace: Namespace of the KEDA object
        policy: Eco policy (bands and eco-mode-off rules)
        data_source: Raw ``carbonIntensityForecastDataSource`` section
        overrides: Operator config overrides for this scaler
    """

    namespace: str
    name: str
    keda_target: str
    target_name: str
    target_namespace: str
    policy: EcoPolicy
    data_source: Mapping[str, Any] = field(default_factory=dict)
    overrides: Mapping[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_scaled_object(self) -> bool:
        return "scaledobject" in self.keda_target

    @property
    def target_plural(self) -> str:
        return "scaledobjects" if self.is_scaled_object else "scaledjobs"

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> "ScalerSpec":
        """
        Build a spec from a CarbonAwareKedaScaler object (as returned by the
        CustomObjectsApi).

        Raises:
            InvalidPolicyError: when required fields are missing or invalid
        """
        metadata = resource.get("metadata") or {}
        spec = resource.get("spec")
        if not isinstance(spec, Mapping):
            raise InvalidPolicyError("scaler resource has no spec")

        name = metadata.get("name")
        namespace = metadata.get("namespace") or "default"
        if not name:
            raise InvalidPolicyError("scaler resource has no name")

        keda_target = str(spec.get("kedaTarget") or "")
        if keda_target not in (SCALED_OBJECT, SCALED_JOB):
            raise InvalidPolicyError(
                f"kedaTarget must be {SCALED_OBJECT} or {SCALED_JOB}, got {keda_target!r}"
            )

        target_ref = spec.get("kedaTargetRef")
        if not isinstance(target_ref, Mapping) or not target_ref.get("name"):
            raise InvalidPolicyError("kedaTargetRef.name is required")

        data_source = spec.get("carbonIntensityForecastDataSource") or {}
        overrides = resource.get("operator") or {}
        return cls(
            namespace=str(namespace),
            name=str(name),
            keda_target=keda_target,
            target_name=str(target_ref["name"]),
            target_namespace=str(target_ref.get("namespace") or namespace),
            policy=EcoPolicy.from_dict(spec),
            data_source=dict(data_source) if isinstance(data_source, Mapping) else {},
            overrides=dict(overrides) if isinstance(overrides, Mapping) else {},
        )


@dataclass(frozen=True)
class HpaStatus:
    current_replicas: int
    desired_replicas: int


def merge_condition(
    existing: Optional[List[Mapping[str, Any]]],
    status: str,
    reason: str,
    message: str,
    now: datetime,
) -> List[Dict[str, Any]]:
    """
    Set the OperatorDegraded condition in a conditions list.

    ``lastTransitionTime`` only moves when the status value changes; other
    condition types are kept as they are.
    """
    conditions: List[Dict[str, Any]] = []
    previous: Optional[Mapping[str, Any]] = None
    for condition in existing or []:
        if condition.get("type") == CONDITION_TYPE:
            previous = condition
            continue
        conditions.append(dict(condition))

    transition = format_rfc3339(now)
    if previous is not None and previous.get("status") == status and previous.get("lastTransitionTime"):
        transition = str(previous["lastTransitionTime"])

    conditions.append(
        {
            "type": CONDITION_TYPE,
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": transition,
        }
    )
    return conditions


class KedaTargetClient:
    """Read and update KEDA targets and report on scaler resources."""

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        autoscaling_api: client.AutoscalingV2Api,
        core_api: Optional[client.CoreV1Api] = None,
        component: str = "carbon-aware-keda-operator",
    ) -> None:
        self._custom = custom_api
        self._autoscaling = autoscaling_api
        self._core = core_api
        self.component = component

    def get_target(self, spec: ScalerSpec) -> Dict[str, Any]:
        try:
            return self._custom.get_namespaced_custom_object(
                KEDA_GROUP,
                KEDA_VERSION,
                spec.target_namespace,
                spec.target_plural,
                spec.target_name,
            )
        except ApiException as exc:
            raise _target_error(f"{spec.target_plural} {spec.target_namespace}/{spec.target_name}", exc) from exc

    def read_hpa(self, spec: ScalerSpec) -> Optional[HpaStatus]:
        """
        Return current/desired replicas of the HPA behind a ScaledObject.

        ScaledJobs have no HPA, so None is returned for them.
        """
        if not spec.is_scaled_object:
            return None

        target = self.get_target(spec)
        status = target.get("status") or {}
        hpa_name = status.get("hpaName") or f"keda-hpa-{spec.target_name}"
        try:
            hpa = self._autoscaling.read_namespaced_horizontal_pod_autoscaler(hpa_name, spec.target_namespace)
        except ApiException as exc:
            raise _target_error(f"hpa {spec.target_namespace}/{hpa_name}", exc) from exc

        hpa_status = hpa.status
        return HpaStatus(
            current_replicas=int(getattr(hpa_status, "current_replicas", 0) or 0),
            desired_replicas=int(getattr(hpa_status, "desired_replicas", 0) or 0),
        )

    def apply_max_replicas(self, spec: ScalerSpec, max_replicas: int) -> None:
        """Merge-patch ``spec.maxReplicaCount`` of the KEDA target."""
        body = {"spec": {"maxReplicaCount": int(max_replicas)}}
        try:
            self._custom.patch_namespaced_custom_object(
                KEDA_GROUP,
                KEDA_VERSION,
                spec.target_namespace,
                spec.target_plural,
                spec.target_name,
                body,
            )
        except ApiException as exc:
            raise _target_error(f"{spec.target_plural} {spec.target_namespace}/{spec.target_name}", exc) from exc
        _LOGGER.info(
            "Updated %s %s/%s maxReplicaCount=%d",
            spec.target_plural,
            spec.target_namespace,
            spec.target_name,
            max_replicas,
        )

    def set_status_condition(
        self,
        spec: ScalerSpec,
        status: str,
        reason: str,
        message: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Update the OperatorDegraded condition on the scaler's status."""
        now = now or datetime.now(timezone.utc)
        try:
            current = self._custom.get_namespaced_custom_object_status(
                SCALER_GROUP, SCALER_VERSION, spec.namespace, SCALER_PLURAL, spec.name
            )
            existing = (current.get("status") or {}).get("conditions") or []
            body = {"status": {"conditions": merge_condition(existing, status, reason, message, now)}}
            self._custom.patch_namespaced_custom_object_status(
                SCALER_GROUP, SCALER_VERSION, spec.namespace, SCALER_PLURAL, spec.name, body
            )
        except ApiException as exc:
            raise _target_error(f"{SCALER_PLURAL} {spec.key} status", exc) from exc

    def record_event(
        self,
        spec: ScalerSpec,
        event_type: str,
        reason: str,
        message: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Create a core/v1 Event on the scaler resource."""
        if self._core is None:
            return
        now = now or datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{spec.name}.", namespace=spec.namespace),
            involved_object=client.V1ObjectReference(
                api_version=f"{SCALER_GROUP}/{SCALER_VERSION}",
                kind=SCALER_KIND,
                name=spec.name,
                namespace=spec.namespace,
            ),
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=client.V1EventSource(component=self.component),
        )
        try:
            self._core.create_namespaced_event(spec.namespace, event)
        except ApiException as exc:
            raise _target_error(f"event for {spec.key}", exc) from exc


def _target_error(what: str, exc: ApiException) -> TargetError:
    if exc.status == 404:
        return TargetError(f"unable to find {what}", not_found=True)
    return TargetError(f"request for {what} failed: {exc.status} {exc.reason}")
