"""Prometheus metrics for the carbon-aware scaler."""

from __future__ import annotations

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

from .engine import DecisionRecorder
from .models import Decision, EcoPolicy, ForecastSample

_LABELS = ["namespace", "scaler"]


class ScalerMetrics:
    """
    Owns the scaler's Prometheus collectors.

    One instance per registry; labeled by namespace/scaler to distinguish
    CarbonAwareKedaScaler resources. Tests pass a private CollectorRegistry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.reconciles = Counter(
            "carbon_aware_keda_scaler_reconciles",
            "Total number of reconciles",
            _LABELS,
            registry=registry,
        )
        self.reconcile_errors = Counter(
            "carbon_aware_keda_scaler_reconcile_errors",
            "Total number of reconcile errors",
            _LABELS,
            registry=registry,
        )
        self.carbon_intensity = Gauge(
            "carbon_aware_keda_scaler_carbon_intensity",
            "Carbon intensity of the forecast covering the last evaluation",
            _LABELS,
            registry=registry,
        )
        self.default_max_replicas = Gauge(
            "carbon_aware_keda_scaler_default_max_replicas",
            "Default max replicas used while eco mode is off",
            _LABELS,
            registry=registry,
        )
        self.max_replicas = Gauge(
            "carbon_aware_keda_scaler_max_replicas",
            "Max replicas applied to the KEDA target",
            _LABELS,
            registry=registry,
        )
        self.eco_mode_off = Counter(
            "carbon_aware_keda_scaler_eco_mode_off",
            "Evaluations by eco mode state (code=1 means eco mode off)",
            _LABELS + ["code"],
            registry=registry,
        )
        self.hpa_current_replicas = Gauge(
            "carbon_aware_keda_scaler_hpa_current_replicas",
            "Current replicas reported by the target's HPA",
            _LABELS,
            registry=registry,
        )
        self.hpa_desired_replicas = Gauge(
            "carbon_aware_keda_scaler_hpa_desired_replicas",
            "Desired replicas reported by the target's HPA",
            _LABELS,
            registry=registry,
        )

    def recorder(self, namespace: str, name: str) -> "ScalerRecorder":
        return ScalerRecorder(self, namespace, name)


class ScalerRecorder(DecisionRecorder):
    """DecisionRecorder exporting decisions of one scaler as metrics."""

    def __init__(self, metrics: ScalerMetrics, namespace: str, name: str) -> None:
        self._metrics = metrics
        self.namespace = namespace
        self.name = name

    def record(self, policy: EcoPolicy, sample: Optional[ForecastSample], decision: Decision) -> None:
        labels = (self.namespace, self.name)
        if sample is not None:
            self._metrics.carbon_intensity.labels(*labels).set(sample.intensity)
        self._metrics.default_max_replicas.labels(*labels).set(policy.default_max_replicas)
        self._metrics.max_replicas.labels(*labels).set(decision.max_replicas)
        code = "1" if decision.overridden else "0"
        self._metrics.eco_mode_off.labels(*labels, code).inc()
