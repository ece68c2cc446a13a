"""
Reconciler - one control-loop tick for a CarbonAwareKedaScaler.

A tick fetches the forecast, reads the HPA demand signal, runs the decision
engine and writes the resulting ceiling to the KEDA target. Errors from the
engine or the forecast source never block scaling: the reconciler falls back
to the policy's default max replicas and retries on the default cadence.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from .engine import DecisionEngine
from .errors import (
    CarbonScalerError,
    ForecastFetchError,
    InvalidPolicyError,
    NoForecastError,
    ScheduleParseError,
    TargetError,
)
from .metrics import ScalerMetrics
from .models import Decision, ForecastSample, OperatorConfig, find_forecast, to_utc
from .providers import ForecastFetcher
from .targets import (
    REASON_CARBON_DATA_FETCH_ERROR,
    REASON_ECO_MODE_DISABLED,
    REASON_ECO_MODE_DISABLED_ERROR,
    REASON_MAX_REPLICAS_COUNT_ERROR,
    REASON_SUCCEEDED,
    REASON_TARGET_FETCH_ERROR,
    REASON_TARGET_NOT_FOUND,
    REASON_TARGET_UPDATE_FAILED,
    KedaTargetClient,
    ScalerSpec,
)
from .wake import next_tick

_LOGGER = logging.getLogger("carbonscaler.reconciler")


class Reconciler:
    """
    Reconcile a single scaler.

    Args:
        spec: Parsed scaler resource
        fetcher: Forecast source for this scaler
        targets: KEDA/Kubernetes access
        metrics: Prometheus collectors
        config: Operator configuration (after per-scaler overrides)
    """

    def __init__(
        self,
        spec: ScalerSpec,
        fetcher: ForecastFetcher,
        targets: KedaTargetClient,
        metrics: ScalerMetrics,
        config: Optional[OperatorConfig] = None,
    ) -> None:
        self.spec = spec
        self.fetcher = fetcher
        self.targets = targets
        self.metrics = metrics
        self.config = config or OperatorConfig()
        self._recorder = metrics.recorder(spec.namespace, spec.name)
        self.engine = DecisionEngine(
            default_granularity=self.config.default_requeue_minutes,
            recorder=self._recorder,
        )

    def reconcile(self, now: Optional[datetime] = None) -> Decision:
        """
        Run one tick and return the decision that was applied.

        Raises:
            TargetError: the KEDA target or its HPA could not be read or updated;
                status and metrics are updated before raising
        """
        spec = self.spec
        labels = (spec.namespace, spec.name)
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        self.metrics.reconciles.labels(*labels).inc()

        degraded: Optional[Tuple[str, str]] = None
        series: Tuple[ForecastSample, ...] = ()
        try:
            series = tuple(self.fetcher.fetch(now))
        except ForecastFetchError as exc:
            _LOGGER.error("failed to fetch carbon forecast for %s: %s", spec.key, exc)
            self._event("Warning", "CarbonIntensityForecastMissing", "Failed to fetch carbon forecast", now)
            degraded = (REASON_CARBON_DATA_FETCH_ERROR, f"failed to fetch carbon forecast: {exc}")
            decision = self._fallback(str(exc), series, now)

        observed_desired = self._observed_desired(now)

        if degraded is None:
            try:
                decision = self.engine.evaluate(spec.policy, series, now, observed_desired)
            except ScheduleParseError as exc:
                _LOGGER.error("unable to parse eco mode off configs for %s: %s", spec.key, exc)
                self._event("Warning", "EcoModeConfigError", "Failed to parse eco mode off configs", now)
                degraded = (REASON_ECO_MODE_DISABLED_ERROR, f"unable to parse eco mode off configs: {exc}")
                decision = self._fallback(str(exc), series, now)
            except (NoForecastError, InvalidPolicyError) as exc:
                _LOGGER.error("unable to find max replica count for %s: %s", spec.key, exc)
                self._event(
                    "Warning",
                    "MaxReplicaError",
                    f"Unable to find max replica count for carbon forecast: {exc}",
                    now,
                )
                degraded = (REASON_MAX_REPLICAS_COUNT_ERROR, f"unable to find max replica count for carbon forecast: {exc}")
                decision = self._fallback(str(exc), series, now)

        if decision.overridden:
            self._event("Warning", "EcoModeDisabled", f"Eco mode disabled due to {decision.reason}", now)

        try:
            self.targets.apply_max_replicas(spec, decision.max_replicas)
        except TargetError as exc:
            self.metrics.reconcile_errors.labels(*labels).inc()
            reason = REASON_TARGET_NOT_FOUND if exc.not_found else REASON_TARGET_UPDATE_FAILED
            self._condition("True", reason, f"failed to update {spec.target_plural}: {exc}", now)
            raise

        if degraded is not None:
            self._condition("True", degraded[0], degraded[1], now)
        elif decision.overridden:
            self._condition("True", REASON_ECO_MODE_DISABLED, "operator successfully reconciling but eco mode is disabled", now)
        else:
            self._condition("False", REASON_SUCCEEDED, "operator successfully reconciling and eco mode is enabled", now)

        self._event(
            "Normal",
            "MaxReplicaCountReconciled",
            f"Successfully set max replicas for {spec.target_name} to {decision.max_replicas}",
            now,
        )
        return decision

    def _observed_desired(self, now: datetime) -> Optional[int]:
        spec = self.spec
        labels = (spec.namespace, spec.name)
        try:
            hpa = self.targets.read_hpa(spec)
        except TargetError as exc:
            if exc.not_found:
                _LOGGER.error("unable to find target of %s: %s", spec.key, exc)
                self._condition("True", REASON_TARGET_NOT_FOUND, str(exc), now)
            else:
                self.metrics.reconcile_errors.labels(*labels).inc()
                _LOGGER.error("failed to read target of %s: %s", spec.key, exc)
                self._condition("True", REASON_TARGET_FETCH_ERROR, str(exc), now)
            raise

        if hpa is None:
            return None
        self.metrics.hpa_current_replicas.labels(*labels).set(hpa.current_replicas)
        self.metrics.hpa_desired_replicas.labels(*labels).set(hpa.desired_replicas)
        return hpa.desired_replicas

    def _fallback(self, reason: str, series: Tuple[ForecastSample, ...], now: datetime) -> Decision:
        decision = Decision(
            overridden=True,
            reason=reason,
            max_replicas=self.spec.policy.default_max_replicas,
            next_evaluation_delay=next_tick(now, self.config.default_requeue_minutes),
        )
        self._recorder.record(self.spec.policy, find_forecast(series, now), decision)
        return decision

    def _condition(self, status: str, reason: str, message: str, now: datetime) -> None:
        try:
            self.targets.set_status_condition(self.spec, status, reason, message, now)
        except CarbonScalerError as exc:
            _LOGGER.warning("unable to update status of %s: %s", self.spec.key, exc)

    def _event(self, event_type: str, reason: str, message: str, now: datetime) -> None:
        try:
            self.targets.record_event(self.spec, event_type, reason, message, now)
        except CarbonScalerError as exc:
            _LOGGER.warning("unable to record %s event for %s: %s", reason, self.spec.key, exc)
