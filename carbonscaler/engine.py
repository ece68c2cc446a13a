"""
Decision Engine - Carbon-Aware Replica Ceiling Orchestration

The DecisionEngine composes the individual checks into one evaluation:
1. Eco mode off rules (custom windows, recurring schedules, sustained intensity)
2. Intensity band lookup for the forecast sample covering "now"
3. Demand guard against the HPA's desired replicas
4. Requeue alignment to the forecast granularity

The engine holds no mutable state: every call is a function of its inputs and
the evaluation time. Observability is delegated to an injected
DecisionRecorder instead of process-wide metrics.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, Optional

from .bands import resolve_max_replicas
from .demand import guard_demand
from .eco_mode import evaluate_eco_mode
from .models import Decision, EcoPolicy, ForecastSample, find_forecast, to_utc
from .wake import next_tick

_LOGGER = logging.getLogger("carbonscaler.engine")

DEFAULT_GRANULARITY_MINUTES = 5


class DecisionRecorder(ABC):
    """Receives every decision the engine produces (metrics, audit, ...)."""

    @abstractmethod
    def record(self, policy: EcoPolicy, sample: Optional[ForecastSample], decision: Decision) -> None:
        """Observe one decision together with the sample it was based on."""


class NullRecorder(DecisionRecorder):
    """Recorder that drops everything."""

    def record(self, policy: EcoPolicy, sample: Optional[ForecastSample], decision: Decision) -> None:
        return None


class DecisionEngine:
    """
    Produce replica ceilings for a carbon-aware scaler.

    Args:
        default_granularity: Requeue granularity in minutes when no forecast
            sample covers the evaluation time
        recorder: Sink for produced decisions (defaults to a no-op)
    """

    def __init__(
        self,
        default_granularity: int = DEFAULT_GRANULARITY_MINUTES,
        recorder: Optional[DecisionRecorder] = None,
    ) -> None:
        if default_granularity <= 0:
            raise ValueError(f"default granularity must be positive, got {default_granularity}")
        self.default_granularity = default_granularity
        self.recorder = recorder or NullRecorder()

    def evaluate(
        self,
        policy: EcoPolicy,
        series: Optional[Iterable[ForecastSample]],
        now: Optional[datetime] = None,
        observed_desired: Optional[int] = None,
    ) -> Decision:
        """
        Evaluate the policy once and return a fresh decision.

        Args:
            policy: Eco policy of the scaler
            series: Forecast samples (read only, first covering sample wins)
            now: Evaluation time, defaults to the current UTC time
            observed_desired: HPA desired replicas, None when the target has none

        Raises:
            ScheduleParseError: malformed window or cron expression
            NoForecastError: eco mode is on but no sample covers ``now``
            InvalidPolicyError: the policy has no intensity bands
        """
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        samples = tuple(series) if series else ()
        current = find_forecast(samples, now)

        override = evaluate_eco_mode(now, policy, samples)
        if override is not None:
            max_replicas = policy.default_max_replicas
        else:
            max_replicas = resolve_max_replicas(current, policy.intensity_bands)
            if observed_desired is not None:
                override = guard_demand(max_replicas, observed_desired)
                if override is not None:
                    max_replicas = policy.default_max_replicas

        if override is not None and override.wake_delay is not None:
            delay = override.wake_delay
        else:
            granularity = current.duration if current is not None else self.default_granularity
            delay = next_tick(now, granularity)

        decision = Decision(
            overridden=override is not None,
            reason=override.reason if override is not None else "",
            max_replicas=max_replicas,
            next_evaluation_delay=delay,
        )
        if decision.overridden:
            _LOGGER.info("eco mode disabled: %s", decision.reason)
        self.recorder.record(policy, current, decision)
        return decision
