"""Carbon-aware replica ceilings for KEDA scaled workloads."""

from .engine import DecisionEngine, DecisionRecorder, NullRecorder
from .errors import (
    CarbonScalerError,
    ForecastFetchError,
    InvalidPolicyError,
    NoForecastError,
    ScheduleParseError,
    TargetError,
)
from .models import Decision, EcoPolicy, ForecastSample, OperatorConfig, OverrideResult

__all__ = [
    "CarbonScalerError",
    "Decision",
    "DecisionEngine",
    "DecisionRecorder",
    "EcoPolicy",
    "ForecastFetchError",
    "ForecastSample",
    "InvalidPolicyError",
    "NoForecastError",
    "NullRecorder",
    "OperatorConfig",
    "OverrideResult",
    "ScheduleParseError",
    "TargetError",
]
