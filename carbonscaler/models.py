"""
Data Models for the Carbon-Aware Scaler

This module defines the core data structures used throughout the scaler:
- ForecastSample: One carbon intensity forecast window
- IntensityBand: Upper intensity threshold mapped to a replica ceiling
- TimeWindowRule / IntensityDurationRule: Eco-mode-off rules
- EcoPolicy: Declarative scaling policy parsed from a CarbonAwareKedaScaler spec
- OverrideResult: Immutable outcome of a single override rule
- Decision: Final replica ceiling and requeue delay for one evaluation
- OperatorConfig: Runtime configuration parameters
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .errors import InvalidPolicyError

# fromisoformat only takes 3 or 6 fractional digits before Python 3.11
_FRACTION = re.compile(r"\.(\d+)")


def to_utc(moment: datetime) -> datetime:
    """Normalise a datetime to UTC; naive values are taken to already be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_rfc3339(value: Any) -> datetime:
    """
    Parse an RFC3339 timestamp into an aware UTC datetime.

    Raises:
        ValueError: if the value is not a string, is malformed or has no offset
    """
    if not isinstance(value, str):
        raise ValueError(f"expected string timestamp, got {type(value).__name__}")
    candidate = value.strip()
    if candidate.endswith("Z") or candidate.endswith("z"):
        candidate = candidate[:-1] + "+00:00"
    candidate = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), candidate, count=1)
    parsed = datetime.fromisoformat(candidate)
    if parsed.tzinfo is None:
        raise ValueError("timestamp has no UTC offset")
    return parsed.astimezone(timezone.utc)


def format_rfc3339(moment: datetime) -> str:
    return to_utc(moment).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ForecastSample:
    """
    Carbon intensity forecast for a half-open window.

    The sample is valid for ``[timestamp, timestamp + duration)``.

    Attributes:
        timestamp: Start of the forecast window (UTC)
        duration: Window length in minutes, also the sampling granularity
        intensity: Forecast carbon intensity in caller-defined units
        location: Optional grid region label
    """

    timestamp: datetime
    duration: int
    intensity: float
    location: Optional[str] = None

    def __post_init__(self) -> None:
        if self.duration <= 0:
            raise ValueError(f"forecast duration must be positive, got {self.duration}")
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))

    @property
    def end(self) -> datetime:
        return self.timestamp + timedelta(minutes=self.duration)

    def covers(self, instant: datetime) -> bool:
        """Return True when ``instant`` falls inside this sample's window."""
        return self.timestamp <= instant < self.end

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ForecastSample":
        """
        Build a sample from the forecast JSON format.

        Expected keys: ``timestamp`` (RFC3339), ``duration`` (minutes),
        ``value`` (intensity) and an optional ``location``.
        """
        location = payload.get("location")
        return cls(
            timestamp=parse_rfc3339(payload.get("timestamp")),
            duration=int(payload.get("duration", 0)),
            intensity=float(payload.get("value", 0.0)),
            location=str(location) if location else None,
        )

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "timestamp": format_rfc3339(self.timestamp),
            "duration": self.duration,
            "value": self.intensity,
        }
        if self.location:
            payload["location"] = self.location
        return payload


ForecastSeries = Sequence[ForecastSample]


def find_forecast(series: Optional[Iterable[ForecastSample]], instant: datetime) -> Optional[ForecastSample]:
    """
    Return the first sample whose window contains ``instant``.

    This is a plain linear scan: the forecast source does not guarantee
    non-overlapping windows, so iteration order decides between overlaps.
    """
    if not series:
        return None
    for sample in series:
        if sample.covers(instant):
            return sample
    return None


@dataclass(frozen=True)
class IntensityBand:
    """
    Replica ceiling for intensities up to ``upper_threshold`` (inclusive).

    The lower bound is the previous band's threshold once bands are sorted.
    """

    upper_threshold: float
    max_replicas: int


@dataclass(frozen=True)
class TimeWindowRule:
    """Absolute UTC window (raw RFC3339 strings) during which eco mode is off."""

    start: str
    end: str


@dataclass(frozen=True)
class IntensityDurationRule:
    """
    Turn eco mode off when every minute of the trailing ``duration_minutes``
    has a forecast intensity at or above ``threshold``.
    """

    threshold: float = 0.0
    duration_minutes: int = 0


@dataclass(frozen=True)
class EcoPolicy:
    """
    Declarative scaling policy for one scaler.

    Attributes:
        default_max_replicas: Ceiling applied whenever eco mode is off
        intensity_bands: Intensity bands (any order, sorted on evaluation)
        custom_schedule: Absolute eco-mode-off windows
        recurring_schedule: Cron expressions turning eco mode off
        carbon_intensity_duration: Sustained-intensity override rule
    """

    default_max_replicas: int
    intensity_bands: Tuple[IntensityBand, ...]
    custom_schedule: Tuple[TimeWindowRule, ...] = ()
    recurring_schedule: Tuple[str, ...] = ()
    carbon_intensity_duration: IntensityDurationRule = field(default_factory=IntensityDurationRule)

    @classmethod
    def from_dict(cls, payload: Any) -> "EcoPolicy":
        """
        Parse a policy from a CarbonAwareKedaScaler spec.

        Accepts the CRD layout (``ecoModeOff`` + ``maxReplicasByCarbonIntensity``)
        as well as the flat layout (``defaultMaxReplicas``, ``intensityBands``,
        ``customSchedule``, ``recurringSchedule``, ``carbonIntensityDuration``).

        Raises:
            InvalidPolicyError: when the payload is structurally unusable
        """
        if not isinstance(payload, Mapping):
            raise InvalidPolicyError("policy must be an object")

        eco_section = payload.get("ecoModeOff")
        if isinstance(eco_section, Mapping):
            section: Mapping[str, Any] = eco_section
            default_raw = eco_section.get("maxReplicas")
            bands_raw = payload.get("maxReplicasByCarbonIntensity")
        else:
            section = payload
            default_raw = payload.get("defaultMaxReplicas")
            bands_raw = payload.get("intensityBands")

        default_max = _require_int(default_raw, "default max replicas")
        if default_max < 0:
            raise InvalidPolicyError(f"default max replicas must be >= 0, got {default_max}")

        return cls(
            default_max_replicas=default_max,
            intensity_bands=_parse_bands(bands_raw),
            custom_schedule=_parse_windows(section.get("customSchedule")),
            recurring_schedule=_parse_recurring(section.get("recurringSchedule")),
            carbon_intensity_duration=_parse_duration(section.get("carbonIntensityDuration")),
        )


def _require_int(value: Any, name: str) -> int:
    if value is None or isinstance(value, bool):
        raise InvalidPolicyError(f"{name} is required and must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPolicyError(f"{name} must be an integer, got {value!r}") from None


def _require_float(value: Any, name: str) -> float:
    if value is None or isinstance(value, bool):
        raise InvalidPolicyError(f"{name} is required and must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidPolicyError(f"{name} must be a number, got {value!r}") from None


def _parse_bands(data: Any) -> Tuple[IntensityBand, ...]:
    if not isinstance(data, list) or not data:
        raise InvalidPolicyError("at least one carbon intensity band is required")

    bands = []
    for item in data:
        if not isinstance(item, Mapping):
            raise InvalidPolicyError(f"intensity band must be an object, got {item!r}")
        threshold_raw = item.get("carbonIntensityThreshold", item.get("upperThreshold"))
        threshold = _require_float(threshold_raw, "band threshold")
        replicas = _require_int(item.get("maxReplicas"), "band max replicas")
        if replicas < 0:
            raise InvalidPolicyError(f"band max replicas must be >= 0, got {replicas}")
        bands.append(IntensityBand(upper_threshold=threshold, max_replicas=replicas))
    return tuple(bands)


def _parse_windows(data: Any) -> Tuple[TimeWindowRule, ...]:
    if data is None:
        return ()
    if not isinstance(data, list):
        raise InvalidPolicyError("customSchedule must be a list")

    windows = []
    for item in data:
        if not isinstance(item, Mapping):
            raise InvalidPolicyError(f"custom schedule entry must be an object, got {item!r}")
        start = item.get("startTime", item.get("start"))
        end = item.get("endTime", item.get("end"))
        if not isinstance(start, str) or not isinstance(end, str):
            raise InvalidPolicyError("custom schedule entries need string start and end times")
        windows.append(TimeWindowRule(start=start, end=end))
    return tuple(windows)


def _parse_recurring(data: Any) -> Tuple[str, ...]:
    if data is None:
        return ()
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise InvalidPolicyError("recurringSchedule must be a list of cron strings")
    return tuple(data)


def _parse_duration(data: Any) -> IntensityDurationRule:
    if data is None:
        return IntensityDurationRule()
    if not isinstance(data, Mapping):
        raise InvalidPolicyError("carbonIntensityDuration must be an object")
    threshold_raw = data.get("carbonIntensityThreshold", data.get("threshold", 0))
    minutes_raw = data.get("overrideEcoAfterDurationInMins", data.get("durationMinutes", 0))
    return IntensityDurationRule(
        threshold=_require_float(threshold_raw, "duration threshold"),
        duration_minutes=_require_int(minutes_raw, "duration minutes"),
    )


@dataclass(frozen=True)
class OverrideResult:
    """
    Outcome of an override rule that turned eco mode off.

    ``wake_delay`` is None when the rule does not dictate when to re-evaluate.
    """

    reason: str
    wake_delay: Optional[timedelta] = None


@dataclass(frozen=True)
class Decision:
    """
    Replica ceiling for the scaled target, produced fresh per evaluation.

    Attributes:
        overridden: True when eco mode is off and the default ceiling applies
        reason: Why eco mode is off (empty when it is on)
        max_replicas: Ceiling to write into the KEDA target
        next_evaluation_delay: When the scaler must be evaluated again
    """

    overridden: bool
    reason: str
    max_replicas: int
    next_evaluation_delay: timedelta

    def as_dict(self) -> Dict[str, object]:
        """Serialize the decision for the JSON API."""
        return {
            "maxReplicas": self.max_replicas,
            "overridden": self.overridden,
            "reason": self.reason,
            "nextEvaluationDelay": self.next_evaluation_delay.total_seconds(),
        }


@dataclass
class OperatorConfig:
    """
    Runtime configuration for the operator shell.

    Loaded from environment variables with sensible defaults. Individual
    scalers can override the reconcile-related values via the API.

    Attributes:
        metrics_port: Port of the Prometheus metrics endpoint
        api_port: Port of the Flask API
        default_requeue_minutes: Requeue granularity when no forecast covers now
        error_backoff: Seconds to sleep after an unexpected reconcile failure
        forecast_cache_ttl: Seconds a fetched forecast series is reused
        forecast_http_timeout: Timeout for HTTP forecast requests (seconds)
        discovery_interval: Seconds between CarbonAwareKedaScaler listings
        watch_namespace: Namespace to discover scalers in (None = all)
    """

    metrics_port: int = 8001
    api_port: int = 8080
    default_requeue_minutes: int = 5
    error_backoff: float = 5.0
    forecast_cache_ttl: float = 60.0
    forecast_http_timeout: float = 2.0
    discovery_interval: int = 60
    watch_namespace: Optional[str] = None

    @classmethod
    def from_env(cls) -> "OperatorConfig":
        """Load configuration from environment variables."""
        return cls(
            metrics_port=int(os.getenv("METRICS_PORT", "8001")),
            api_port=int(os.getenv("API_PORT", "8080")),
            default_requeue_minutes=int(os.getenv("DEFAULT_REQUEUE_MINUTES", "5")),
            error_backoff=float(os.getenv("ERROR_BACKOFF_SECONDS", "5.0")),
            forecast_cache_ttl=float(os.getenv("FORECAST_CACHE_TTL", "60.0")),
            forecast_http_timeout=float(os.getenv("FORECAST_HTTP_TIMEOUT", "2.0")),
            discovery_interval=int(os.getenv("DISCOVERY_INTERVAL", "60")),
            watch_namespace=os.getenv("WATCH_NAMESPACE") or None,
        )

    def clone(self) -> "OperatorConfig":
        return OperatorConfig(**self.__dict__)

    def apply_overrides(self, overrides: Mapping[str, object]) -> None:
        """
        Apply per-scaler overrides in-place.

        Args:
            overrides: Mapping of API keys (camelCase) to new values
        """
        if not overrides:
            return
        if overrides.get("requeueMinutes") is not None:
            self.default_requeue_minutes = int(overrides["requeueMinutes"])
        if overrides.get("errorBackoff") is not None:
            self.error_backoff = float(overrides["errorBackoff"])
        if overrides.get("forecastCacheTTL") is not None:
            self.forecast_cache_ttl = float(overrides["forecastCacheTTL"])
        if overrides.get("forecastTimeout") is not None:
            self.forecast_http_timeout = float(overrides["forecastTimeout"])

    def as_dict(self) -> Dict[str, object]:
        return {
            "requeueMinutes": self.default_requeue_minutes,
            "errorBackoff": self.error_backoff,
            "forecastCacheTTL": self.forecast_cache_ttl,
            "forecastTimeout": self.forecast_http_timeout,
        }
