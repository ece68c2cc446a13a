"""Error types raised by the carbon-aware scaler.

The decision engine never fails open on its own; it raises one of these and
the reconciler decides how to degrade.
"""

from __future__ import annotations


class CarbonScalerError(RuntimeError):
    """Base class for every error the scaler reports."""


class NoForecastError(CarbonScalerError):
    """No forecast sample covers the evaluated instant."""

    def __init__(self, message: str = "no forecast data") -> None:
        super().__init__(message)


class ScheduleParseError(CarbonScalerError):
    """A custom window timestamp or a recurring cron expression is malformed."""

    def __init__(self, value: str, detail: str) -> None:
        super().__init__(f"unable to parse schedule {value!r}: {detail}")
        self.value = value


class InvalidPolicyError(CarbonScalerError):
    """The eco policy is structurally unusable (e.g. no intensity bands)."""


class ForecastFetchError(CarbonScalerError):
    """The forecast source could not be read or decoded."""


class TargetError(CarbonScalerError):
    """Reading or updating the KEDA target (or its HPA) failed."""

    def __init__(self, message: str, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found
