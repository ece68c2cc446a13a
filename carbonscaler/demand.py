"""Keep carbon ceilings from starving real demand."""

from __future__ import annotations

from typing import Optional

from .models import OverrideResult


def guard_demand(computed_max: int, observed_desired: int) -> Optional[OverrideResult]:
    """
    Turn eco mode off when the carbon ceiling is below what the HPA desires.

    Only meaningful for targets exposing a desired replica count (ScaledObjects
    backed by an HPA); callers skip it otherwise.
    """
    if computed_max < observed_desired:
        return OverrideResult(
            reason=(
                f"maxReplicaCount of {computed_max} is less than "
                f"desired replicas {observed_desired}"
            )
        )
    return None
