"""Map a forecast sample onto the replica ceiling of its intensity band."""

from __future__ import annotations

from typing import Iterable, Optional

from .errors import InvalidPolicyError, NoForecastError
from .models import ForecastSample, IntensityBand


def resolve_max_replicas(sample: Optional[ForecastSample], bands: Iterable[IntensityBand]) -> int:
    """
    Return the max replica count for the band containing ``sample.intensity``.

    Bands are evaluated in ascending threshold order; band ``i`` covers
    ``(threshold[i-1], threshold[i]]`` with 0 as the first lower bound.
    Intensities above every threshold fall back to the last band.

    Raises:
        NoForecastError: when there is no sample to evaluate
        InvalidPolicyError: when no bands are configured
    """
    if sample is None:
        raise NoForecastError()

    # sorted() copies; callers may share the policy across threads
    ordered = sorted(bands, key=lambda band: band.upper_threshold)
    if not ordered:
        raise InvalidPolicyError("at least one carbon intensity band is required")

    intensity = sample.intensity
    lower_bound = 0.0
    for band in ordered:
        if lower_bound < intensity <= band.upper_threshold:
            return band.max_replicas
        lower_bound = band.upper_threshold

    return ordered[-1].max_replicas
