"""
Eco Mode Evaluation

Eco mode (carbon-aware ceilings) is on by default. It is turned off when:
1. The current time falls inside one of the custom schedule windows
2. A recurring (cron) schedule fires within the next minute
3. Carbon intensity met or exceeded a threshold for every minute of a duration

Rules are checked in that order and the first match wins. Each check returns
an immutable OverrideResult (or None); nothing is mutated in place. Demand
based overrides are handled separately in ``demand.py``.

All times are evaluated in UTC. Naive datetimes are taken to be UTC and aware
ones are converted, so recurring rules always see UTC calendar days.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional, Tuple

from croniter import croniter

from .errors import ScheduleParseError
from .models import (
    EcoPolicy,
    ForecastSample,
    IntensityDurationRule,
    OverrideResult,
    TimeWindowRule,
    find_forecast,
    parse_rfc3339,
    to_utc,
)

_LOGGER = logging.getLogger("carbonscaler.eco_mode")

_TICK = timedelta(microseconds=1)
_RECURRING_HORIZON = timedelta(minutes=1)


def evaluate_eco_mode(
    now: datetime,
    policy: EcoPolicy,
    series: Optional[Iterable[ForecastSample]],
) -> Optional[OverrideResult]:
    """
    Decide whether eco mode is off at ``now``.

    Returns:
        The override of the first matching rule, or None when eco mode stays on

    Raises:
        ScheduleParseError: on the first malformed window or cron expression
            reached during evaluation
    """
    now = to_utc(now)

    result = check_custom_schedule(now, policy.custom_schedule)
    if result is not None:
        return result

    result = check_recurring_schedule(now, policy.recurring_schedule)
    if result is not None:
        return result

    return check_intensity_duration(now, policy.carbon_intensity_duration, series)


def check_custom_schedule(now: datetime, windows: Iterable[TimeWindowRule]) -> Optional[OverrideResult]:
    """Eco mode is off strictly inside any ``(start, end)`` window."""
    for window in windows:
        start = _parse_window_time(window.start)
        end = _parse_window_time(window.end)
        if start < now < end:
            # wake just after the end so the next tick sees the window closed
            return OverrideResult(
                reason=f"custom schedule from {start.isoformat()} to {end.isoformat()}",
                wake_delay=(end + _TICK) - now,
            )
    return None


def check_recurring_schedule(now: datetime, expressions: Iterable[str]) -> Optional[OverrideResult]:
    """
    Eco mode is off when a cron expression fires within the next minute.

    The wake delay points just past the last firing of that expression on the
    current day, so the scaler stays off for the whole run of firings.
    """
    for expression in expressions:
        firings, upcoming = _first_firing(expression, now)
        if upcoming - now > _RECURRING_HORIZON:
            continue

        last = upcoming
        if upcoming.date() == now.date():
            while True:
                candidate = firings.get_next(datetime)
                if candidate.date() != now.date():
                    break
                last = candidate

        return OverrideResult(
            reason=f'recurring schedule "{expression}"',
            wake_delay=(last + timedelta(minutes=1) + _TICK) - now,
        )
    return None


def check_intensity_duration(
    now: datetime,
    rule: IntensityDurationRule,
    series: Optional[Iterable[ForecastSample]],
) -> Optional[OverrideResult]:
    """
    Eco mode is off when every one of the last ``duration_minutes`` minutes is
    covered by a sample whose intensity is at or above the threshold.

    Minutes without coverage are not counted, so any gap keeps eco mode on.
    """
    if rule.duration_minutes <= 0:
        return None

    samples = list(series) if series else []
    meets_threshold = 0
    for minute in range(rule.duration_minutes):
        sample = find_forecast(samples, now - timedelta(minutes=minute))
        if sample is None:
            continue
        if sample.intensity >= rule.threshold:
            meets_threshold += 1

    if meets_threshold != rule.duration_minutes:
        _LOGGER.debug(
            "intensity >= %s for %d of %d minutes, eco mode stays on",
            rule.threshold,
            meets_threshold,
            rule.duration_minutes,
        )
        return None

    return OverrideResult(
        reason=(
            f"carbon intensity >= threshold of {rule.threshold:g} "
            f"for the last {rule.duration_minutes} minutes"
        )
    )


def _parse_window_time(value: str) -> datetime:
    try:
        return parse_rfc3339(value)
    except ValueError as exc:
        raise ScheduleParseError(value, str(exc)) from exc


def _first_firing(expression: str, now: datetime) -> Tuple[croniter, datetime]:
    # firings are minute aligned, so "strictly after now - 1µs" is "at or after now"
    try:
        firings = croniter(expression, now - _TICK)
        return firings, firings.get_next(datetime)
    except ValueError as exc:
        raise ScheduleParseError(expression, str(exc)) from exc
