# brain/eta.py
# -*- coding: utf-8 -*-
"""
Resolution time estimate.

    base  = category SLA hours (routing table)
    load  = ETA_LOAD_HOURS_PER_OPEN_ISSUE x open issues in the department
    hist  = mean hours (resolved_at - submitted_at) over recent resolutions

    eta   = 0.6 * hist + 0.4 * (base + load)   if hist > 0
          = base + load                         otherwise

clamped to [1, 2 * base] hours.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional, Tuple

from core.config import ETA_HISTORY_WEIGHT, ETA_LOAD_HOURS_PER_OPEN_ISSUE
from .routing import rule_for

MIN_ETA_HOURS = 1.0


def mean_resolution_hours(
    history: Iterable[Tuple[Optional[datetime], Optional[datetime]]],
) -> Optional[float]:
    """Mean of (resolved_at - submitted_at) in hours, None without data."""
    durations = [
        (resolved - submitted).total_seconds() / 3600
        for submitted, resolved in history
        if submitted is not None and resolved is not None and resolved >= submitted
    ]
    if not durations:
        return None
    return sum(durations) / len(durations)


def estimate_hours(
    base_hours: float,
    open_issue_count: int,
    historical_hours: Optional[float] = None,
) -> float:
    load = ETA_LOAD_HOURS_PER_OPEN_ISSUE * max(0, open_issue_count)
    current = base_hours + load

    if historical_hours is not None and historical_hours > 0:
        hours = ETA_HISTORY_WEIGHT * historical_hours + (1 - ETA_HISTORY_WEIGHT) * current
    else:
        hours = current

    upper = max(MIN_ETA_HOURS, 2 * base_hours)
    return max(MIN_ETA_HOURS, min(upper, hours))


def estimate_resolution_time(
    category: Optional[str],
    open_issue_count: int,
    historical_hours: Optional[float],
    now: datetime,
) -> datetime:
    base = rule_for(category).sla_hours
    return now + timedelta(hours=estimate_hours(base, open_issue_count, historical_hours))
