# brain/stats.py
# -*- coding: utf-8 -*-
"""
Dashboard statistics over issue rows.

Role
----
- issue_statistics(issues, now): counts per status / category / priority /
  severity, resolution times, citizen satisfaction, SLA performance
- department_performance(issues, now): per-department summary
  (resolution rate, average hours, open SLA breaches, compliance)

Rows only need the Issue attributes; the queries live in db.repository.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

FINISHED_STATUSES = ("resolved", "closed")

TIMEFRAMES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}


def timeframe_start(timeframe: Optional[str], now: datetime) -> Optional[datetime]:
    """Start of a dashboard timeframe; None means all time."""
    span = TIMEFRAMES.get(timeframe or "")
    return now - span if span else None


def _hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def group_counts(issues: Iterable[Any], attr: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for issue in issues:
        key = getattr(issue, attr, None)
        key = "unknown" if key is None else str(key)
        counts[key] = counts.get(key, 0) + 1
    return counts


def resolution_times(issues: Sequence[Any]) -> Dict[str, Any]:
    hours = sorted(
        _hours(i.submitted_at, i.resolved_at)
        for i in issues
        if i.submitted_at and i.resolved_at
    )
    if not hours:
        return {"average_hours": 0, "median_hours": 0, "count": 0}

    return {
        "average_hours": round(sum(hours) / len(hours), 2),
        "median_hours": round(hours[len(hours) // 2], 2),
        "count": len(hours),
    }


def citizen_satisfaction(issues: Sequence[Any]) -> Dict[str, Any]:
    rated = [i for i in issues if i.citizen_feedback_rating]
    if not rated:
        return {"average_rating": 0, "total_ratings": 0, "distribution": {}}

    ratings = [i.citizen_feedback_rating for i in rated]
    return {
        "average_rating": round(sum(ratings) / len(ratings), 2),
        "total_ratings": len(rated),
        "distribution": group_counts(rated, "citizen_feedback_rating"),
    }


def sla_performance(issues: Sequence[Any], now: datetime) -> Dict[str, Any]:
    """
    on time = resolved (or, if still open, `now`) no later than the deadline.
    Issues without a deadline are left out.
    """
    with_sla = [i for i in issues if i.sla_deadline]
    if not with_sla:
        return {"on_time": 0, "overdue": 0, "performance_rate": 0}

    on_time = sum(1 for i in with_sla if (i.resolved_at or now) <= i.sla_deadline)
    return {
        "on_time": on_time,
        "overdue": len(with_sla) - on_time,
        "performance_rate": round(on_time * 100 / len(with_sla)),
    }


def issue_statistics(issues: Sequence[Any], now: datetime) -> Dict[str, Any]:
    return {
        "total_issues": len(issues),
        "by_status": group_counts(issues, "status"),
        "by_category": group_counts(issues, "verified_category"),
        "by_priority": group_counts(issues, "priority"),
        "by_severity": group_counts(issues, "severity_level"),
        "duplicates": sum(1 for i in issues if i.is_duplicate),
        "auto_escalated": sum(1 for i in issues if i.auto_escalated),
        "resolution_times": resolution_times(issues),
        "citizen_satisfaction": citizen_satisfaction(issues),
        "sla_performance": sla_performance(issues, now),
    }


def department_performance(issues: Sequence[Any], now: datetime) -> Dict[str, Any]:
    total = len(issues)
    finished: List[Any] = [i for i in issues if i.status in FINISHED_STATUSES]
    breaches = [
        i for i in issues
        if i.sla_deadline and i.sla_deadline < now and i.status not in FINISHED_STATUSES
    ]

    avg = 0
    if finished:
        spent = sum(_hours(i.created_at, i.resolved_at) for i in finished if i.created_at and i.resolved_at)
        avg = round(spent / len(finished))

    return {
        "total_issues": total,
        "resolved_count": len(finished),
        "resolution_rate": round(len(finished) * 100 / total) if total else 0,
        "avg_resolution_hours": avg,
        "sla_breaches": len(breaches),
        "sla_compliance": round((total - len(breaches)) * 100 / total) if total else 100,
    }
