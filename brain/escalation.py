# brain/escalation.py
# -*- coding: utf-8 -*-
"""
SLA escalation rules (the sweep itself lives in services.sla_service).

- priority goes up one level per escalation: low -> medium -> high -> critical
- an issue is escalated at most once (auto_escalated flag)
- only open issues (submitted / assigned / in_progress) past their deadline
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .lifecycle import OPEN_STATUSES

PRIORITY_LADDER = ("low", "medium", "high", "critical")

ESCALATABLE_STATUSES = OPEN_STATUSES


def bump_priority(priority: Optional[str]) -> str:
    if priority not in PRIORITY_LADDER:
        return "medium"
    idx = PRIORITY_LADDER.index(priority)
    return PRIORITY_LADDER[min(idx + 1, len(PRIORITY_LADDER) - 1)]


def escalation_reason(sla_deadline: datetime, now: datetime) -> str:
    hours = (now - sla_deadline).total_seconds() / 3600
    return f"SLA deadline {sla_deadline.isoformat()} exceeded by {hours:.1f}h"


@dataclass
class SweepReport:
    total_overdue: int = 0
    escalated: int = 0
    escalated_issue_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_overdue": self.total_overdue,
            "escalated": self.escalated,
            "escalated_issue_ids": list(self.escalated_issue_ids),
        }
