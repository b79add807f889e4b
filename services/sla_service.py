# services/sla_service.py
# -*- coding: utf-8 -*-
"""
SLA escalation sweep.

run_sla_sweep(db, now):
  1) select open issues past their SLA deadline that were never escalated
  2) per issue: bump priority one level, set auto_escalated + reason through
     the `auto_escalated = false` gate (a concurrent sweep loses the race
     and simply skips the issue)
  3) audit entry per escalated issue, commit per issue

Triggered from outside (`python main.py sweep`, `POST /sla/sweep`).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from brain.escalation import ESCALATABLE_STATUSES, SweepReport, bump_priority, escalation_reason
from core.clock import utcnow
from core.logging import logger
from db.repository import IssueRepository
from services.audit_service import AuditService

SWEEP_ACTOR = "system:sla_sweep"


def run_sla_sweep(db: Session, now: Optional[datetime] = None) -> SweepReport:
    now = now or utcnow()
    issues = IssueRepository(db)
    audit = AuditService(db)

    overdue = issues.overdue(now, ESCALATABLE_STATUSES)
    report = SweepReport(total_overdue=len(overdue))

    for issue in overdue:
        issue_id = issue.issue_id
        old_priority = issue.priority
        new_priority = bump_priority(old_priority)
        reason = escalation_reason(issue.sla_deadline, now)

        won = issues.mark_escalated(
            issue_id,
            {"priority": new_priority, "escalation_reason": reason, "updated_at": now},
        )
        if not won:
            logger.info(f"[SLA] {issue_id} already escalated by another sweep")
            db.rollback()
            continue

        audit.log(
            issue_id,
            "escalated",
            old_values={"priority": old_priority, "auto_escalated": False},
            new_values={"priority": new_priority, "auto_escalated": True},
            changed_by=SWEEP_ACTOR,
            details=reason,
            now=now,
        )
        db.commit()

        report.escalated += 1
        report.escalated_issue_ids.append(issue_id)
        logger.warning(f"[SLA] escalated {issue_id}: {old_priority} -> {new_priority} ({reason})")

    logger.info(
        f"[SLA] sweep done: {report.escalated}/{report.total_overdue} overdue issue(s) escalated"
    )
    return report
