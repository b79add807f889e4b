from datetime import timedelta

import pytest

from brain.escalation import bump_priority, escalation_reason
from db.models.audit_log import AuditLog
from db.repository import IssueRepository
from services.issue_service import IssueSubmission
from services.sla_service import SWEEP_ACTOR, run_sla_sweep

from conftest import T0


@pytest.mark.parametrize(
    "before, after",
    [("low", "medium"), ("medium", "high"), ("high", "critical"), ("critical", "critical"), (None, "medium"), ("weird", "medium")],
)
def test_bump_priority(before, after):
    assert bump_priority(before) == after


def test_escalation_reason_mentions_overrun():
    assert escalation_reason(T0, T0 + timedelta(hours=6, minutes=30)) == (
        f"SLA deadline {T0.isoformat()} exceeded by 6.5h"
    )


def _create(pipeline, **kw):
    data = dict(description="trash everywhere", category="garbage", latitude=40.75, longitude=-74.01)
    data.update(kw)
    return pipeline.create_issue(IssueSubmission(**data))


def test_sweep_escalates_overdue_issue_once(pipeline, db):
    issue = _create(pipeline)
    assert issue.priority == "medium"
    deadline = issue.sla_deadline
    assert deadline == T0 + timedelta(hours=24)

    report = run_sla_sweep(db, now=deadline + timedelta(hours=1))
    assert report.as_dict() == {"total_overdue": 1, "escalated": 1, "escalated_issue_ids": [issue.issue_id]}

    issue = pipeline.issues.get(issue.issue_id)
    assert issue.priority == "high"
    assert issue.auto_escalated is True
    assert issue.escalation_reason.endswith("exceeded by 1.0h")

    audit = db.query(AuditLog).filter_by(entity_id=issue.issue_id, action="escalated").one()
    assert audit.changed_by == SWEEP_ACTOR

    again = run_sla_sweep(db, now=deadline + timedelta(hours=5))
    assert again.escalated == 0
    assert pipeline.issues.get(issue.issue_id).priority == "high"


def test_sweep_ignores_on_time_and_finished_issues(pipeline, db):
    on_time = _create(pipeline)
    done = _create(pipeline, latitude=40.80)
    pipeline.update_status(done.issue_id, "resolved", resolution_images=["proof.jpg"])

    report = run_sla_sweep(db, now=T0 + timedelta(hours=23))
    assert report.escalated == 0

    report = run_sla_sweep(db, now=T0 + timedelta(hours=48))
    assert report.escalated_issue_ids == [on_time.issue_id]


def test_concurrent_sweep_loses_the_race(pipeline, db, monkeypatch):
    issue = _create(pipeline)
    now = issue.sla_deadline + timedelta(hours=2)
    inner_reports = []
    original = IssueRepository.mark_escalated

    def racing_mark_escalated(self, issue_id, changes):
        if not inner_reports:
            # another sweep escalates the issue first
            inner_reports.append(None)
            inner_reports[0] = run_sla_sweep(db, now=now)
        return original(self, issue_id, changes)

    monkeypatch.setattr(IssueRepository, "mark_escalated", racing_mark_escalated)

    report = run_sla_sweep(db, now=now)

    assert report.total_overdue == 1
    assert report.escalated == 0
    assert inner_reports[0].escalated_issue_ids == [issue.issue_id]
    assert pipeline.issues.get(issue.issue_id).priority == "high"
    assert db.query(AuditLog).filter_by(entity_id=issue.issue_id, action="escalated").count() == 1
