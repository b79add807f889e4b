import json
from datetime import timedelta
from types import SimpleNamespace

import httpx
import openai
import pytest
from sqlalchemy.exc import OperationalError

from brain.llm_client import OpenAIVisionOracle, OracleClient, RetryPolicy, SlidingWindowRateLimiter
from core.config import LOG_DIR
from core.errors import (
    ConcurrencyConflict,
    FeedbackNotAllowed,
    InvalidTransition,
    IssueNotFound,
    MissingResolutionProof,
    ValidationError,
)
from db.models.department import Department
from db.models.issue import Issue
from db.models.notification import Notification
from db.repository import IssueRepository
from services.audit_service import AuditService
from services.issue_service import IssuePipeline, IssueSubmission
from services.notification_service import NotificationService

from conftest import T0, FakeClock, FakeOracle, RecordingNotifier, make_oracle_client, staff_id

POTHOLE_AT_SCHOOL = '{"category": "pothole", "confidence": 0.92, "explanation": "Large hole in asphalt"}'


def submission(**overrides):
    data = dict(
        description="bags of trash piled up on the corner",
        category="garbage",
        latitude=40.75,
        longitude=-74.01,
        citizen_name="Ada",
        citizen_email="ada@example.com",
    )
    data.update(overrides)
    return IssueSubmission(**data)


def dept_id(db, code):
    return db.query(Department).filter_by(code=code).one().id


# ------------------------------------------------------------
# creation
# ------------------------------------------------------------

def test_create_assigns_and_records_history(pipeline, db, wall_clock, notifier):
    issue = pipeline.create_issue(submission())

    assert issue.issue_id == "ISSUE-001"
    assert issue.status == "assigned"
    assert issue.verified_category == "garbage"
    assert issue.ai_processing_status == "text_only"
    assert issue.department.code == "SANITATION"
    assert issue.sla_deadline == wall_clock.now + timedelta(hours=24)
    assert issue.assigned_at == wall_clock.now
    assert issue.estimated_resolution_time is not None
    assert [h["new_status"] for h in issue.status_history] == ["submitted", "assigned"]
    assert issue.routing_logs[0]["assignment_method"] == "auto"
    assert notifier.created == ["ISSUE-001"]


def test_issue_ids_are_sequential(pipeline):
    ids = [pipeline.create_issue(submission(latitude=40.70 + i / 100)).issue_id for i in range(3)]
    assert ids == ["ISSUE-001", "ISSUE-002", "ISSUE-003"]


def test_issue_id_conflict_is_retried(pipeline, db):
    first = pipeline.create_issue(submission())
    # a row that already holds the next id
    clash = {c.name: getattr(first, c.name) for c in Issue.__table__.columns if c.name not in ("id", "issue_id")}
    db.add(Issue(issue_id="ISSUE-002", **clash))
    db.commit()

    second = pipeline.create_issue(submission(latitude=40.80))
    assert second.issue_id == "ISSUE-003"


def test_image_reclassification_routes_to_roads(db, image_store, notifier, wall_clock):
    client, oracle, _ = make_oracle_client([POTHOLE_AT_SCHOOL])
    pipeline = IssuePipeline(db, oracle=client, notifier=notifier, image_store=image_store, clock=wall_clock)

    issue = pipeline.create_issue(submission(images=["pothole.jpg"]))

    assert issue.original_category == "garbage"
    assert issue.verified_category == "pothole"
    assert issue.was_reclassified is True
    assert issue.reclassification_event["to"] == "pothole"
    assert issue.ai_processing_status == "completed"
    assert issue.department.code == "ROADS"
    assert issue.sla_deadline == wall_clock.now + timedelta(hours=48)
    assert issue.assigned_to_user_id == staff_id(db, "roads_central")
    assert len(oracle.calls) == 1


def test_oracle_failure_still_creates_issue(db, image_store, notifier, wall_clock):
    client, oracle, clock = make_oracle_client(["not json at all"])
    pipeline = IssuePipeline(db, oracle=client, notifier=notifier, image_store=image_store, clock=wall_clock)

    issue = pipeline.create_issue(submission(images=["garbage.jpg"]))

    assert issue.ai_processing_status == "partial_failure"
    assert issue.needs_review is True
    assert issue.verified_category == "garbage"
    assert issue.status == "assigned"


def test_second_nearby_report_is_flagged_duplicate(pipeline, wall_clock):
    first = pipeline.create_issue(submission(
        description="overflowing garbage bins near park entrance smell awful",
    ))
    wall_clock.advance(minutes=5)
    second = pipeline.create_issue(submission(
        description="overflowing garbage bins near park entrance attracting rats",
        latitude=40.75027,
    ))

    assert first.is_duplicate is False
    assert second.is_duplicate is True
    assert second.duplicate_of_issue_id == first.issue_id
    assert second.duplicate_confidence == pytest.approx(0.6)


def test_missing_department_creates_unassigned_escalated_issue(pipeline, db):
    db.query(Department).filter_by(code="SANITATION").update({"is_active": False})
    db.commit()

    issue = pipeline.create_issue(submission())

    assert issue.status == "submitted"
    assert issue.assigned_department_id is None
    assert issue.priority == "high"   # medium bumped one level
    assert issue.escalation_reason.startswith("Auto-assignment failed")
    assert len(issue.status_history) == 1


def test_notifier_failure_does_not_abort_creation(db, image_store, wall_clock):
    pipeline = IssuePipeline(db, notifier=RecordingNotifier(fail=True), image_store=image_store, clock=wall_clock)
    issue = pipeline.create_issue(submission())
    assert issue.issue_id == "ISSUE-001"


def test_default_notifier_writes_outbox_row(db, image_store, wall_clock):
    pipeline = IssuePipeline(db, notifier=NotificationService(db), image_store=image_store, clock=wall_clock)
    issue = pipeline.create_issue(submission())

    row = db.query(Notification).filter_by(issue_id=issue.issue_id).one()
    assert row.type == "issue_created"
    assert row.recipient_email == "ada@example.com"
    assert row.is_sent is False


@pytest.mark.parametrize(
    "overrides",
    [
        {"description": "   "},
        {"latitude": 123.0},
        {"images": ["../../etc/passwd"]},
    ],
)
def test_invalid_submission_rejected(pipeline, overrides):
    with pytest.raises(ValidationError):
        pipeline.create_issue(submission(**overrides))


# ------------------------------------------------------------
# status updates
# ------------------------------------------------------------

def test_full_lifecycle_with_proof(pipeline, wall_clock, notifier):
    issue = pipeline.create_issue(submission())

    wall_clock.advance(hours=1)
    issue = pipeline.update_status(issue.issue_id, "in_progress", actor="crew-7")
    assert issue.in_progress_at == wall_clock.now

    with pytest.raises(MissingResolutionProof):
        pipeline.update_status(issue.issue_id, "resolved", actor="crew-7")

    wall_clock.advance(hours=2)
    issue = pipeline.update_status(
        issue.issue_id, "resolved", actor="crew-7", notes="cleared", resolution_images=["proof.jpg"]
    )
    assert issue.status == "resolved"
    assert issue.resolved_at == wall_clock.now
    assert issue.resolution_images == ["proof.jpg"]
    assert notifier.resolved == [issue.issue_id]

    issue = pipeline.update_status(issue.issue_id, "closed", actor="ops")
    assert issue.closed_at is not None
    assert [h["new_status"] for h in issue.status_history] == [
        "submitted", "assigned", "in_progress", "resolved", "closed",
    ]


def test_invalid_transition_leaves_issue_unchanged(pipeline):
    issue = pipeline.create_issue(submission())
    version = issue.version

    with pytest.raises(InvalidTransition):
        pipeline.update_status(issue.issue_id, "closed")

    again = pipeline.get_issue(issue.issue_id)
    assert again["status"] == "assigned"
    assert again["version"] == version


def test_stale_status_update_is_a_conflict(pipeline, db):
    issue = pipeline.create_issue(submission())
    repo = IssueRepository(db)

    repo.update_if_status(issue.issue_id, "assigned", {"status": "in_progress"})
    db.commit()

    with pytest.raises(ConcurrencyConflict):
        repo.update_if_status(issue.issue_id, "assigned", {"status": "rejected"})


def test_unknown_issue(pipeline):
    with pytest.raises(IssueNotFound):
        pipeline.update_status("ISSUE-999", "in_progress")


# ------------------------------------------------------------
# reassignment
# ------------------------------------------------------------

def test_reassign_keeps_deadline_and_logs(pipeline, db, wall_clock):
    issue = pipeline.create_issue(submission())
    deadline = issue.sla_deadline

    wall_clock.advance(hours=3)
    issue = pipeline.reassign_issue(
        issue.issue_id, dept_id(db, "ROADS"), actor="dispatcher", reason="actually road debris"
    )

    assert issue.department.code == "ROADS"
    assert issue.sla_deadline == deadline
    assert issue.assigned_to_user_id == staff_id(db, "roads_central")
    assert issue.routing_logs[-1]["assignment_method"] == "manual"
    last = issue.status_history[-1]
    assert last["action"] == "reassigned"
    assert last["old_department"] == "SANITATION"
    assert last["new_department"] == "ROADS"
    assert last["actor"] == "dispatcher"


def test_reassign_unassigned_issue_sets_deadline(pipeline, db, wall_clock):
    db.query(Department).filter_by(code="SANITATION").update({"is_active": False})
    db.commit()
    issue = pipeline.create_issue(submission())
    assert issue.sla_deadline is None

    issue = pipeline.reassign_issue(issue.issue_id, dept_id(db, "ROADS"), actor="dispatcher")
    assert issue.status == "assigned"
    assert issue.sla_deadline == wall_clock.now + timedelta(hours=48)


def test_reassign_closed_issue_rejected(pipeline, db):
    issue = pipeline.create_issue(submission())
    pipeline.update_status(issue.issue_id, "rejected", actor="ops")
    with pytest.raises(InvalidTransition):
        pipeline.reassign_issue(issue.issue_id, dept_id(db, "ROADS"))


def test_reassign_to_user_of_other_department_rejected(pipeline, db):
    issue = pipeline.create_issue(submission())
    with pytest.raises(ValidationError):
        pipeline.reassign_issue(issue.issue_id, dept_id(db, "ROADS"), user_id=staff_id(db, "sanitation_north"))


# ------------------------------------------------------------
# feedback / retrieval
# ------------------------------------------------------------

def _resolved(pipeline):
    issue = pipeline.create_issue(submission())
    return pipeline.update_status(issue.issue_id, "resolved", resolution_images=["proof.jpg"])


def test_feedback_by_reporter(pipeline):
    issue = _resolved(pipeline)
    issue = pipeline.submit_feedback(issue.issue_id, "ADA@example.com", 5, "quick!")

    assert issue.citizen_feedback_rating == 5
    actions = [e["action"] for e in pipeline.get_issue(issue.issue_id)["audit_log"]]
    assert "feedback_submitted" in actions


def test_feedback_rules(pipeline):
    open_issue = pipeline.create_issue(submission(latitude=40.80))
    with pytest.raises(FeedbackNotAllowed):
        pipeline.submit_feedback(open_issue.issue_id, "ada@example.com", 4)

    issue = _resolved(pipeline)
    with pytest.raises(FeedbackNotAllowed):
        pipeline.submit_feedback(issue.issue_id, "mallory@example.com", 1)
    with pytest.raises(ValidationError):
        pipeline.submit_feedback(issue.issue_id, "ada@example.com", 6)

    pipeline.submit_feedback(issue.issue_id, "ada@example.com", 3)
    with pytest.raises(FeedbackNotAllowed):
        pipeline.submit_feedback(issue.issue_id, "ada@example.com", 4)


def test_get_issue_includes_audit_trail(pipeline):
    issue = pipeline.create_issue(submission())
    data = pipeline.get_issue(issue.issue_id)

    assert data["issue_id"] == "ISSUE-001"
    assert data["assigned_department_code"] == "SANITATION"
    actions = [e["action"] for e in data["audit_log"]]
    assert actions[:3] == ["created", "status_changed", "assigned"]


def test_retry_policy_is_configurable():
    assert RetryPolicy(max_retries=0).max_attempts == 1


# ------------------------------------------------------------
# degraded paths
# ------------------------------------------------------------

def _failing_openai_client(exc):
    def create(**kwargs):
        raise exc

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


@pytest.mark.parametrize(
    "make_transport",
    [
        lambda: FakeOracle([RuntimeError("transport exploded")]),
        lambda: OpenAIVisionOracle(client=_failing_openai_client(
            openai.APIResponseValidationError(
                response=httpx.Response(200, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")),
                body=None,
            )
        )),
    ],
    ids=["untyped-transport-error", "unmapped-sdk-error"],
)
def test_unexpected_oracle_error_still_creates_issue(db, image_store, notifier, wall_clock, make_transport):
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_calls=10, period=60.0, clock=clock, sleep=clock.sleep)
    client = OracleClient(make_transport(), rate_limiter=limiter, retry_policy=RetryPolicy(), sleep=clock.sleep)
    pipeline = IssuePipeline(db, oracle=client, notifier=notifier, image_store=image_store, clock=wall_clock)

    issue = pipeline.create_issue(submission(images=["garbage.jpg"]))

    assert issue.ai_processing_status == "partial_failure"
    assert issue.needs_review is True
    assert issue.verified_category == "garbage"
    assert issue.status == "assigned"
    assert notifier.created == [issue.issue_id]


def test_candidate_query_failure_means_no_duplicate(pipeline, monkeypatch):
    pipeline.create_issue(submission())

    def broken(category, since):
        raise OperationalError("SELECT issues", {}, Exception("database is locked"))

    monkeypatch.setattr(pipeline.issues, "duplicate_candidates", broken)
    second = pipeline.create_issue(submission())

    assert second.issue_id == "ISSUE-002"
    assert second.is_duplicate is False


def test_audit_trail_written_only_after_commit(db):
    audit = AuditService(db)

    audit.log("TRAIL-ROLLBACK", "created", changed_by="ops")
    assert not (LOG_DIR / "TRAIL-ROLLBACK.jsonl").exists()
    db.rollback()
    assert not (LOG_DIR / "TRAIL-ROLLBACK.jsonl").exists()

    audit.log("TRAIL-COMMIT", "created", changed_by="ops")
    assert not (LOG_DIR / "TRAIL-COMMIT.jsonl").exists()
    db.commit()
    record = json.loads((LOG_DIR / "TRAIL-COMMIT.jsonl").read_text(encoding="utf-8").splitlines()[-1])
    assert record["audit"] == "created"
    assert record["by"] == "ops"


# ------------------------------------------------------------
# listing / statistics
# ------------------------------------------------------------

def _two_issues(pipeline, wall_clock):
    garbage = pipeline.create_issue(submission())
    wall_clock.advance(minutes=1)
    pothole = pipeline.create_issue(submission(
        description="pothole on the main street", category="pothole", latitude=40.80,
    ))
    return garbage, pothole


def test_list_issues_filters_and_pages(pipeline, db, wall_clock):
    garbage, pothole = _two_issues(pipeline, wall_clock)
    pipeline.update_status(garbage.issue_id, "resolved", resolution_images=["proof.jpg"])

    def ids(**filters):
        return [i["issue_id"] for i in pipeline.list_issues(**filters)["issues"]]

    assert ids() == [pothole.issue_id, garbage.issue_id]
    assert ids(status="assigned") == [pothole.issue_id]
    assert ids(category="garbage") == [garbage.issue_id]
    assert ids(department_id=dept_id(db, "ROADS")) == [pothole.issue_id]
    assert ids(citizen_email="ADA@example.com", is_duplicate=False) == [pothole.issue_id, garbage.issue_id]
    assert ids(auto_escalated=True) == []

    page = pipeline.list_issues(page=2, limit=1)
    assert page["total"] == 2
    assert page["pages"] == 2
    assert [i["issue_id"] for i in page["issues"]] == [garbage.issue_id]

    with pytest.raises(ValidationError):
        pipeline.list_issues(page=0)


def test_statistics_sla_and_resolution(pipeline, wall_clock):
    garbage, pothole = _two_issues(pipeline, wall_clock)
    wall_clock.now = T0 + timedelta(hours=10)
    pipeline.update_status(garbage.issue_id, "resolved", resolution_images=["proof.jpg"])
    pipeline.submit_feedback(garbage.issue_id, "ada@example.com", 4)

    # ROADS deadline (48h) has passed, pothole still open
    wall_clock.now = T0 + timedelta(hours=50)
    stats = pipeline.statistics()

    assert stats["timeframe"] == "all_time"
    assert stats["total_issues"] == 2
    assert stats["by_status"] == {"resolved": 1, "assigned": 1}
    assert stats["by_category"] == {"garbage": 1, "pothole": 1}
    assert stats["resolution_times"] == {"average_hours": 10.0, "median_hours": 10.0, "count": 1}
    assert stats["citizen_satisfaction"]["average_rating"] == 4.0
    assert stats["sla_performance"] == {"on_time": 1, "overdue": 1, "performance_rate": 50}

    perf = {d["code"]: d["performance"] for d in stats["departments"]}
    assert perf["SANITATION"]["resolution_rate"] == 100
    assert perf["SANITATION"]["avg_resolution_hours"] == 10
    assert perf["ROADS"]["sla_breaches"] == 1
    assert perf["ROADS"]["sla_compliance"] == 0
    assert perf["PARKS"]["total_issues"] == 0

    assert pipeline.statistics("24h")["total_issues"] == 0
    with pytest.raises(ValidationError):
        pipeline.statistics("1y")
