# services/issue_service.py
# -*- coding: utf-8 -*-
"""
Issue pipeline orchestration.

Role
----
- IssuePipeline.create_issue(submission)
    text classification -> (images) oracle classification -> fusion
    -> duplicate check -> department routing -> persist -> ETA -> notify
- IssuePipeline.update_status(issue_id, new_status, ...)
    state machine + conditional update + audit (+ notify on resolved)
- IssuePipeline.reassign_issue(issue_id, department_id, ...)
    manual routing, keeps an existing SLA deadline
- IssuePipeline.submit_feedback(issue_id, citizen_email, rating, comment)
- IssuePipeline.get_issue(issue_id)
    snapshot + audit trail
- IssuePipeline.list_issues(page, limit, **filters) / statistics(timeframe)
    dashboard listing and SLA / resolution statistics

Notes
-----
- The pipeline owns the unit of work on its Session (commits itself).
- No DB transaction is left open while the oracle is being called.
- Oracle / duplicate problems only degrade the result; state machine and
  precondition errors are raised to the caller unchanged.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from brain.duplicates import DuplicateCandidate, DuplicateDetector, DuplicateVerdict, no_duplicate
from brain.escalation import bump_priority
from brain.fusion import ClassificationResult, TextPlusImage, classify_issue
from brain.lifecycle import OPEN_STATUSES, history_entry, initial_history, plan_transition
from brain.llm_client import ImagePayload, OracleClient
from brain.routing import RouteDecision, determine_ward, find_assignee, route, routing_log_entry, rule_for
from brain.stats import TIMEFRAMES, department_performance, issue_statistics, timeframe_start
from core.clock import utcnow
from core.config import DUPLICATE_TIME_WINDOW_HOURS
from core.errors import (
    AssignmentFailure,
    ConcurrencyConflict,
    DuplicateCheckFailure,
    FeedbackNotAllowed,
    InvalidTransition,
    IssueNotFound,
    ValidationError,
)
from core.logging import logger, log_event
from db.models.issue import Issue
from db.repository import DirectoryRepository, IssueRepository
from services.audit_service import AuditService, serialize_audit
from services.eta_service import EtaService
from services.image_store import ImageStore
from services.notification_service import NotificationService, Notifier, notify_safely

SYSTEM_ACTOR = "system"

FEEDBACK_STATUSES = ("resolved", "closed")

MAX_PAGE_SIZE = 100


@dataclass
class IssueSubmission:
    description: str
    category: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    ward: Optional[str] = None
    images: List[str] = field(default_factory=list)
    citizen_name: Optional[str] = None
    citizen_email: Optional[str] = None
    citizen_phone: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_issue(issue: Issue) -> Dict[str, Any]:
    """Issue row -> JSON-friendly dict (API responses, CLI output)."""
    return {
        "issue_id": issue.issue_id,
        "description": issue.description,
        "citizen_name": issue.citizen_name,
        "citizen_email": issue.citizen_email,
        "citizen_phone": issue.citizen_phone,
        "original_category": issue.original_category,
        "verified_category": issue.verified_category,
        "confidence_score": issue.confidence_score,
        "severity_level": issue.severity_level,
        "priority": issue.priority,
        "needs_review": issue.needs_review,
        "was_reclassified": issue.was_reclassified,
        "ai_processing_status": issue.ai_processing_status,
        "ai_explanation": issue.ai_explanation,
        "classification_details": issue.classification_details,
        "reclassification_event": issue.reclassification_event,
        "latitude": issue.latitude,
        "longitude": issue.longitude,
        "address": issue.address,
        "ward": issue.ward,
        "images": list(issue.images or []),
        "resolution_images": list(issue.resolution_images or []),
        "resolution_notes": issue.resolution_notes,
        "assigned_department_id": issue.assigned_department_id,
        "assigned_department_code": issue.department.code if issue.department else None,
        "assigned_to_user_id": issue.assigned_to_user_id,
        "assigned_to": issue.assignee.full_name if issue.assignee else None,
        "resolved_by_user_id": issue.resolved_by_user_id,
        "sla_deadline": _iso(issue.sla_deadline),
        "estimated_resolution_time": _iso(issue.estimated_resolution_time),
        "routing_logs": list(issue.routing_logs or []),
        "status": issue.status,
        "status_history": list(issue.status_history or []),
        "is_duplicate": issue.is_duplicate,
        "duplicate_of_issue_id": issue.duplicate_of_issue_id,
        "duplicate_confidence": issue.duplicate_confidence,
        "auto_escalated": issue.auto_escalated,
        "escalation_reason": issue.escalation_reason,
        "submitted_at": _iso(issue.submitted_at),
        "assigned_at": _iso(issue.assigned_at),
        "in_progress_at": _iso(issue.in_progress_at),
        "resolved_at": _iso(issue.resolved_at),
        "closed_at": _iso(issue.closed_at),
        "citizen_feedback_rating": issue.citizen_feedback_rating,
        "citizen_feedback_comment": issue.citizen_feedback_comment,
        "citizen_feedback_at": _iso(issue.citizen_feedback_at),
        "created_at": _iso(issue.created_at),
        "updated_at": _iso(issue.updated_at),
        "version": issue.version,
    }


class IssuePipeline:
    def __init__(
        self,
        db: Session,
        oracle: Optional[OracleClient] = None,
        notifier: Optional[Notifier] = None,
        image_store: Optional[ImageStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.oracle = oracle
        self.clock = clock
        self.issues = IssueRepository(db)
        self.directory = DirectoryRepository(db)
        self.audit = AuditService(db)
        self.eta = EtaService(self.issues)
        self.notifier = notifier if notifier is not None else NotificationService(db)
        self.image_store = image_store or ImageStore()
        self.duplicates = DuplicateDetector(oracle, load_image=self.image_store.load)

    # ------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------

    def _require(self, issue_id: str) -> Issue:
        issue = self.issues.get(issue_id)
        if issue is None:
            raise IssueNotFound(issue_id)
        return issue

    def _validate(self, sub: IssueSubmission) -> None:
        if not sub.description or not sub.description.strip():
            raise ValidationError("description is required")
        if sub.latitude is not None and not -90 <= sub.latitude <= 90:
            raise ValidationError("latitude must be within [-90, 90]")
        if sub.longitude is not None and not -180 <= sub.longitude <= 180:
            raise ValidationError("longitude must be within [-180, 180]")
        for ref in sub.images:
            self.image_store.resolve(ref)

    def _duplicate_candidates(self, category: str, since: datetime) -> List[DuplicateCandidate]:
        try:
            rows = self.issues.duplicate_candidates(category, since)
        except SQLAlchemyError as e:
            raise DuplicateCheckFailure(f"candidate query failed: {e}") from e

        return [
            DuplicateCandidate(
                issue_id=row.issue_id,
                description=row.description,
                latitude=row.latitude,
                longitude=row.longitude,
                image_ref=(row.images or [None])[0],
                created_at=row.created_at,
            )
            for row in rows
        ]

    def _check_duplicates(
        self,
        sub: IssueSubmission,
        category: str,
        images: List[ImagePayload],
        now: datetime,
    ) -> DuplicateVerdict:
        since = now - timedelta(hours=DUPLICATE_TIME_WINDOW_HOURS)
        try:
            candidates = self._duplicate_candidates(category, since)
        except DuplicateCheckFailure as e:
            logger.error(f"[Pipeline] duplicate check skipped: {e}")
            self.db.rollback()
            return no_duplicate(error=str(e))

        # read transaction ends here, the detector may call the oracle
        self.db.commit()
        return self.duplicates.check(sub.description, sub.latitude, sub.longitude, images, candidates)

    # ------------------------------------------------------------
    # 1. Create
    # ------------------------------------------------------------

    def create_issue(self, sub: IssueSubmission, actor: Optional[str] = None) -> Issue:
        self._validate(sub)
        now = self.clock()
        actor = actor or sub.citizen_email or "citizen"

        payloads = self.image_store.load_many(sub.images)
        result: ClassificationResult = classify_issue(
            sub.category, sub.description, sub.address, payloads, self.oracle
        )
        verdict = self._check_duplicates(sub, result.category, payloads, now)

        decision: Optional[RouteDecision] = None
        priority = result.priority
        escalation = None
        try:
            decision = route(
                result.category,
                self.directory,
                now,
                ward=sub.ward,
                latitude=sub.latitude,
                longitude=sub.longitude,
            )
        except AssignmentFailure as e:
            priority = bump_priority(priority)
            escalation = f"Auto-assignment failed: {e}"
            logger.error(f"[Pipeline] {escalation}")

        reclass_event = (
            result.reclassification_event(now) if isinstance(result, TextPlusImage) else None
        )

        fields = {
            "description": sub.description.strip(),
            "citizen_name": sub.citizen_name,
            "citizen_email": sub.citizen_email,
            "citizen_phone": sub.citizen_phone,
            "original_category": result.original_category,
            "verified_category": result.category,
            "confidence_score": result.confidence,
            "severity_level": result.severity_level,
            "priority": priority,
            "needs_review": result.needs_review,
            "was_reclassified": result.was_reclassified,
            "ai_processing_status": result.ai_processing_status,
            "ai_explanation": result.explanation,
            "classification_details": result.details,
            "reclassification_event": reclass_event,
            "latitude": sub.latitude,
            "longitude": sub.longitude,
            "address": sub.address,
            "ward": decision.ward if decision else determine_ward(sub.ward, sub.latitude, sub.longitude),
            "images": list(sub.images),
            "resolution_images": [],
            "routing_logs": [],
            "status": "submitted",
            "status_history": initial_history(now, actor),
            "is_duplicate": verdict.is_duplicate,
            "duplicate_of_issue_id": verdict.duplicate_of_issue_id,
            "duplicate_confidence": verdict.confidence if verdict.is_duplicate else None,
            "auto_escalated": False,
            "escalation_reason": escalation,
            "submitted_at": now,
            "created_at": now,
            "updated_at": now,
            "version": 1,
        }

        try:
            issue = self.issues.insert(fields)
            issue_id = issue.issue_id
            self.audit.log(
                issue_id,
                "created",
                new_values={
                    "category": result.category,
                    "priority": priority,
                    "ai_processing_status": result.ai_processing_status,
                    "is_duplicate": verdict.is_duplicate,
                },
                changed_by=actor,
                now=now,
            )

            if decision is not None:
                self._apply_auto_assignment(issue, decision, now)

            issue = self._require(issue_id)
            eta = self.eta.estimate(result.category, issue.assigned_department_id, now)
            self.issues.update_if_version(issue_id, issue.version, {"estimated_resolution_time": eta})
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        issue = self._require(issue_id)
        log_event(issue_id, {
            "stage": "created",
            "classification": {
                "status": result.ai_processing_status,
                "category": result.category,
                "confidence": result.confidence,
                "was_reclassified": result.was_reclassified,
            },
            "duplicate": {
                "is_duplicate": verdict.is_duplicate,
                "of": verdict.duplicate_of_issue_id,
                "method": verdict.method,
            },
            "department": decision.department_code if decision else None,
        })
        logger.info(
            f"[Pipeline] created {issue_id} ({result.category}, {issue.status}, "
            f"dept={decision.department_code if decision else '-'})"
        )

        notify_safely(self.notifier, "issue_created", issue)
        self.db.commit()
        return issue

    def _apply_auto_assignment(self, issue: Issue, decision: RouteDecision, now: datetime) -> None:
        transition = plan_transition(
            issue,
            "assigned",
            now,
            actor=SYSTEM_ACTOR,
            notes=f"Auto-assigned to {decision.department_code}",
        )
        log = routing_log_entry(
            now,
            "auto",
            decision.department_code,
            decision.assigned_to_user_id,
            decision.ward,
            decision.sla_deadline,
            rule_applied=decision.rule_applied,
            actor=SYSTEM_ACTOR,
            reason=f"category {decision.category}",
        )
        changes = dict(transition.changes)
        changes.update({
            "assigned_department_id": decision.department_id,
            "assigned_to_user_id": decision.assigned_to_user_id,
            "sla_deadline": decision.sla_deadline,
            "routing_logs": list(issue.routing_logs or []) + [log],
        })

        self.issues.update_if_status(issue.issue_id, transition.previous_status, changes)
        self.audit.log_status_change(
            issue.issue_id, "submitted", "assigned", SYSTEM_ACTOR, transition.changes["status_history"][-1]["notes"], now
        )
        self.audit.log_assignment(
            issue.issue_id,
            decision.department_code,
            decision.assigned_to_user_id,
            SYSTEM_ACTOR,
            reason=f"Auto-assigned based on category: {decision.category}",
            now=now,
        )

    # ------------------------------------------------------------
    # 2. Status updates
    # ------------------------------------------------------------

    def update_status(
        self,
        issue_id: str,
        new_status: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
        resolution_images: Optional[List[str]] = None,
        resolved_by_user_id: Optional[int] = None,
    ) -> Issue:
        for ref in resolution_images or []:
            self.image_store.resolve(ref)

        issue = self._require(issue_id)
        now = self.clock()
        transition = plan_transition(issue, new_status, now, actor, notes, resolution_images)

        changes = dict(transition.changes)
        if new_status == "resolved" and resolved_by_user_id is not None:
            changes["resolved_by_user_id"] = resolved_by_user_id

        try:
            self.issues.update_if_status(issue_id, transition.previous_status, changes)
        except ConcurrencyConflict:
            self.db.rollback()
            raise

        self.audit.log_status_change(issue_id, transition.previous_status, new_status, actor, notes, now)
        self.db.commit()

        logger.info(f"[Pipeline] {issue_id}: {transition.previous_status} -> {new_status} by {actor}")
        log_event(issue_id, {"stage": "status", "from": transition.previous_status, "to": new_status})

        issue = self._require(issue_id)
        if new_status == "resolved":
            notify_safely(self.notifier, "issue_resolved", issue)
            self.db.commit()
        return issue

    # ------------------------------------------------------------
    # 3. Manual (re)assignment
    # ------------------------------------------------------------

    def reassign_issue(
        self,
        issue_id: str,
        department_id: int,
        user_id: Optional[int] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Issue:
        issue = self._require(issue_id)
        if issue.status not in OPEN_STATUSES:
            raise InvalidTransition(issue.status, "assigned")

        department = self.directory.department_by_id(department_id)
        if department is None or not department.is_active:
            raise AssignmentFailure(f"Department {department_id} not found or inactive")

        ward = issue.ward or determine_ward(None, issue.latitude, issue.longitude)
        if user_id is not None:
            user = self.directory.staff_by_id(user_id)
            if (
                user is None
                or user.department_id != department.id
                or not user.is_active
                or user.is_suspended
            ):
                raise ValidationError(f"User {user_id} is not an available member of {department.code}")
        else:
            user_id = find_assignee(self.directory, department.id, ward)

        now = self.clock()
        old_department = issue.department.code if issue.department else None

        # deadline is fixed at first assignment
        sla_deadline = issue.sla_deadline
        if sla_deadline is None:
            hours = max(rule_for(issue.verified_category).sla_hours, department.sla_hours or 0)
            sla_deadline = now + timedelta(hours=hours)

        extra = {
            "action": "reassigned",
            "old_department": old_department,
            "new_department": department.code,
        }
        if issue.status == "submitted":
            transition = plan_transition(issue, "assigned", now, actor, reason)
            changes = dict(transition.changes)
            changes["status_history"][-1].update(extra)
        else:
            changes = {
                "status_history": list(issue.status_history or [])
                + [history_entry(now, issue.status, issue.status, actor, reason, **extra)],
                "updated_at": now,
            }

        log = routing_log_entry(
            now, "manual", department.code, user_id, ward, sla_deadline, actor=actor, reason=reason
        )
        changes.update({
            "assigned_department_id": department.id,
            "assigned_to_user_id": user_id,
            "sla_deadline": sla_deadline,
            "routing_logs": list(issue.routing_logs or []) + [log],
        })

        expected_status = issue.status
        try:
            self.issues.update_if_status(issue_id, expected_status, changes)
        except ConcurrencyConflict:
            self.db.rollback()
            raise

        self.audit.log_assignment(
            issue_id, department.code, user_id, actor, reason=reason,
            old_department_code=old_department or "-", now=now,
        )
        self.db.commit()
        logger.info(f"[Pipeline] {issue_id} reassigned {old_department} -> {department.code} by {actor}")
        return self._require(issue_id)

    # ------------------------------------------------------------
    # 4. Feedback / retrieval
    # ------------------------------------------------------------

    def submit_feedback(
        self,
        issue_id: str,
        citizen_email: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> Issue:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer between 1 and 5")

        issue = self._require(issue_id)
        if not issue.citizen_email or issue.citizen_email.lower() != (citizen_email or "").lower():
            raise FeedbackNotAllowed("Only the reporting citizen can rate this issue")
        if issue.status not in FEEDBACK_STATUSES:
            raise FeedbackNotAllowed(f"Feedback is only possible once resolved (status: {issue.status})")
        if issue.citizen_feedback_rating is not None:
            raise FeedbackNotAllowed("Feedback was already submitted for this issue")

        now = self.clock()
        try:
            self.issues.update_if_version(issue_id, issue.version, {
                "citizen_feedback_rating": rating,
                "citizen_feedback_comment": comment,
                "citizen_feedback_at": now,
                "updated_at": now,
            })
        except ConcurrencyConflict:
            self.db.rollback()
            raise

        self.audit.log(
            issue_id,
            "feedback_submitted",
            new_values={"rating": rating, "comment": comment},
            changed_by=citizen_email,
            now=now,
        )
        self.db.commit()
        return self._require(issue_id)

    def get_issue(self, issue_id: str) -> Dict[str, Any]:
        issue = self._require(issue_id)
        data = serialize_issue(issue)
        data["audit_log"] = [serialize_audit(e) for e in self.audit.entries_for(issue_id)]
        return data

    # ------------------------------------------------------------
    # 5. Listing / dashboard
    # ------------------------------------------------------------

    def list_issues(self, page: int = 1, limit: int = 20, **filters: Any) -> Dict[str, Any]:
        """
        Filtered, paginated issue list (newest first).
        filters: see IssueRepository.search
        """
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit within [1, {MAX_PAGE_SIZE}]")

        rows, total = self.issues.search(limit=limit, offset=(page - 1) * limit, **filters)
        return {
            "issues": [serialize_issue(row) for row in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        }

    def statistics(self, timeframe: Optional[str] = None) -> Dict[str, Any]:
        if timeframe and timeframe not in TIMEFRAMES:
            raise ValidationError(f"timeframe must be one of {', '.join(TIMEFRAMES)}")

        now = self.clock()
        since = timeframe_start(timeframe, now)
        data = issue_statistics(self.issues.created_since(since), now)
        data["timeframe"] = timeframe or "all_time"
        data["departments"] = [
            {
                "department_id": dept.id,
                "code": dept.code,
                "name": dept.name,
                "performance": department_performance(self.issues.created_since(since, dept.id), now),
            }
            for dept in self.directory.list_departments()
        ]
        return data
