# db/repository.py
# -*- coding: utf-8 -*-
"""
Storage access for the pipeline.

- IssueRepository     : issue rows (id generation, conditional updates,
                        duplicate candidates, SLA / ETA queries)
- DirectoryRepository : departments and staff (read-only reference data)

Repositories never commit; the service owning the unit of work does.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import CivicPipelineError, ConcurrencyConflict
from core.logging import logger
from db.models.audit_log import AuditLog  # noqa: F401  (mapper registry)
from db.models.department import Department
from db.models.issue import Issue
from db.models.issue_counter import IssueCounter
from db.models.notification import Notification  # noqa: F401  (mapper registry)
from db.models.user import StaffUser

ISSUE_COUNTER = "issue"
ISSUE_ID_ATTEMPTS = 3

CLOSED_STATUSES = ("closed", "rejected")


def format_issue_id(seq: int) -> str:
    return f"ISSUE-{seq:03d}"


class IssueRepository:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------
    # 1. Create
    # ------------------------------------------------------------

    def _increment_counter(self) -> int:
        return self.db.execute(
            update(IssueCounter)
            .where(IssueCounter.name == ISSUE_COUNTER)
            .values(value=IssueCounter.value + 1)
            .execution_options(synchronize_session=False)
        ).rowcount

    def _next_sequence(self) -> int:
        """
        Counter increment inside the current transaction.

        The increment is not undone when the issue insert fails, so a retry
        always gets a fresh number.
        """
        if self._increment_counter() == 0:
            # no counter row yet: continue after the issues already stored
            start = self.db.execute(select(func.count(Issue.id))).scalar_one() + 1
            try:
                with self.db.begin_nested():
                    self.db.add(IssueCounter(name=ISSUE_COUNTER, value=start))
                    self.db.flush()
                return start
            except IntegrityError:
                # created concurrently
                self._increment_counter()

        return self.db.execute(
            select(IssueCounter.value).where(IssueCounter.name == ISSUE_COUNTER)
        ).scalar_one()

    def insert(self, fields: Dict[str, Any]) -> Issue:
        """Insert a new issue with the next ISSUE-NNN id."""
        last_error: Optional[IntegrityError] = None

        for attempt in range(1, ISSUE_ID_ATTEMPTS + 1):
            seq = self._next_sequence()
            try:
                with self.db.begin_nested():
                    issue = Issue(issue_id=format_issue_id(seq), **fields)
                    self.db.add(issue)
                    self.db.flush()
                return issue
            except IntegrityError as e:
                last_error = e
                logger.warning(f"[IssueRepo] issue id conflict (attempt {attempt}/{ISSUE_ID_ATTEMPTS})")

        raise CivicPipelineError(f"Could not allocate a unique issue id: {last_error}")

    # ------------------------------------------------------------
    # 2. Read
    # ------------------------------------------------------------

    def get(self, issue_id: str) -> Optional[Issue]:
        return self.db.execute(
            select(Issue).where(Issue.issue_id == issue_id)
        ).scalar_one_or_none()

    def duplicate_candidates(self, category: str, since: datetime) -> List[Issue]:
        """Same category, reported since `since`, not closed/rejected. Newest first."""
        stmt = (
            select(Issue)
            .where(
                Issue.verified_category == category,
                Issue.created_at >= since,
                Issue.status.notin_(CLOSED_STATUSES),
            )
            .order_by(Issue.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars())

    def count_open_by_department(self, department_id: int, open_statuses: Sequence[str]) -> int:
        stmt = select(func.count(Issue.id)).where(
            Issue.assigned_department_id == department_id,
            Issue.status.in_(open_statuses),
        )
        return self.db.execute(stmt).scalar_one()

    def recent_resolutions(
        self, department_id: int, limit: int
    ) -> List[Tuple[datetime, datetime]]:
        """(submitted_at, resolved_at) of the department's last `limit` resolved issues."""
        stmt = (
            select(Issue.submitted_at, Issue.resolved_at)
            .where(
                Issue.assigned_department_id == department_id,
                Issue.resolved_at.is_not(None),
            )
            .order_by(Issue.resolved_at.desc())
            .limit(limit)
        )
        return [(row[0], row[1]) for row in self.db.execute(stmt)]

    def search(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
        priority: Optional[str] = None,
        department_id: Optional[int] = None,
        assigned_to_user_id: Optional[int] = None,
        citizen_email: Optional[str] = None,
        is_duplicate: Optional[bool] = None,
        auto_escalated: Optional[bool] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Issue], int]:
        """Filtered page of issues, newest first, plus the unpaged total."""
        conditions = []
        if status:
            conditions.append(Issue.status == status)
        if category:
            conditions.append(Issue.verified_category == category)
        if priority:
            conditions.append(Issue.priority == priority)
        if department_id is not None:
            conditions.append(Issue.assigned_department_id == department_id)
        if assigned_to_user_id is not None:
            conditions.append(Issue.assigned_to_user_id == assigned_to_user_id)
        if citizen_email:
            conditions.append(func.lower(Issue.citizen_email) == citizen_email.lower())
        if is_duplicate is not None:
            conditions.append(Issue.is_duplicate.is_(is_duplicate))
        if auto_escalated is not None:
            conditions.append(Issue.auto_escalated.is_(auto_escalated))
        if created_from is not None:
            conditions.append(Issue.created_at >= created_from)
        if created_to is not None:
            conditions.append(Issue.created_at <= created_to)

        total = self.db.execute(
            select(func.count(Issue.id)).where(*conditions)
        ).scalar_one()
        rows = self.db.execute(
            select(Issue)
            .where(*conditions)
            .order_by(Issue.created_at.desc(), Issue.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars()
        return list(rows), total

    def created_since(
        self, since: Optional[datetime] = None, department_id: Optional[int] = None
    ) -> List[Issue]:
        """Rows for dashboard statistics (all time when `since` is None)."""
        stmt = select(Issue)
        if since is not None:
            stmt = stmt.where(Issue.created_at >= since)
        if department_id is not None:
            stmt = stmt.where(Issue.assigned_department_id == department_id)
        return list(self.db.execute(stmt.order_by(Issue.id)).scalars())

    def overdue(self, now: datetime, statuses: Sequence[str]) -> List[Issue]:
        stmt = (
            select(Issue)
            .where(
                Issue.sla_deadline.is_not(None),
                Issue.sla_deadline < now,
                Issue.status.in_(statuses),
                Issue.auto_escalated.is_(False),
            )
            .order_by(Issue.sla_deadline)
        )
        return list(self.db.execute(stmt).scalars())

    # ------------------------------------------------------------
    # 3. Conditional updates
    # ------------------------------------------------------------

    def update_if_status(self, issue_id: str, expected_status: str, changes: Dict[str, Any]) -> None:
        """
        UPDATE ... WHERE issue_id = ? AND status = expected_status.

        Raises ConcurrencyConflict when someone else changed the status first.
        """
        result = self.db.execute(
            update(Issue)
            .where(Issue.issue_id == issue_id, Issue.status == expected_status)
            .values(**changes, version=Issue.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(issue_id, expected_status)
        self._expire(issue_id)

    def update_if_version(self, issue_id: str, expected_version: int, changes: Dict[str, Any]) -> None:
        result = self.db.execute(
            update(Issue)
            .where(Issue.issue_id == issue_id, Issue.version == expected_version)
            .values(**changes, version=Issue.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(issue_id)
        self._expire(issue_id)

    def mark_escalated(self, issue_id: str, changes: Dict[str, Any]) -> bool:
        """Escalation gate: only one caller ever flips auto_escalated."""
        result = self.db.execute(
            update(Issue)
            .where(Issue.issue_id == issue_id, Issue.auto_escalated.is_(False))
            .values(**changes, auto_escalated=True, version=Issue.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self._expire(issue_id)
            return True
        return False

    def _expire(self, issue_id: str) -> None:
        # reload on next access instead of serving the stale identity-map copy
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, Issue) and obj.issue_id == issue_id:
                self.db.expire(obj)


class DirectoryRepository:
    def __init__(self, db: Session):
        self.db = db

    def department_by_code(self, code: str) -> Optional[Department]:
        return self.db.execute(
            select(Department).where(Department.code == code)
        ).scalar_one_or_none()

    def department_by_id(self, department_id: int) -> Optional[Department]:
        return self.db.get(Department, department_id)

    def list_departments(self, active_only: bool = True) -> List[Department]:
        stmt = select(Department).order_by(Department.id)
        if active_only:
            stmt = stmt.where(Department.is_active.is_(True))
        return list(self.db.execute(stmt).scalars())

    def first_available_authority(
        self, department_id: int, ward: Optional[str] = None
    ) -> Optional[StaffUser]:
        """Lowest-id active, non-suspended authority (optionally in a ward)."""
        stmt = select(StaffUser).where(
            StaffUser.department_id == department_id,
            StaffUser.role == "authority",
            StaffUser.is_active.is_(True),
            StaffUser.is_suspended.is_(False),
        )
        if ward:
            stmt = stmt.where(StaffUser.ward_area == ward)
        return self.db.execute(stmt.order_by(StaffUser.id).limit(1)).scalar_one_or_none()

    def staff_by_id(self, user_id: int) -> Optional[StaffUser]:
        return self.db.get(StaffUser, user_id)
