# services/audit_service.py
# -*- coding: utf-8 -*-
"""
Audit trail for issues.

One AuditLog row per creation / transition / assignment / escalation /
feedback. Each write runs in its own SAVEPOINT: a failing audit insert is
logged and rolled back alone, the surrounding operation carries on.

The JSONL event trail (core.logging.log_event) is written only once the
session commits; entries of a rolled-back unit of work are dropped.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import utcnow
from core.logging import logger, log_event
from db.models.audit_log import AuditLog

PENDING_TRAIL_KEY = "audit_trail_pending"


@event.listens_for(Session, "after_commit")
def _flush_trail(session: Session) -> None:
    if session.in_nested_transaction():
        # SAVEPOINT release, not the real commit
        return
    for entity_id, payload in session.info.pop(PENDING_TRAIL_KEY, []):
        log_event(entity_id, payload)


@event.listens_for(Session, "after_transaction_end")
def _drop_trail(session: Session, transaction) -> None:
    # outermost transaction ended without a commit
    if transaction.parent is None:
        session.info.pop(PENDING_TRAIL_KEY, None)


def _defer_trail(session: Session, entity_id: str, payload: Dict[str, Any]) -> None:
    session.info.setdefault(PENDING_TRAIL_KEY, []).append((entity_id, payload))


class AuditService:
    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        entity_id: str,
        action: str,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        changed_by: Optional[str] = None,
        details: Optional[str] = None,
        entity_type: str = "issue",
        now: Optional[datetime] = None,
    ) -> Optional[AuditLog]:
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_values=old_values,
            new_values=new_values,
            changed_by=changed_by,
            details=details,
            changed_at=now or utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(entry)
                self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"[Audit] {action} for {entity_id} not recorded: {e}")
            return None

        _defer_trail(self.db, entity_id, {"audit": action, "old": old_values, "new": new_values, "by": changed_by})
        return entry

    def log_status_change(
        self,
        issue_id: str,
        old_status: str,
        new_status: str,
        changed_by: Optional[str],
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AuditLog]:
        return self.log(
            issue_id,
            "status_changed",
            old_values={"status": old_status},
            new_values={"status": new_status},
            changed_by=changed_by,
            details=notes,
            now=now,
        )

    def log_assignment(
        self,
        issue_id: str,
        department_code: Optional[str],
        user_id: Optional[int],
        changed_by: Optional[str],
        reason: Optional[str] = None,
        old_department_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AuditLog]:
        return self.log(
            issue_id,
            "assigned" if old_department_code is None else "reassigned",
            old_values={"department": old_department_code} if old_department_code else None,
            new_values={"department": department_code, "assigned_to_user_id": user_id},
            changed_by=changed_by,
            details=reason,
            now=now,
        )

    def entries_for(self, entity_id: str, entity_type: str = "issue") -> List[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.changed_at, AuditLog.id)
        )
        return list(self.db.execute(stmt).scalars())


def serialize_audit(entry: AuditLog) -> Dict[str, Any]:
    return {
        "action": entry.action,
        "old_values": entry.old_values,
        "new_values": entry.new_values,
        "changed_by": entry.changed_by,
        "details": entry.details,
        "changed_at": entry.changed_at.isoformat() if entry.changed_at else None,
    }
