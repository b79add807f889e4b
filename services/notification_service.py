# services/notification_service.py
# -*- coding: utf-8 -*-
"""
Citizen notifications (fire-and-forget).

The pipeline calls a Notifier after an issue is created (with its ETA) and
after it enters `resolved`. The default NotificationService only writes an
outbox row (notifications table); delivery is someone else's job.
A notifier failure is logged and never reaches the caller.
"""

from typing import Any, Optional, Protocol

from core.clock import utcnow
from core.logging import logger
from db.models.notification import Notification


class Notifier(Protocol):
    def issue_created(self, issue: Any) -> None:
        ...

    def issue_resolved(self, issue: Any) -> None:
        ...


class NotificationService:
    def __init__(self, db):
        self.db = db

    def issue_created(self, issue: Any) -> None:
        eta = issue.estimated_resolution_time
        eta_text = eta.strftime("%Y-%m-%d %H:%M UTC") if eta else "to be confirmed"
        self._queue(
            issue,
            "issue_created",
            f"Issue {issue.issue_id} received",
            (
                f"Your {issue.verified_category} report has been received as {issue.issue_id}. "
                f"Estimated resolution: {eta_text}."
            ),
        )

    def issue_resolved(self, issue: Any) -> None:
        self._queue(
            issue,
            "issue_resolved",
            f"Issue {issue.issue_id} resolved",
            (
                f"Your report {issue.issue_id} has been marked as resolved. "
                f"You can rate the resolution from 1 to 5."
            ),
        )

    def _queue(self, issue: Any, kind: str, title: str, message: str) -> Optional[Notification]:
        if not issue.citizen_email:
            logger.info(f"[Notify] {kind} for {issue.issue_id} skipped (no email)")
            return None

        row = Notification(
            recipient_email=issue.citizen_email,
            type=kind,
            title=title,
            message=message,
            issue_id=issue.issue_id,
            is_sent=False,
            created_at=utcnow(),
        )
        with self.db.begin_nested():
            self.db.add(row)
            self.db.flush()
        logger.info(f"[Notify] queued {kind} for {issue.issue_id}")
        return row


def notify_safely(notifier: Optional[Notifier], event: str, issue: Any) -> None:
    """Call notifier.<event>(issue); swallow and log any failure."""
    if notifier is None:
        return
    try:
        getattr(notifier, event)(issue)
    except Exception as e:
        logger.error(f"[Notify] {event} for {issue.issue_id} failed: {e}")
