# brain/lifecycle.py
# -*- coding: utf-8 -*-
"""
Issue status state machine.

    submitted   -> assigned | in_progress | resolved | rejected
    assigned    -> in_progress | resolved | rejected
    in_progress -> resolved | assigned | closed
    resolved    -> closed | in_progress
    closed      -> (terminal)
    rejected    -> submitted

plan_transition() only computes the column changes of a transition; it does
not touch the issue. The caller persists them with a conditional update on
the status it read (IssueRepository.update_if_status), so two writers racing
on the same issue cannot both win.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.errors import InvalidTransition, MissingResolutionProof

STATUSES = ("submitted", "assigned", "in_progress", "resolved", "closed", "rejected")

OPEN_STATUSES = ("submitted", "assigned", "in_progress")

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "submitted": frozenset({"assigned", "in_progress", "resolved", "rejected"}),
    "assigned": frozenset({"in_progress", "resolved", "rejected"}),
    "in_progress": frozenset({"resolved", "assigned", "closed"}),
    "resolved": frozenset({"closed", "in_progress"}),
    "closed": frozenset(),
    "rejected": frozenset({"submitted"}),
}

# lifecycle timestamp set (once) when entering the status
STATUS_TIMESTAMPS: Dict[str, str] = {
    "assigned": "assigned_at",
    "in_progress": "in_progress_at",
    "resolved": "resolved_at",
    "closed": "closed_at",
}


@dataclass(frozen=True)
class Transition:
    issue_id: str
    previous_status: str
    new_status: str
    changes: Dict[str, Any] = field(default_factory=dict)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def history_entry(
    now: datetime,
    previous_status: Optional[str],
    new_status: str,
    actor: Optional[str] = None,
    notes: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry = {
        "timestamp": now.isoformat(),
        "previous_status": previous_status,
        "new_status": new_status,
        "actor": actor,
        "notes": notes,
    }
    entry.update(extra)
    return entry


def initial_history(now: datetime, actor: Optional[str] = None) -> List[Dict[str, Any]]:
    return [history_entry(now, None, "submitted", actor, "Issue submitted")]


def plan_transition(
    issue: Any,
    target: str,
    now: datetime,
    actor: Optional[str] = None,
    notes: Optional[str] = None,
    resolution_images: Optional[Sequence[str]] = None,
) -> Transition:
    """
    Validate `issue.status -> target` and return the column changes.

    Raises
    ------
    InvalidTransition       target not reachable from the current status
    MissingResolutionProof  entering resolved without any resolution image
    """
    current = issue.status
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

    existing_images = list(issue.resolution_images or [])
    new_images = [ref for ref in (resolution_images or []) if ref]

    if target == "resolved" and not (existing_images or new_images):
        raise MissingResolutionProof(issue.issue_id)

    changes: Dict[str, Any] = {
        "status": target,
        "status_history": list(issue.status_history or [])
        + [history_entry(now, current, target, actor, notes)],
        "updated_at": now,
    }

    ts_field = STATUS_TIMESTAMPS.get(target)
    if ts_field and getattr(issue, ts_field, None) is None:
        changes[ts_field] = now

    if new_images:
        changes["resolution_images"] = existing_images + new_images
    if target == "resolved" and notes:
        changes["resolution_notes"] = notes

    return Transition(
        issue_id=issue.issue_id,
        previous_status=current,
        new_status=target,
        changes=changes,
    )
