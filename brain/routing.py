# brain/routing.py
# -*- coding: utf-8 -*-
"""
Department routing.

Role
----
- route(category, ward, latitude, longitude, now, directory) -> RouteDecision
    category -> department code + SLA hours (static table),
    location -> ward, department + ward -> first available authority,
    deadline = now + max(category SLA, department SLA).
- routing_log_entry(...): the JSON record appended to Issue.routing_logs.

Departments and staff come from a Directory (db.repository.DirectoryRepository
in production). A missing or inactive department raises AssignmentFailure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

from core.errors import AssignmentFailure
from core.logging import logger


@dataclass(frozen=True)
class RouteRule:
    department_code: str
    sla_hours: int


ROUTING_RULES: Dict[str, RouteRule] = {
    "pothole": RouteRule("ROADS", 48),
    "garbage": RouteRule("SANITATION", 24),
    "water": RouteRule("WATER", 12),
    "streetlight": RouteRule("ELECTRICITY", 24),
    "traffic": RouteRule("TRAFFIC", 48),
    "graffiti": RouteRule("PARKS", 72),
    "sidewalk": RouteRule("ROADS", 48),
    "other": RouteRule("PLANNING", 168),
}

DEFAULT_WARD = "Central"

# Quadrant thresholds (until real ward polygons exist)
NORTH_LAT = 40.77
SOUTH_LAT = 40.74
EAST_LNG = -74.00
WEST_LNG = -74.02


class Directory(Protocol):
    def department_by_code(self, code: str) -> Any:
        ...

    def first_available_authority(self, department_id: int, ward: Optional[str]) -> Any:
        ...


@dataclass(frozen=True)
class RouteDecision:
    category: str
    department_id: int
    department_code: str
    department_name: str
    assigned_to_user_id: Optional[int]
    ward: str
    sla_hours: int
    sla_deadline: datetime
    rule_applied: RouteRule


def rule_for(category: Optional[str]) -> RouteRule:
    return ROUTING_RULES.get((category or "").lower(), ROUTING_RULES["other"])


def determine_ward(
    ward: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> str:
    if ward:
        return ward
    if latitude is None or longitude is None:
        return DEFAULT_WARD

    if latitude > NORTH_LAT:
        return "North"
    if latitude < SOUTH_LAT:
        return "South"
    if longitude > EAST_LNG:
        return "East"
    if longitude < WEST_LNG:
        return "West"
    return DEFAULT_WARD


def find_assignee(directory: Directory, department_id: int, ward: str) -> Optional[int]:
    """Authority in the ward first, then anyone in the department."""
    user = directory.first_available_authority(department_id, ward)
    if user is None:
        user = directory.first_available_authority(department_id, None)
    return user.id if user is not None else None


def route(
    category: Optional[str],
    directory: Directory,
    now: datetime,
    ward: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> RouteDecision:
    rule = rule_for(category)

    department = directory.department_by_code(rule.department_code)
    if department is None or not department.is_active:
        raise AssignmentFailure(
            f"No active department {rule.department_code} for category {category!r}"
        )

    ward_area = determine_ward(ward, latitude, longitude)
    user_id = find_assignee(directory, department.id, ward_area)

    sla_hours = max(rule.sla_hours, department.sla_hours or 0)
    deadline = now + timedelta(hours=sla_hours)

    logger.info(
        f"[Routing] {category} -> {department.code} (ward={ward_area}, "
        f"user={user_id}, sla={sla_hours}h)"
    )

    return RouteDecision(
        category=category or "other",
        department_id=department.id,
        department_code=department.code,
        department_name=department.name,
        assigned_to_user_id=user_id,
        ward=ward_area,
        sla_hours=sla_hours,
        sla_deadline=deadline,
        rule_applied=rule,
    )


def routing_log_entry(
    now: datetime,
    method: str,
    department_code: str,
    user_assigned: Optional[int],
    ward_area: Optional[str],
    sla_deadline: Optional[datetime],
    rule_applied: Optional[RouteRule] = None,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "timestamp": now.isoformat(),
        "assignment_method": method,
        "rule_applied": (
            {"department_code": rule_applied.department_code, "sla_hours": rule_applied.sla_hours}
            if rule_applied else None
        ),
        "department_code": department_code,
        "user_assigned": user_assigned,
        "ward_area": ward_area,
        "sla_deadline": sla_deadline.isoformat() if sla_deadline else None,
        "actor": actor,
        "reason": reason,
    }
