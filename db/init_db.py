# db/init_db.py
# -*- coding: utf-8 -*-
"""
Create tables and seed the default departments.

    python main.py init-db
"""

from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from core.logging import logger
from db.base import Base
from db.models.audit_log import AuditLog  # noqa: F401
from db.models.department import Department
from db.models.issue import Issue  # noqa: F401
from db.models.issue_counter import IssueCounter  # noqa: F401
from db.models.notification import Notification  # noqa: F401
from db.models.user import StaffUser  # noqa: F401

DEFAULT_DEPARTMENTS = [
    {
        "code": "ROADS",
        "name": "Roads and Infrastructure",
        "description": "Road maintenance, potholes, sidewalks",
        "categories": ["pothole", "sidewalk"],
        "sla_hours": 48,
        "contact_email": "roads@city.gov",
    },
    {
        "code": "SANITATION",
        "name": "Sanitation Department",
        "description": "Waste management, garbage collection",
        "categories": ["garbage"],
        "sla_hours": 24,
        "contact_email": "sanitation@city.gov",
    },
    {
        "code": "WATER",
        "name": "Water and Sewerage",
        "description": "Water supply, leaks, drainage",
        "categories": ["water"],
        "sla_hours": 12,
        "contact_email": "water@city.gov",
    },
    {
        "code": "ELECTRICITY",
        "name": "Electricity and Street Lighting",
        "description": "Street lights, electrical issues",
        "categories": ["streetlight"],
        "sla_hours": 24,
        "contact_email": "electricity@city.gov",
    },
    {
        "code": "TRAFFIC",
        "name": "Traffic Management",
        "description": "Traffic signals, road signs",
        "categories": ["traffic"],
        "sla_hours": 48,
        "contact_email": "traffic@city.gov",
    },
    {
        "code": "PARKS",
        "name": "Parks and Recreation",
        "description": "Parks, public spaces, graffiti",
        "categories": ["graffiti"],
        "sla_hours": 72,
        "contact_email": "parks@city.gov",
    },
    {
        "code": "PLANNING",
        "name": "Building and Planning",
        "description": "Building permits, zoning, everything else",
        "categories": ["other"],
        "sla_hours": 168,
        "contact_email": "planning@city.gov",
    },
]


def seed_departments(db: Session) -> int:
    """Insert missing default departments. Returns how many were added."""
    existing = {code for (code,) in db.query(Department.code).all()}
    added = 0
    for data in DEFAULT_DEPARTMENTS:
        if data["code"] in existing:
            continue
        db.add(Department(**data))
        added += 1
    db.commit()
    return added


def init_db(engine: Optional[Engine] = None, seed: bool = True) -> None:
    if engine is None:
        from db.session import engine

    Base.metadata.create_all(bind=engine)
    logger.info("database tables created")

    if seed:
        with Session(engine) as db:
            added = seed_departments(db)
        logger.info(f"seeded {added} department(s)")
