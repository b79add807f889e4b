from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    String,
    Text,
    Float,
    DateTime,
    ForeignKey,
    Boolean,
    JSON,
    Index,
)
from sqlalchemy.orm import relationship

from db.base import Base, BigIntPK


class Issue(Base):
    __tablename__ = "issues"
    __table_args__ = (
        Index("ix_issues_category_created", "verified_category", "created_at"),
        Index("ix_issues_status_deadline", "status", "sla_deadline"),
    )

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    issue_id = Column(String(20), unique=True, nullable=False, index=True)  # ISSUE-001

    # reporter
    citizen_name = Column(String(100), nullable=True)
    citizen_email = Column(String(200), nullable=True, index=True)
    citizen_phone = Column(String(30), nullable=True)

    description = Column(Text, nullable=False)

    # classification
    original_category = Column(String(30), nullable=False)   # citizen's choice
    verified_category = Column(String(30), nullable=False)   # after fusion
    confidence_score = Column(Float, nullable=False, default=0.5)
    severity_level = Column(String(20), nullable=False, default="medium")
    priority = Column(String(20), nullable=False, default="medium")
    needs_review = Column(Boolean, nullable=False, default=False)
    was_reclassified = Column(Boolean, nullable=False, default=False)
    ai_processing_status = Column(String(20), nullable=False, default="text_only")
    ai_explanation = Column(Text, nullable=True)
    classification_details = Column(JSON, nullable=True)
    reclassification_event = Column(JSON, nullable=True)

    # location
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address = Column(String(300), nullable=True)
    ward = Column(String(50), nullable=True)

    # media
    images = Column(JSON, nullable=False, default=list)
    resolution_images = Column(JSON, nullable=False, default=list)
    resolution_notes = Column(Text, nullable=True)

    # assignment
    assigned_department_id = Column(BigInteger, ForeignKey("departments.id"), nullable=True)
    assigned_to_user_id = Column(BigInteger, ForeignKey("users.id"), nullable=True)
    resolved_by_user_id = Column(BigInteger, ForeignKey("users.id"), nullable=True)
    sla_deadline = Column(DateTime, nullable=True)
    estimated_resolution_time = Column(DateTime, nullable=True)
    routing_logs = Column(JSON, nullable=False, default=list)   # append-only

    # status
    status = Column(String(20), nullable=False, default="submitted", index=True)
    status_history = Column(JSON, nullable=False, default=list)  # append-only

    # duplicates (duplicate_of_issue_id is informational, not a FK)
    is_duplicate = Column(Boolean, nullable=False, default=False)
    duplicate_of_issue_id = Column(String(20), nullable=True)
    duplicate_confidence = Column(Float, nullable=True)

    # escalation
    auto_escalated = Column(Boolean, nullable=False, default=False)
    escalation_reason = Column(Text, nullable=True)

    # lifecycle timestamps, each set once
    submitted_at = Column(DateTime, nullable=False)
    assigned_at = Column(DateTime, nullable=True)
    in_progress_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    # citizen feedback
    citizen_feedback_rating = Column(Integer, nullable=True)
    citizen_feedback_comment = Column(Text, nullable=True)
    citizen_feedback_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    department = relationship("Department", foreign_keys=[assigned_department_id])
    assignee = relationship("StaffUser", foreign_keys=[assigned_to_user_id])
