from sqlalchemy import Column, String, Text, DateTime, JSON

from db.base import Base, BigIntPK


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    entity_type = Column(String(30), nullable=False)           # 'issue', ...
    entity_id = Column(String(50), nullable=False, index=True)  # ISSUE-001
    action = Column(String(50), nullable=False)                # status_changed, escalated ...
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    changed_by = Column(String(100), nullable=True)            # actor, "system" for the sweep
    details = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False)
