from sqlalchemy import Column, String, Text, DateTime, Boolean

from db.base import Base, BigIntPK


class Notification(Base):
    """Outbox row. Actual delivery (email/SMS) happens elsewhere."""

    __tablename__ = "notifications"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    recipient_email = Column(String(200), nullable=True)
    type = Column(String(30), nullable=False)      # issue_created, issue_resolved ...
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    issue_id = Column(String(20), nullable=True, index=True)
    is_sent = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
