from sqlalchemy import Column, Integer, String

from db.base import Base


class IssueCounter(Base):
    """Monotonic sequence behind the human-readable issue ids."""

    __tablename__ = "issue_counters"

    name = Column(String(30), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
