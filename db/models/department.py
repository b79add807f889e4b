from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from db.base import Base, BigIntPK


class Department(Base):
    __tablename__ = "departments"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    code = Column(String(20), unique=True, nullable=False, index=True)  # ROADS, WATER ...
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    categories = Column(JSON, nullable=False, default=list)   # handled issue categories
    sla_hours = Column(Integer, nullable=False, default=72)
    escalation_hours = Column(Integer, nullable=False, default=24)
    contact_email = Column(String(200), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    staff = relationship(
        "StaffUser",
        back_populates="department",
    )
