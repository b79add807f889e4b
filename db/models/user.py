from sqlalchemy import Column, BigInteger, String, DateTime, ForeignKey, Boolean
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from db.base import Base, BigIntPK


class StaffUser(Base):
    """Municipal staff. Only active, non-suspended authorities get issues."""

    __tablename__ = "users"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(200), nullable=True)
    full_name = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, default="authority")  # citizen / authority / admin
    department_id = Column(BigInteger, ForeignKey("departments.id"), nullable=True)
    ward_area = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_suspended = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    department = relationship(
        "Department",
        back_populates="staff",
    )
