"""Audit trail for attendance events, including every location validation attempt."""
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func
from attendance_engine.core.database import Base


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String, nullable=False, default="attendance", index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    entity_type = Column(String, nullable=True)  # "attendance" or "employee"
    entity_id = Column(Integer, nullable=True)
    employee_id = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
