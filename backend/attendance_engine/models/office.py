"""Office geofences and department schedules: read-only inputs to the engine."""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, Float, Time
from sqlalchemy.sql import func
from attendance_engine.core.database import Base


class OfficeLocation(Base):
    __tablename__ = "office_locations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    latitude = Column(Numeric(10, 7), nullable=False)
    longitude = Column(Numeric(10, 7), nullable=False)
    radius_meters = Column(Float, nullable=False, default=100)
    address = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DepartmentTiming(Base):
    """Expected schedule for a department. ``department`` is stored lower-cased."""
    __tablename__ = "department_timings"

    id = Column(Integer, primary_key=True, index=True)
    department = Column(String, unique=True, nullable=False, index=True)
    check_in_time = Column(Time, nullable=False)
    check_out_time = Column(Time, nullable=False)
    working_hours = Column(Float, nullable=False, default=8)
    late_threshold_minutes = Column(Integer, default=15)  # grace before status turns "late"
    is_flexible_timing = Column(Boolean, default=False)
    allow_early_check_out = Column(Boolean, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
