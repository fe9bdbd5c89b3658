"""Attendance record model: one row per employee per calendar day.

Lifecycle:
- Open: check_in_time set, check_out_time NULL. Carries the auto-checkout
  deadline and, once requested, the overtime state.
- Closed: check_out_time set plus the hours split and the closure reason.
  The engine never rewrites a closed row.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Boolean, Date, Numeric, Float,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from attendance_engine.core.database import Base


class AttendanceType(str, enum.Enum):
    OFFICE = "office"
    REMOTE = "remote"
    FIELD_WORK = "field_work"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    LATE = "late"


class OvertimeStatus(str, enum.Enum):
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"


class ClosureReason(str, enum.Enum):
    MANUAL = "manual"
    AUTO_TWO_HOUR = "auto_two_hour"
    AUTO_DAILY_CLEANUP = "auto_daily_cleanup"


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "work_date", name="uq_attendance_employee_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    work_date = Column(Date, nullable=False, index=True)

    attendance_type = Column(String, nullable=False, default=AttendanceType.OFFICE.value)
    status = Column(String, nullable=False, default=AttendanceStatus.PRESENT.value)

    # Check-in
    check_in_time = Column(DateTime, nullable=False)
    expected_check_in = Column(DateTime, nullable=True)
    expected_check_out = Column(DateTime, nullable=True)
    is_late = Column(Boolean, default=False)
    late_minutes = Column(Integer, default=0)
    is_early_arrival = Column(Boolean, default=False)
    early_arrival_minutes = Column(Integer, default=0)

    check_in_latitude = Column(Numeric(10, 7), nullable=True)
    check_in_longitude = Column(Numeric(10, 7), nullable=True)
    check_in_accuracy = Column(Numeric(8, 2), nullable=True)  # meters

    reason = Column(String, nullable=True)
    customer_site_ref = Column(String, nullable=True)  # field work only
    photo_ref = Column(String, nullable=True)  # blob-store reference, field work only
    remarks = Column(String, nullable=True)

    # Location validation metadata
    location_validation_type = Column(String, nullable=True)
    location_confidence = Column(Float, nullable=True)
    distance_from_office = Column(Float, nullable=True)
    detected_office_id = Column(Integer, ForeignKey("office_locations.id"), nullable=True)
    is_within_office_radius = Column(Boolean, default=False)
    location_fallback_applied = Column(Boolean, default=False)

    # Overtime
    overtime_enabled = Column(Boolean, default=False)
    overtime_requested_at = Column(DateTime, nullable=True)
    overtime_status = Column(String, nullable=False, default=OvertimeStatus.NOT_REQUESTED.value)

    # Auto-checkout deadline (the only durable trace of a pending timer)
    auto_checkout_enabled = Column(Boolean, default=True)
    auto_checkout_time = Column(DateTime, nullable=True)

    # Check-out
    check_out_time = Column(DateTime, nullable=True)
    check_out_latitude = Column(Numeric(10, 7), nullable=True)
    check_out_longitude = Column(Numeric(10, 7), nullable=True)
    check_out_reason = Column(String, nullable=True)
    is_early_checkout = Column(Boolean, default=False)
    early_checkout_minutes = Column(Integer, default=0)
    total_hours = Column(Float, nullable=True)
    regular_working_hours = Column(Float, nullable=True)
    overtime_hours = Column(Float, nullable=True)
    closure_reason = Column(String, nullable=True)
    auto_checked_out_at = Column(DateTime, nullable=True)
    data_quality_flag = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    employee = relationship("Employee", back_populates="attendance_records")
    detected_office = relationship("OfficeLocation")

    @property
    def is_open(self) -> bool:
        return self.check_out_time is None

    @property
    def overtime_pending(self) -> bool:
        return self.overtime_status == OvertimeStatus.PENDING.value
