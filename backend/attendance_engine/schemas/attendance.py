import enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

from attendance_engine.models.attendance import AttendanceType
from attendance_engine.schemas.location import Coordinate, ValidationResult


class ErrorCategory(str, enum.Enum):
    USER_ACTIONABLE = "user_actionable"  # employee can fix it (move closer, add a reason)
    CONFIGURATION = "configuration"  # operator must fix it (no offices, missing timing)
    TRANSIENT = "transient"  # persistence failure, safe to retry
    INVARIANT_VIOLATION = "invariant_violation"  # clamped and flagged, never raised


# ── Requests ─────────────────────────────────────────────────────────

class CheckInRequest(BaseModel):
    employee_id: int
    coordinate: Coordinate
    accuracy_meters: float = Field(..., ge=0, allow_inf_nan=False)
    attendance_type: AttendanceType = AttendanceType.OFFICE
    reason: Optional[str] = None
    customer_site_ref: Optional[str] = None
    photo_ref: Optional[str] = None


class CheckOutRequest(BaseModel):
    employee_id: int
    coordinate: Optional[Coordinate] = None
    reason: Optional[str] = None


class OvertimeRequest(BaseModel):
    employee_id: int


# ── Results ──────────────────────────────────────────────────────────

class AttendanceDetails(BaseModel):
    is_late: bool
    late_minutes: int
    is_early_arrival: bool = False
    early_arrival_minutes: int = 0
    expected_check_in_time: str
    actual_check_in_time: str
    auto_checkout_at: Optional[datetime] = None
    used_default_timing: bool = False


class CheckInResult(BaseModel):
    success: bool
    record_id: Optional[int] = None
    message: str
    validation: Optional[ValidationResult] = None
    attendance_details: Optional[AttendanceDetails] = None
    recommendations: List[str] = []
    error_category: Optional[ErrorCategory] = None


class CheckOutResult(BaseModel):
    success: bool
    message: str
    regular_hours: float = 0.0
    overtime_hours: float = 0.0
    total_hours: float = 0.0
    is_early_checkout: bool = False
    early_checkout_minutes: int = 0
    data_quality_flag: Optional[str] = None
    error_category: Optional[ErrorCategory] = None


class OvertimeResult(BaseModel):
    success: bool
    message: str
    auto_checkout_at: Optional[datetime] = None
    error_category: Optional[ErrorCategory] = None


class SweepRecordDetail(BaseModel):
    record_id: int
    employee_id: int
    outcome: str  # "closed", "skipped", "failed"
    reason: Optional[str] = None
    regular_hours: Optional[float] = None


class SweepResult(BaseModel):
    ran_at: datetime
    processed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    details: List[SweepRecordDetail] = []


class AttendanceStatusOut(BaseModel):
    status: str  # "not_checked_in", "checked_in", "checked_out"
    record_id: Optional[int] = None
    attendance_type: Optional[str] = None
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    hours_elapsed: Optional[float] = None
    is_late: Optional[bool] = None
    late_minutes: Optional[int] = None
    overtime_status: Optional[str] = None
    auto_checkout_time: Optional[datetime] = None
    regular_working_hours: Optional[float] = None
    overtime_hours: Optional[float] = None
    closure_reason: Optional[str] = None


class SchedulerStatus(BaseModel):
    is_running: bool
    pending_timers: int
    next_sweep_at: Optional[datetime] = None
    entries: List[Dict[str, Any]] = []
