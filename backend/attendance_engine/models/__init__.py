from attendance_engine.models.employee import Employee
from attendance_engine.models.office import OfficeLocation, DepartmentTiming
from attendance_engine.models.attendance import (
    AttendanceRecord, AttendanceType, AttendanceStatus,
    OvertimeStatus, ClosureReason,
)
from attendance_engine.models.activity_log import ActivityLog

__all__ = [
    "Employee",
    "OfficeLocation",
    "DepartmentTiming",
    "AttendanceRecord",
    "AttendanceType",
    "AttendanceStatus",
    "OvertimeStatus",
    "ClosureReason",
    "ActivityLog",
]
