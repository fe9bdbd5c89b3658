"""Record store used by the attendance engine.

Thin layer over the SQLAlchemy session exposing only the reads and writes
the engine needs. Every write commits; closing writes are conditional on the
record still being open so a manual checkout and an auto-checkout can never
both land.
"""
import logging
from datetime import date, time
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_engine.models.activity_log import ActivityLog
from attendance_engine.models.attendance import AttendanceRecord
from attendance_engine.models.employee import Employee
from attendance_engine.models.office import DepartmentTiming, OfficeLocation
from attendance_engine.schemas.location import Coordinate, OfficeCandidate
from attendance_engine.schemas.timing import DepartmentTimingConfig

logger = logging.getLogger(__name__)


def department_key(department: Optional[str]) -> str:
    return (department or "").strip().lower()


class AttendanceStore:

    def __init__(self, db: Session):
        self.db = db

    # ── Reference data ───────────────────────────────────────────────

    def get_employee(self, employee_id: int) -> Optional[Employee]:
        return self.db.query(Employee).filter(Employee.id == employee_id).first()

    def get_office_locations(self) -> List[OfficeCandidate]:
        offices = (
            self.db.query(OfficeLocation)
            .filter(OfficeLocation.is_active == True)
            .order_by(OfficeLocation.id)
            .all()
        )
        return [
            OfficeCandidate(
                id=o.id,
                name=o.name,
                coordinate=Coordinate(latitude=float(o.latitude), longitude=float(o.longitude)),
                radius_meters=float(o.radius_meters or 100),
            )
            for o in offices
        ]

    def get_department_timing(self, department: str) -> Optional[DepartmentTimingConfig]:
        row = (
            self.db.query(DepartmentTiming)
            .filter(DepartmentTiming.department == department_key(department))
            .first()
        )
        if not row:
            return None
        if row.check_in_time is None or row.check_out_time is None:
            logger.warning(f"Department timing for '{department}' is incomplete, ignoring it")
            return None

        return DepartmentTimingConfig(
            department=row.department,
            check_in_time=row.check_in_time,
            check_out_time=row.check_out_time,
            working_hours=row.working_hours or 8,
            late_threshold_minutes=row.late_threshold_minutes or 0,
            is_flexible_timing=bool(row.is_flexible_timing),
            allow_early_check_out=bool(row.allow_early_check_out),
        )

    def upsert_department_timing(
        self,
        department: str,
        check_in_time: time,
        check_out_time: time,
        working_hours: float,
        late_threshold_minutes: int = 15,
        is_flexible_timing: bool = False,
        allow_early_check_out: bool = False,
    ) -> DepartmentTimingConfig:
        key = department_key(department)
        row = self.db.query(DepartmentTiming).filter(DepartmentTiming.department == key).first()
        if not row:
            row = DepartmentTiming(department=key)
            self.db.add(row)

        row.check_in_time = check_in_time
        row.check_out_time = check_out_time
        row.working_hours = working_hours
        row.late_threshold_minutes = late_threshold_minutes
        row.is_flexible_timing = is_flexible_timing
        row.allow_early_check_out = allow_early_check_out
        self.db.commit()
        return self.get_department_timing(key)

    # ── Attendance records ───────────────────────────────────────────

    def get_attendance_record(self, employee_id: int, work_date: date) -> Optional[AttendanceRecord]:
        return (
            self.db.query(AttendanceRecord)
            .filter(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.work_date == work_date,
            )
            .first()
        )

    def get_attendance_record_by_id(self, record_id: int) -> Optional[AttendanceRecord]:
        return self.db.query(AttendanceRecord).filter(AttendanceRecord.id == record_id).first()

    def create_attendance_record(self, **fields) -> AttendanceRecord:
        record = AttendanceRecord(**fields)
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def update_attendance_record(self, record_id: int, **fields) -> AttendanceRecord:
        record = self.get_attendance_record_by_id(record_id)
        if record is None:
            raise LookupError(f"Attendance record {record_id} not found")
        for key, value in fields.items():
            setattr(record, key, value)
        self.db.commit()
        self.db.refresh(record)
        return record

    def close_attendance_record(self, record_id: int, **fields) -> Optional[AttendanceRecord]:
        """Write the closing fields only if the record is still open.

        Returns the closed record, or None when another writer closed it first.
        """
        return self.update_open_attendance_record(record_id, **fields)

    def update_open_attendance_record(self, record_id: int, **fields) -> Optional[AttendanceRecord]:
        """Like ``update_attendance_record`` but a closed record is left untouched (returns None)."""
        updated = (
            self.db.query(AttendanceRecord)
            .filter(
                AttendanceRecord.id == record_id,
                AttendanceRecord.check_out_time.is_(None),
            )
            .update(fields, synchronize_session=False)
        )
        self.db.commit()
        if not updated:
            return None

        record = self.get_attendance_record_by_id(record_id)
        self.db.refresh(record)
        return record

    def list_open_attendance_records(self) -> List[AttendanceRecord]:
        """Every open record, oldest work day first."""
        query = self.db.query(AttendanceRecord).filter(AttendanceRecord.check_out_time.is_(None))
        return query.order_by(AttendanceRecord.work_date, AttendanceRecord.id).all()

    # ── Audit ────────────────────────────────────────────────────────

    def append_activity_log(
        self,
        title: str,
        description: str,
        employee_id: Optional[int] = None,
        entity_type: str = "attendance",
        entity_id: Optional[int] = None,
        type: str = "attendance",
    ) -> None:
        """Record an audit entry. Never raises: a failed log must not fail the caller."""
        try:
            self.db.add(ActivityLog(
                type=type,
                title=title,
                description=description,
                entity_type=entity_type,
                entity_id=entity_id,
                employee_id=employee_id,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Activity log write failed ({title}): {e}")
