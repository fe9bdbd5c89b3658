"""Department timing API. Writes drop the cached timing immediately."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from attendance_engine.core.database import get_db
from attendance_engine.schemas.timing import DepartmentTimingConfig, DepartmentTimingUpdate
from attendance_engine.services.storage import AttendanceStore
from attendance_engine.services.time_accounting import TimeAccountingService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/departments", tags=["departments"])


@router.get("/{department}/timing", response_model=DepartmentTimingConfig)
def get_department_timing(department: str, db: Session = Depends(get_db)):
    """Effective timing for a department (the default schedule when none is configured)."""
    return TimeAccountingService(AttendanceStore(db)).get_department_timing(department)


@router.put("/{department}/timing", response_model=DepartmentTimingConfig)
def update_department_timing(
    department: str,
    payload: DepartmentTimingUpdate,
    db: Session = Depends(get_db),
):
    if not department.strip():
        raise HTTPException(status_code=400, detail="Department name is required")
    return TimeAccountingService(AttendanceStore(db)).update_department_timing(department, payload)
