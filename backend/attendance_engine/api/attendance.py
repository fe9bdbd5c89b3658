"""Attendance API: check-in, check-out, overtime opt-in, status and sweep admin."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from attendance_engine.core.database import get_db
from attendance_engine.schemas.attendance import (
    AttendanceStatusOut, CheckInRequest, CheckOutRequest, ErrorCategory, OvertimeRequest,
    SchedulerStatus, SweepResult,
)
from attendance_engine.services.attendance import AttendanceService
from attendance_engine.services.auto_checkout import AutoCheckoutScheduler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/attendance", tags=["attendance"])

STATUS_BY_CATEGORY = {
    ErrorCategory.USER_ACTIONABLE: 400,
    ErrorCategory.CONFIGURATION: 503,
    ErrorCategory.TRANSIENT: 500,
    ErrorCategory.INVARIANT_VIOLATION: 500,
}


def get_scheduler(request: Request) -> Optional[AutoCheckoutScheduler]:
    return getattr(request.app.state, "auto_checkout", None)


def get_attendance_service(
    db: Session = Depends(get_db),
    scheduler: Optional[AutoCheckoutScheduler] = Depends(get_scheduler),
) -> AttendanceService:
    return AttendanceService(db, scheduler=scheduler)


def _respond(result):
    """Successful results pass through; failures map their category to a status code."""
    if result.success:
        return result
    return JSONResponse(
        status_code=STATUS_BY_CATEGORY.get(result.error_category, 400),
        content=result.model_dump(mode="json"),
    )


# ── Employee actions ─────────────────────────────────────────────────

@router.post("/check-in")
def check_in(payload: CheckInRequest, service: AttendanceService = Depends(get_attendance_service)):
    return _respond(service.check_in(payload))


@router.post("/check-out")
def check_out(payload: CheckOutRequest, service: AttendanceService = Depends(get_attendance_service)):
    return _respond(service.check_out(payload))


@router.post("/overtime")
def enable_overtime(payload: OvertimeRequest, service: AttendanceService = Depends(get_attendance_service)):
    return _respond(service.enable_overtime(payload.employee_id))


@router.get("/status/{employee_id}", response_model=AttendanceStatusOut)
def get_status(employee_id: int, service: AttendanceService = Depends(get_attendance_service)):
    """Today's attendance state for one employee."""
    return service.get_today_status(employee_id)


# ── Admin ────────────────────────────────────────────────────────────

@router.post("/admin/sweep", response_model=SweepResult)
def run_sweep(service: AttendanceService = Depends(get_attendance_service)):
    """Run the auto-checkout sweep immediately instead of waiting for the next pass."""
    if service.scheduler is None:
        raise HTTPException(status_code=503, detail="Auto-checkout scheduler is not running")
    result = service.run_sweep_now()
    logger.info(f"Manual sweep: {result.processed_count} closed, {result.failed_count} failed")
    return result


@router.get("/admin/scheduler", response_model=SchedulerStatus)
def scheduler_status(scheduler: Optional[AutoCheckoutScheduler] = Depends(get_scheduler)):
    if scheduler is None:
        return SchedulerStatus(is_running=False, pending_timers=0)
    return scheduler.status()
