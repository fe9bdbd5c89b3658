"""Check-in / check-out orchestration.

The only entry point callers use. Each operation validates fully before it
writes, so a rejected request leaves no partial state behind:

- check_in:  location (office only) -> business rules -> time metrics ->
             create record -> arm the 2-hour auto-checkout
- check_out: time metrics on the actual instant -> conditional close ->
             cancel the timer
- enable_overtime: only at/after the department checkout time; swaps the
             2-hour timer for the 23:55 one
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_engine.core.clock import format_12h, hours_between, local_now
from attendance_engine.models.attendance import (
    AttendanceRecord, AttendanceStatus, AttendanceType, ClosureReason, OvertimeStatus,
)
from attendance_engine.schemas.attendance import (
    AttendanceDetails, AttendanceStatusOut, CheckInRequest, CheckInResult, CheckOutRequest,
    CheckOutResult, ErrorCategory, OvertimeResult, SweepResult,
)
from attendance_engine.schemas.location import LocationSample, ValidationResult, ValidationTier
from attendance_engine.services import location_validation
from attendance_engine.services.auto_checkout import (
    AutoCheckoutScheduler, auto_checkout_deadline, cleanup_day, daily_cleanup_at,
)
from attendance_engine.services.storage import AttendanceStore
from attendance_engine.services.time_accounting import (
    DepartmentTimingCache, TimeAccountingService, round_hours,
)

logger = logging.getLogger(__name__)

ATTENDANCE_TYPE_DISPLAY = {
    AttendanceType.OFFICE: "Office",
    AttendanceType.REMOTE: "Remote Work",
    AttendanceType.FIELD_WORK: "Field Work",
}


def generate_remarks(request: CheckInRequest, validation: ValidationResult) -> str:
    parts = []
    if request.attendance_type == AttendanceType.FIELD_WORK and request.customer_site_ref:
        parts.append(f"Field work at {request.customer_site_ref}")
    if request.reason:
        parts.append(request.reason)
    if validation.validation_type == ValidationTier.INDOOR_COMPENSATED:
        parts.append("Indoor GPS detection")
    elif validation.validation_type == ValidationTier.PROXIMITY_BASED:
        parts.append("Proximity-based location validation")
    if validation.fallback_applied:
        parts.append("Borderline location accepted")
    if validation.office_name:
        parts.append(f"Office: {validation.office_name}")
    return " | ".join(parts) or "Standard check-in"


class AttendanceService:

    def __init__(
        self,
        db: Session,
        scheduler: Optional[AutoCheckoutScheduler] = None,
        clock: Callable[[], datetime] = local_now,
        timing_cache: DepartmentTimingCache = None,
    ):
        self.db = db
        self.store = AttendanceStore(db)
        self.scheduler = scheduler
        self.clock = clock
        self.time_service = TimeAccountingService(self.store, cache=timing_cache, clock=clock)

    # ── Check-in ─────────────────────────────────────────────────────

    def check_in(self, request: CheckInRequest) -> CheckInResult:
        now = self.clock()
        today = now.date()

        try:
            employee = self.store.get_employee(request.employee_id)
            if employee is None or not employee.is_active:
                return self._check_in_failure(
                    "Employee not found", ErrorCategory.USER_ACTIONABLE, ["Contact your administrator"],
                )

            if self.store.get_attendance_record(employee.id, today):
                return self._check_in_failure(
                    "You have already checked in today",
                    ErrorCategory.USER_ACTIONABLE,
                    ["You can only check in once per day"],
                )

            sample = LocationSample(
                coordinate=request.coordinate,
                accuracy_meters=request.accuracy_meters,
                captured_at=now,
            )
            offices = self.store.get_office_locations()
            validation = location_validation.validate(sample, offices)
            if request.attendance_type == AttendanceType.OFFICE and not validation.is_valid:
                fallback = location_validation.borderline_fallback(sample, offices, validation)
                if fallback is not None:
                    logger.warning(
                        f"LOCATION: borderline fallback applied for employee {employee.id} "
                        f"({validation.distance_meters}m, accuracy {sample.accuracy_meters}m)"
                    )
                    validation = fallback
            self._log_validation(employee.id, request.attendance_type, validation)

            rule_failure = self._check_business_rules(request, validation)
            if rule_failure is not None:
                return rule_failure

            timing = self.time_service.get_department_timing(employee.department)
            metrics = self.time_service.calculate(timing, now)
            deadline = auto_checkout_deadline(metrics.expected_check_out)
            past_threshold = metrics.late_minutes > timing.late_threshold_minutes
            is_office = request.attendance_type == AttendanceType.OFFICE

            try:
                record = self.store.create_attendance_record(
                    employee_id=employee.id,
                    work_date=today,
                    attendance_type=request.attendance_type.value,
                    status=(AttendanceStatus.LATE if past_threshold else AttendanceStatus.PRESENT).value,
                    check_in_time=now,
                    expected_check_in=metrics.expected_check_in,
                    expected_check_out=metrics.expected_check_out,
                    is_late=metrics.is_late,
                    late_minutes=metrics.late_minutes,
                    is_early_arrival=metrics.is_early_arrival,
                    early_arrival_minutes=metrics.early_arrival_minutes,
                    check_in_latitude=request.coordinate.latitude,
                    check_in_longitude=request.coordinate.longitude,
                    check_in_accuracy=request.accuracy_meters,
                    reason=request.reason,
                    customer_site_ref=request.customer_site_ref,
                    photo_ref=request.photo_ref,
                    remarks=generate_remarks(request, validation),
                    location_validation_type=validation.validation_type.value,
                    location_confidence=validation.confidence,
                    distance_from_office=validation.distance_meters,
                    detected_office_id=validation.office_id,
                    is_within_office_radius=is_office and validation.is_valid,
                    location_fallback_applied=validation.fallback_applied,
                    overtime_status=OvertimeStatus.NOT_REQUESTED.value,
                    auto_checkout_enabled=True,
                    auto_checkout_time=deadline,
                )
            except IntegrityError:
                self.db.rollback()
                logger.info(f"Duplicate check-in rejected for employee {employee.id} on {today}")
                return self._check_in_failure(
                    "You have already checked in today",
                    ErrorCategory.USER_ACTIONABLE,
                    ["You can only check in once per day"],
                )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"CHECK-IN: persistence failure for employee {request.employee_id}: {e}", exc_info=True)
            return self._check_in_failure(
                "Failed to process check-in due to a system error",
                ErrorCategory.TRANSIENT,
                ["Please try again or contact support"],
            )

        self._arm(employee.id, record.id, metrics.expected_check_out)

        display = ATTENDANCE_TYPE_DISPLAY[request.attendance_type]
        late_note = f" ({metrics.late_minutes} minutes late)" if metrics.is_late else ""
        self.store.append_activity_log(
            title=f"{display} Check-in",
            description=(
                f"{employee.full_name} checked in for {request.attendance_type.value} work{late_note}"
                f" - Location confidence: {round(validation.confidence * 100)}%"
            ),
            employee_id=employee.id,
            entity_id=record.id,
        )
        logger.info(f"CHECK-IN: employee {employee.id} ({request.attendance_type.value}) record {record.id}{late_note}")

        return CheckInResult(
            success=True,
            record_id=record.id,
            message=f"Check-in successful for {display} work{late_note}",
            validation=validation,
            attendance_details=AttendanceDetails(
                is_late=metrics.is_late,
                late_minutes=metrics.late_minutes,
                is_early_arrival=metrics.is_early_arrival,
                early_arrival_minutes=metrics.early_arrival_minutes,
                expected_check_in_time=format_12h(metrics.expected_check_in),
                actual_check_in_time=format_12h(now),
                auto_checkout_at=deadline,
                used_default_timing=metrics.used_default_timing,
            ),
            recommendations=validation.recommendations,
        )

    def _check_business_rules(self, request: CheckInRequest, validation: ValidationResult) -> Optional[CheckInResult]:
        if request.attendance_type == AttendanceType.OFFICE and not validation.is_valid:
            if validation.validation_type == ValidationTier.NO_OFFICES_CONFIGURED:
                return self._check_in_failure(
                    "Office check-in is unavailable: no office locations are configured",
                    ErrorCategory.CONFIGURATION,
                    validation.recommendations,
                    validation,
                )
            return self._check_in_failure(
                f"Office check-in failed: {validation.message}",
                ErrorCategory.USER_ACTIONABLE,
                validation.recommendations + ['Consider using "Remote Work" if you are working from outside the office'],
                validation,
            )

        if request.attendance_type == AttendanceType.FIELD_WORK:
            if not (request.customer_site_ref or "").strip():
                return self._check_in_failure(
                    "Customer name is required for field work",
                    ErrorCategory.USER_ACTIONABLE,
                    ["Please enter the customer you are visiting"],
                    validation,
                )
            if not (request.photo_ref or "").strip():
                return self._check_in_failure(
                    "Photo is mandatory for field work check-in",
                    ErrorCategory.USER_ACTIONABLE,
                    ["Please capture a photo to verify your field work location"],
                    validation,
                )

        if request.attendance_type == AttendanceType.REMOTE and not (request.reason or "").strip():
            return self._check_in_failure(
                "Reason is required for remote work",
                ErrorCategory.USER_ACTIONABLE,
                ["Please provide a reason for working remotely today"],
                validation,
            )
        return None

    @staticmethod
    def _check_in_failure(
        message: str,
        category: ErrorCategory,
        recommendations: List[str],
        validation: ValidationResult = None,
    ) -> CheckInResult:
        return CheckInResult(
            success=False,
            message=message,
            validation=validation,
            recommendations=recommendations,
            error_category=category,
        )

    def _log_validation(self, employee_id: int, attendance_type: AttendanceType, validation: ValidationResult) -> None:
        logger.info(
            f"LOCATION: employee {employee_id} {attendance_type.value} "
            f"type={validation.validation_type.value} valid={validation.is_valid} "
            f"confidence={validation.confidence:.2f} distance={validation.distance_meters}m "
            f"accuracy={validation.accuracy_meters}m office={validation.office_name or '-'}"
        )
        self.store.append_activity_log(
            type="location_validation",
            title="Location Validation",
            description=(
                f"{attendance_type.value}: {validation.validation_type.value}, "
                f"{'accepted' if validation.is_valid else 'rejected'} at "
                f"{round(validation.confidence * 100)}% confidence, {round(validation.distance_meters)}m "
                f"(accuracy {round(validation.accuracy_meters)}m)"
            ),
            employee_id=employee_id,
            entity_type="employee",
            entity_id=employee_id,
        )

    # ── Check-out ────────────────────────────────────────────────────

    def check_out(self, request: CheckOutRequest) -> CheckOutResult:
        now = self.clock()

        try:
            record = self._current_record(request.employee_id, now)
            if record is None:
                return CheckOutResult(
                    success=False,
                    message="No check-in record found for today",
                    error_category=ErrorCategory.USER_ACTIONABLE,
                )
            if not record.is_open:
                return CheckOutResult(
                    success=False,
                    message="You have already checked out for today",
                    error_category=ErrorCategory.USER_ACTIONABLE,
                )

            employee = self.store.get_employee(record.employee_id)
            timing = self.time_service.get_department_timing(employee.department if employee else None)
            metrics = self.time_service.calculate(timing, record.check_in_time, now)

            if metrics.is_early_checkout and not timing.allow_early_check_out and not (request.reason or "").strip():
                return CheckOutResult(
                    success=False,
                    message=(
                        f"Checking out {metrics.early_checkout_minutes} minutes before "
                        f"{format_12h(metrics.expected_check_out)} requires a reason"
                    ),
                    is_early_checkout=True,
                    early_checkout_minutes=metrics.early_checkout_minutes,
                    error_category=ErrorCategory.USER_ACTIONABLE,
                )

            # Overtime is only ever recorded after an explicit opt-in
            overtime = round_hours(metrics.overtime_hours) if record.overtime_enabled else 0.0
            regular = round_hours(metrics.regular_hours)
            total = round_hours(metrics.total_hours)

            closed = self.store.close_attendance_record(
                record.id,
                check_out_time=now,
                check_out_latitude=request.coordinate.latitude if request.coordinate else None,
                check_out_longitude=request.coordinate.longitude if request.coordinate else None,
                check_out_reason=request.reason,
                is_early_checkout=metrics.is_early_checkout,
                early_checkout_minutes=metrics.early_checkout_minutes,
                total_hours=total,
                regular_working_hours=regular,
                overtime_hours=overtime,
                closure_reason=ClosureReason.MANUAL.value,
                auto_checkout_enabled=False,
                data_quality_flag=metrics.data_quality_flag,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"CHECK-OUT: persistence failure for employee {request.employee_id}: {e}", exc_info=True)
            return CheckOutResult(
                success=False,
                message="Failed to process check-out due to a system error",
                error_category=ErrorCategory.TRANSIENT,
            )

        if closed is None:
            # An auto-checkout landed between the read and the write
            return CheckOutResult(
                success=False,
                message="You have already checked out for today",
                error_category=ErrorCategory.USER_ACTIONABLE,
            )

        if self.scheduler is not None:
            self.scheduler.cancel(record.employee_id)

        if metrics.data_quality_flag:
            logger.warning(f"CHECK-OUT: record {record.id} flagged {metrics.data_quality_flag}")

        overtime_note = f", {overtime}h overtime" if overtime else ""
        self.store.append_activity_log(
            title="Check-out",
            description=f"Checked out at {format_12h(now)} - {regular}h regular{overtime_note}",
            employee_id=record.employee_id,
            entity_id=record.id,
        )
        logger.info(f"CHECK-OUT: employee {record.employee_id} record {record.id} ({total}h total{overtime_note})")

        return CheckOutResult(
            success=True,
            message=f"Checked out at {format_12h(now)} - {total:.1f} hours today{overtime_note}",
            regular_hours=regular,
            overtime_hours=overtime,
            total_hours=total,
            is_early_checkout=metrics.is_early_checkout,
            early_checkout_minutes=metrics.early_checkout_minutes,
            data_quality_flag=metrics.data_quality_flag,
        )

    # ── Overtime ─────────────────────────────────────────────────────

    def enable_overtime(self, employee_id: int) -> OvertimeResult:
        now = self.clock()

        try:
            record = self._current_record(employee_id, now)
            if record is None:
                return OvertimeResult(
                    success=False,
                    message="No check-in record found for today",
                    error_category=ErrorCategory.USER_ACTIONABLE,
                )
            if not record.is_open:
                return OvertimeResult(
                    success=False,
                    message="You have already checked out for today",
                    error_category=ErrorCategory.USER_ACTIONABLE,
                )
            if record.overtime_pending:
                return OvertimeResult(
                    success=False,
                    message="Overtime already requested for today",
                    error_category=ErrorCategory.USER_ACTIONABLE,
                )

            expected_out = record.expected_check_out
            if expected_out is None:
                employee = self.store.get_employee(employee_id)
                expected_out = self.time_service.expected_check_out(
                    employee.department if employee else None, on=record.check_in_time,
                )

            if now < expected_out:
                return OvertimeResult(
                    success=False,
                    message=f"Overtime can only be requested after {format_12h(expected_out)}",
                    error_category=ErrorCategory.USER_ACTIONABLE,
                )

            cleanup_at = daily_cleanup_at(cleanup_day(record))
            updated = self.store.update_open_attendance_record(
                record.id,
                overtime_enabled=True,
                overtime_requested_at=now,
                overtime_status=OvertimeStatus.PENDING.value,
                auto_checkout_time=cleanup_at,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"OVERTIME: persistence failure for employee {employee_id}: {e}", exc_info=True)
            return OvertimeResult(
                success=False,
                message="Failed to request overtime due to a system error",
                error_category=ErrorCategory.TRANSIENT,
            )

        if updated is None:
            # Checked out between the read and the write
            return OvertimeResult(
                success=False,
                message="You have already checked out for today",
                error_category=ErrorCategory.USER_ACTIONABLE,
            )

        if self.scheduler is not None:
            self.scheduler.arm_overtime(employee_id, record.id, cleanup_at.date())

        self.store.append_activity_log(
            title="Overtime Requested",
            description=f"Overtime requested starting from {format_12h(expected_out)}",
            employee_id=employee_id,
            entity_id=record.id,
        )
        logger.info(f"OVERTIME: enabled for employee {employee_id}, auto-checkout moved to {cleanup_at}")

        return OvertimeResult(
            success=True,
            message=f"Overtime request submitted. Auto-checkout moved to {format_12h(cleanup_at)}",
            auto_checkout_at=cleanup_at,
        )

    # ── Sweep / status ───────────────────────────────────────────────

    def run_sweep_now(self) -> SweepResult:
        if self.scheduler is None:
            raise RuntimeError("Auto-checkout scheduler is not configured")
        return self.scheduler.daily_sweep(self.clock())

    def get_today_status(self, employee_id: int) -> AttendanceStatusOut:
        now = self.clock()
        record: Optional[AttendanceRecord] = self._current_record(employee_id, now)
        if record is None:
            return AttendanceStatusOut(status="not_checked_in")

        status = AttendanceStatusOut(
            status="checked_in" if record.is_open else "checked_out",
            record_id=record.id,
            attendance_type=record.attendance_type,
            check_in_time=record.check_in_time,
            check_out_time=record.check_out_time,
            is_late=record.is_late,
            late_minutes=record.late_minutes,
            overtime_status=record.overtime_status,
            auto_checkout_time=record.auto_checkout_time,
        )
        if record.is_open:
            status.hours_elapsed = round_hours(max(0.0, hours_between(record.check_in_time, now)))
        else:
            status.regular_working_hours = record.regular_working_hours
            status.overtime_hours = record.overtime_hours
            status.closure_reason = record.closure_reason
        return status

    def _current_record(self, employee_id: int, now: datetime) -> Optional[AttendanceRecord]:
        """Today's record, or last night's overnight shift while it is still open."""
        record = self.store.get_attendance_record(employee_id, now.date())
        if record is not None:
            return record
        previous = self.store.get_attendance_record(employee_id, now.date() - timedelta(days=1))
        if previous is not None and previous.is_open and cleanup_day(previous) > previous.work_date:
            return previous
        return None

    def _arm(self, employee_id: int, record_id: int, expected_check_out: datetime) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.arm(employee_id, record_id, expected_check_out)
        except Exception as e:
            # The record carries its deadline; the safety sweep still closes it
            logger.error(f"AUTO-CHECKOUT: could not arm timer for employee {employee_id}: {e}", exc_info=True)
