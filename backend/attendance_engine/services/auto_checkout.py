"""Auto-checkout scheduler.

Closes attendance records for employees who forget to check out:
  - 2 hours after the department checkout time (default path)
  - 23:55 local time once overtime has been requested, and as a daily
    cleanup for anything still open
  - every 15 minutes a safety-net sweep closes any open record whose
    deadline has already passed (covers restarts between timers)

Timers live only in memory, one per employee. The durable trace of a timer
is the record's ``auto_checkout_enabled`` / ``auto_checkout_time`` pair, which
``resume_on_start`` uses to rebuild them after a restart.

Automatic closures never grant overtime: hours are counted up to the
expected checkout time and ``overtime_hours`` is always 0.
"""
import logging
import threading
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Optional, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from attendance_engine.core.clock import (
    at_wall_clock, format_12h, local_now, office_timezone, parse_wall_clock,
)
from attendance_engine.core.config import settings
from attendance_engine.models.attendance import AttendanceRecord, ClosureReason
from attendance_engine.schemas.attendance import SchedulerStatus, SweepRecordDetail, SweepResult
from attendance_engine.services.storage import AttendanceStore
from attendance_engine.services.time_accounting import (
    DepartmentTimingCache, TimeAccountingService, round_hours,
)

logger = logging.getLogger(__name__)

DAILY_CLEANUP_JOB_ID = "attendance-daily-cleanup"
SAFETY_SWEEP_JOB_ID = "attendance-safety-sweep"


class SchedulerEntry(BaseModel):
    employee_id: int
    attendance_record_id: int
    fire_at: datetime
    reason: ClosureReason


def auto_checkout_deadline(expected_check_out: datetime) -> datetime:
    """When the 2-hour path fires for a given expected checkout instant."""
    return expected_check_out + timedelta(hours=settings.AUTO_CHECKOUT_GRACE_HOURS)


def daily_cleanup_at(day: date) -> datetime:
    return at_wall_clock(day, parse_wall_clock(settings.DAILY_CLEANUP_TIME))


def cleanup_day(record: AttendanceRecord) -> date:
    """The day whose end-of-day cleanup applies to a record.

    An overnight shift belongs to the day it ends on, so it is not cut off at
    the cleanup time of the evening it started.
    """
    expected = record.expected_check_out
    if expected is not None and expected.date() > record.work_date:
        return expected.date()
    return record.work_date


class AutoCheckoutScheduler:

    def __init__(
        self,
        session_factory: Callable,
        clock: Callable[[], datetime] = local_now,
        scheduler: BackgroundScheduler = None,
        timing_cache: DepartmentTimingCache = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.scheduler = scheduler or BackgroundScheduler(timezone=office_timezone())
        self.timing_cache = timing_cache
        self.sweep_interval_minutes = settings.SWEEP_INTERVAL_MINUTES
        self._entries: Dict[int, SchedulerEntry] = {}
        self._lock = threading.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background scheduler, register the sweeps and rebuild timers."""
        if self.scheduler.running:
            logger.info("Auto-checkout scheduler already running")
            return

        cleanup = parse_wall_clock(settings.DAILY_CLEANUP_TIME)
        self.scheduler.add_job(
            self.daily_sweep,
            "cron",
            hour=cleanup.hour,
            minute=cleanup.minute,
            id=DAILY_CLEANUP_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.daily_sweep,
            "interval",
            minutes=self.sweep_interval_minutes,
            id=SAFETY_SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
        )
        self.scheduler.start()
        resumed = self.resume_on_start()

        logger.info("Auto-checkout scheduler started")
        logger.info(f"   - Daily cleanup at {format_12h(cleanup)}")
        logger.info(f"   - Safety-net sweep every {self.sweep_interval_minutes} minutes")
        logger.info(f"   - {resumed} pending auto-checkouts resumed")

    def shutdown(self) -> None:
        """Stop the scheduler. Pending timers are dropped without firing."""
        with self._lock:
            employee_ids = list(self._entries)
        for employee_id in employee_ids:
            self.cancel(employee_id)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        dropped = len(employee_ids)
        logger.info(f"Auto-checkout scheduler stopped ({dropped} pending timers dropped)")

    def resume_on_start(self) -> int:
        """Re-arm timers for open records whose deadline has not passed yet.

        Earlier days are included so an overnight shift started before a
        restart past midnight keeps its morning deadline.
        """
        now = self.clock()
        resumed = 0
        db = self.session_factory()
        try:
            store = AttendanceStore(db)
            for record in store.list_open_attendance_records():
                if not record.auto_checkout_enabled or not record.auto_checkout_time:
                    continue
                if record.auto_checkout_time <= now:
                    continue  # already due, the next sweep closes it
                reason = ClosureReason.AUTO_DAILY_CLEANUP if record.overtime_pending else ClosureReason.AUTO_TWO_HOUR
                self._schedule(record.employee_id, record.id, record.auto_checkout_time, reason)
                resumed += 1
        except SQLAlchemyError as e:
            logger.error(f"AUTO-CHECKOUT: resume failed: {e}", exc_info=True)
        finally:
            db.close()
        return resumed

    # ── Timers ───────────────────────────────────────────────────────

    def arm(
        self,
        employee_id: int,
        attendance_record_id: int,
        checkout: Union[time, datetime],
        on_date: date = None,
    ) -> Optional[datetime]:
        """Schedule the 2-hour auto-checkout, replacing any existing timer.

        ``checkout`` is either the department checkout wall-clock time (on
        ``on_date``, today by default) or an explicit expected-checkout
        instant. Returns the fire time, or None when it has already passed.
        """
        now = self.clock()
        if isinstance(checkout, datetime):
            expected = checkout
        else:
            expected = at_wall_clock(on_date or now.date(), checkout)
        fire_at = auto_checkout_deadline(expected)

        self.cancel(employee_id)
        if fire_at <= now:
            logger.info(
                f"AUTO-CHECKOUT: deadline {fire_at} for employee {employee_id} already passed, "
                f"leaving it to the sweep"
            )
            return None

        self._schedule(employee_id, attendance_record_id, fire_at, ClosureReason.AUTO_TWO_HOUR)
        return fire_at

    def arm_overtime(self, employee_id: int, attendance_record_id: int, on_date: date = None) -> Optional[datetime]:
        """Swap the 2-hour timer for the 23:55 end-of-day timer."""
        now = self.clock()
        fire_at = daily_cleanup_at(on_date or now.date())

        self.cancel(employee_id)
        if fire_at <= now:
            return None

        self._schedule(employee_id, attendance_record_id, fire_at, ClosureReason.AUTO_DAILY_CLEANUP)
        logger.info(f"AUTO-CHECKOUT: overtime active for employee {employee_id}, re-armed for {fire_at}")
        return fire_at

    def cancel(self, employee_id: int) -> bool:
        with self._lock:
            entry = self._entries.pop(employee_id, None)
        try:
            self.scheduler.remove_job(self._job_id(employee_id))
        except JobLookupError:
            pass
        if entry:
            logger.info(f"AUTO-CHECKOUT: cancelled for employee {employee_id}")
        return entry is not None

    def entry_for(self, employee_id: int) -> Optional[SchedulerEntry]:
        with self._lock:
            return self._entries.get(employee_id)

    def _schedule(self, employee_id: int, record_id: int, fire_at: datetime, reason: ClosureReason) -> None:
        self.scheduler.add_job(
            self.fire,
            "date",
            run_date=fire_at,
            args=[employee_id, record_id, reason.value],
            id=self._job_id(employee_id),
            replace_existing=True,
            misfire_grace_time=None,
        )
        with self._lock:
            self._entries[employee_id] = SchedulerEntry(
                employee_id=employee_id,
                attendance_record_id=record_id,
                fire_at=fire_at,
                reason=reason,
            )
        logger.info(f"AUTO-CHECKOUT: scheduled for employee {employee_id} at {fire_at} ({reason.value})")

    def _forget(self, employee_id: int, record_id: int, reason: Optional[ClosureReason] = None) -> None:
        """Drop the timer for a record that is now closed."""
        with self._lock:
            entry = self._entries.get(employee_id)
            if entry is None or entry.attendance_record_id != record_id:
                return
            if reason is not None and entry.reason != reason:
                return
            del self._entries[employee_id]
        try:
            self.scheduler.remove_job(self._job_id(employee_id))
        except JobLookupError:
            pass

    @staticmethod
    def _job_id(employee_id: int) -> str:
        return f"auto-checkout-{employee_id}"

    # ── Firing ───────────────────────────────────────────────────────

    def fire(self, employee_id: int, attendance_record_id: int, reason) -> Optional[AttendanceRecord]:
        """Timer callback: close the record unless someone already did."""
        reason = ClosureReason(reason)
        logger.info(f"AUTO-CHECKOUT: executing for employee {employee_id}, reason: {reason.value}")

        db = self.session_factory()
        try:
            store = AttendanceStore(db)
            record = store.get_attendance_record_by_id(attendance_record_id)
            if record is None or not record.is_open:
                logger.info(f"AUTO-CHECKOUT: skipped for employee {employee_id} - already checked out or not found")
                return None
            if reason == ClosureReason.AUTO_TWO_HOUR and record.overtime_pending:
                logger.info(f"AUTO-CHECKOUT: skipped for employee {employee_id} - overtime active")
                return None
            return self._close(store, record, reason, self.clock())
        except Exception as e:
            db.rollback()
            logger.error(
                f"AUTO-CHECKOUT: error for employee {employee_id}, record stays open for the next sweep: {e}",
                exc_info=True,
            )
            return None
        finally:
            self._forget(employee_id, attendance_record_id, reason)
            db.close()

    def _close(
        self,
        store: AttendanceStore,
        record: AttendanceRecord,
        reason: ClosureReason,
        now: datetime,
    ) -> Optional[AttendanceRecord]:
        employee = store.get_employee(record.employee_id)
        department = employee.department if employee else None
        time_service = TimeAccountingService(store, cache=self.timing_cache, clock=self.clock)
        timing = time_service.get_department_timing(department)

        expected_out = record.expected_check_out or time_service.calculate(timing, record.check_in_time).expected_check_out
        effective_out = min(now, expected_out)
        metrics = time_service.calculate(timing, record.check_in_time, effective_out)
        if effective_out < record.check_in_time:
            # Checked in after the expected checkout; metrics carry the flag
            effective_out = record.check_in_time

        # Everything up to the expected checkout counts as regular time
        regular = round_hours(metrics.total_hours)
        closed = store.close_attendance_record(
            record.id,
            check_out_time=effective_out,
            total_hours=regular,
            regular_working_hours=regular,
            overtime_hours=0.0,
            closure_reason=reason.value,
            auto_checked_out_at=now,
            auto_checkout_enabled=False,
            data_quality_flag=metrics.data_quality_flag,
        )
        if closed is None:
            logger.info(f"AUTO-CHECKOUT: record {record.id} closed concurrently, nothing written")
            return None

        if reason == ClosureReason.AUTO_TWO_HOUR:
            description = f"Automatically checked out 2 hours after {format_12h(expected_out)}"
        else:
            description = f"Automatically checked out by the {settings.DAILY_CLEANUP_TIME} daily cleanup"
        store.append_activity_log(
            title="Auto Checkout",
            description=f"{description}. Working hours counted until {format_12h(expected_out)} ({regular}h)",
            employee_id=record.employee_id,
            entity_id=record.id,
        )
        logger.info(f"AUTO-CHECKOUT: completed for employee {record.employee_id} ({regular}h regular)")
        return closed

    # ── Sweeps ───────────────────────────────────────────────────────

    @staticmethod
    def sweep_reason(record: AttendanceRecord, now: datetime) -> Optional[ClosureReason]:
        """Why an open record is due for closure at ``now``, or None if it is not."""
        cleanup_at = daily_cleanup_at(cleanup_day(record))
        if record.overtime_pending:
            return ClosureReason.AUTO_DAILY_CLEANUP if now >= cleanup_at else None
        if record.auto_checkout_enabled and record.auto_checkout_time and now >= record.auto_checkout_time:
            return ClosureReason.AUTO_TWO_HOUR
        if now >= cleanup_at:
            return ClosureReason.AUTO_DAILY_CLEANUP
        return None

    def daily_sweep(self, now: datetime = None) -> SweepResult:
        """Close every open record whose deadline has passed.

        One record failing does not stop the others; it stays open and is
        retried on the next pass.
        """
        now = now or self.clock()
        result = SweepResult(ran_at=now)

        db = self.session_factory()
        try:
            store = AttendanceStore(db)
            try:
                records = store.list_open_attendance_records()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"AUTO-CHECKOUT: sweep could not list open records: {e}", exc_info=True)
                return result

            for record in records:
                record_id, employee_id = record.id, record.employee_id
                reason = self.sweep_reason(record, now)
                if reason is None:
                    result.skipped_count += 1
                    continue

                try:
                    closed = self._close(store, record, reason, now)
                except Exception as e:
                    db.rollback()
                    result.failed_count += 1
                    result.details.append(SweepRecordDetail(
                        record_id=record_id, employee_id=employee_id, outcome="failed", reason=str(e)[:200],
                    ))
                    logger.error(f"AUTO-CHECKOUT: sweep failed for record {record_id}: {e}", exc_info=True)
                    continue

                self._forget(employee_id, record_id)
                if closed is None:
                    result.skipped_count += 1
                    continue

                result.processed_count += 1
                result.details.append(SweepRecordDetail(
                    record_id=record_id,
                    employee_id=employee_id,
                    outcome="closed",
                    reason=reason.value,
                    regular_hours=closed.regular_working_hours,
                ))
        finally:
            db.close()

        if result.processed_count or result.failed_count:
            logger.info(
                f"AUTO-CHECKOUT: sweep closed {result.processed_count}, "
                f"failed {result.failed_count}, skipped {result.skipped_count}"
            )
        return result

    # ── Introspection ────────────────────────────────────────────────

    def status(self) -> SchedulerStatus:
        next_sweep = None
        if self.scheduler.running:
            runs = [
                job.next_run_time
                for job in (self.scheduler.get_job(DAILY_CLEANUP_JOB_ID), self.scheduler.get_job(SAFETY_SWEEP_JOB_ID))
                if job is not None and job.next_run_time is not None
            ]
            if runs:
                next_sweep = min(runs).replace(tzinfo=None)

        with self._lock:
            entries = [entry.model_dump(mode="json") for entry in self._entries.values()]
        return SchedulerStatus(
            is_running=self.scheduler.running,
            pending_timers=len(entries),
            next_sweep_at=next_sweep,
            entries=entries,
        )
