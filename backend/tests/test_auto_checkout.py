from datetime import datetime, time, timedelta

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from attendance_engine.models import ClosureReason, Employee
from attendance_engine.services.auto_checkout import DAILY_CLEANUP_JOB_ID, SAFETY_SWEEP_JOB_ID
from attendance_engine.services.storage import AttendanceStore

from conftest import WORK_DAY, at, reload


def test_arm_schedules_two_hours_after_checkout(scheduler, employee, make_record, clock):
    record = make_record()
    fire_at = scheduler.arm(employee.id, record.id, time(18, 0))

    assert fire_at == at(20, 0)
    entry = scheduler.entry_for(employee.id)
    assert entry.attendance_record_id == record.id
    assert entry.reason == ClosureReason.AUTO_TWO_HOUR
    assert scheduler.scheduler.get_job(f"auto-checkout-{employee.id}") is not None


def test_arm_accepts_expected_checkout_instant(scheduler, employee, make_record):
    record = make_record()
    assert scheduler.arm(employee.id, record.id, at(18, 0)) == at(20, 0)


def test_rearm_replaces_previous_timer(scheduler, employee, make_record):
    record = make_record()
    scheduler.arm(employee.id, record.id, time(18, 0))
    scheduler.arm(employee.id, record.id, time(19, 0))

    assert scheduler.status().pending_timers == 1
    assert scheduler.entry_for(employee.id).fire_at == at(21, 0)


def test_arm_in_the_past_is_not_scheduled(scheduler, employee, make_record, clock):
    record = make_record()
    clock.set(20, 30)
    assert scheduler.arm(employee.id, record.id, time(18, 0)) is None
    assert scheduler.entry_for(employee.id) is None


def test_cancel_unknown_employee_is_noop(scheduler):
    assert scheduler.cancel(424242) is False


def test_arm_overtime_moves_timer_to_end_of_day(scheduler, employee, make_record, clock):
    record = make_record()
    scheduler.arm(employee.id, record.id, time(18, 0))
    clock.set(18, 5)

    fire_at = scheduler.arm_overtime(employee.id, record.id)

    assert fire_at == at(23, 55)
    entry = scheduler.entry_for(employee.id)
    assert entry.reason == ClosureReason.AUTO_DAILY_CLEANUP
    assert entry.fire_at == at(23, 55)


def test_fire_closes_at_expected_checkout(db, scheduler, employee, make_record, clock):
    record = make_record()
    scheduler.arm(employee.id, record.id, time(18, 0))
    clock.set(20, 0)

    scheduler.fire(employee.id, record.id, ClosureReason.AUTO_TWO_HOUR.value)

    closed = reload(db, record.id)
    assert closed.check_out_time == at(18, 0)
    assert closed.regular_working_hours == pytest.approx(9.0)
    assert closed.overtime_hours == 0
    assert closed.closure_reason == "auto_two_hour"
    assert closed.auto_checked_out_at == at(20, 0)
    assert not closed.auto_checkout_enabled
    assert scheduler.entry_for(employee.id) is None


def test_fire_never_grants_overtime_even_when_enabled(db, scheduler, employee, make_record, clock):
    record = make_record(
        overtime_enabled=True,
        overtime_status="pending",
        auto_checkout_time=at(23, 55),
    )
    clock.set(23, 55)

    scheduler.fire(employee.id, record.id, ClosureReason.AUTO_DAILY_CLEANUP.value)

    closed = reload(db, record.id)
    assert closed.overtime_hours == 0
    assert closed.regular_working_hours == pytest.approx(9.0)
    assert closed.closure_reason == "auto_daily_cleanup"


def test_fire_on_closed_record_is_noop(db, scheduler, employee, make_record, clock):
    record = make_record()
    AttendanceStore(db).close_attendance_record(
        record.id,
        check_out_time=at(17, 30),
        regular_working_hours=8.5,
        overtime_hours=0,
        closure_reason="manual",
    )
    clock.set(20, 0)

    assert scheduler.fire(employee.id, record.id, "auto_two_hour") is None

    closed = reload(db, record.id)
    assert closed.closure_reason == "manual"
    assert closed.check_out_time == at(17, 30)
    assert closed.auto_checked_out_at is None


def test_manual_and_auto_closure_race_yields_one_closure(db, scheduler, employee, make_record, clock):
    record = make_record()
    clock.set(20, 0)
    store = AttendanceStore(db)

    first = store.close_attendance_record(record.id, check_out_time=at(19, 59), closure_reason="manual")
    second = store.close_attendance_record(record.id, check_out_time=at(18, 0), closure_reason="auto_two_hour")

    assert first is not None
    assert second is None
    assert reload(db, record.id).closure_reason == "manual"


def test_open_only_update_leaves_closed_record_alone(db, make_record):
    record = make_record()
    store = AttendanceStore(db)

    assert store.update_open_attendance_record(record.id, remarks="Client visit").remarks == "Client visit"
    store.close_attendance_record(record.id, check_out_time=at(18, 0), closure_reason="manual")

    assert store.update_open_attendance_record(record.id, overtime_status="pending") is None
    assert reload(db, record.id).overtime_status == "not_requested"

    corrected = store.update_attendance_record(record.id, remarks="Corrected by admin")
    assert corrected.remarks == "Corrected by admin"
    with pytest.raises(LookupError):
        store.update_attendance_record(424242, remarks="missing")


def test_two_hour_fire_skips_when_overtime_is_pending(db, scheduler, employee, make_record, clock):
    record = make_record(overtime_enabled=True, overtime_status="pending")
    clock.set(20, 0)

    scheduler.fire(employee.id, record.id, "auto_two_hour")

    assert reload(db, record.id).is_open


def test_stale_two_hour_fire_keeps_overtime_timer(db, scheduler, employee, make_record, clock):
    record = make_record(overtime_enabled=True, overtime_status="pending")
    clock.set(18, 5)
    scheduler.arm_overtime(employee.id, record.id)
    clock.set(20, 0)

    scheduler.fire(employee.id, record.id, "auto_two_hour")

    entry = scheduler.entry_for(employee.id)
    assert entry.reason == ClosureReason.AUTO_DAILY_CLEANUP
    assert entry.fire_at == at(23, 55)


# ── Sweeps ───────────────────────────────────────────────────────────

def test_sweep_closes_forgotten_checkout(db, scheduler, employee, make_record, timing, clock):
    record = make_record()
    clock.set(20, 0)

    result = scheduler.daily_sweep()

    assert result.processed_count == 1
    assert result.details[0].reason == "auto_two_hour"
    closed = reload(db, record.id)
    assert closed.regular_working_hours == pytest.approx(9.0)
    assert closed.overtime_hours == 0
    assert closed.closure_reason == "auto_two_hour"


def test_sweep_leaves_records_before_their_deadline(db, scheduler, make_record, clock):
    record = make_record()
    clock.set(19, 45)

    result = scheduler.daily_sweep()

    assert result.processed_count == 0
    assert result.skipped_count == 1
    assert reload(db, record.id).is_open


def test_sweep_waits_for_end_of_day_when_overtime_pending(db, scheduler, make_record, clock):
    record = make_record(
        overtime_enabled=True,
        overtime_status="pending",
        auto_checkout_time=at(23, 55),
    )

    clock.set(22, 0)
    assert scheduler.daily_sweep().processed_count == 0
    assert reload(db, record.id).is_open

    clock.set(23, 55)
    result = scheduler.daily_sweep()
    assert result.processed_count == 1
    closed = reload(db, record.id)
    assert closed.closure_reason == "auto_daily_cleanup"
    assert closed.overtime_hours == 0


def test_sweep_closes_stale_records_from_previous_days(db, scheduler, make_record, clock):
    record = make_record(auto_checkout_time=None)
    clock.now = at(8, 0, WORK_DAY + timedelta(days=1))

    result = scheduler.daily_sweep()

    assert result.processed_count == 1
    closed = reload(db, record.id)
    assert closed.closure_reason == "auto_daily_cleanup"
    assert closed.check_out_time == at(18, 0)


def test_sweep_counts_failures_and_continues(db, scheduler, employee, make_record, clock, monkeypatch):
    colleague = Employee(full_name="Arun Kumar", department="Engineering", is_active=True)
    db.add(colleague)
    db.commit()
    broken_id = make_record().id
    healthy_id = make_record(employee_id=colleague.id).id
    clock.set(20, 0)

    original_close = scheduler._close

    def flaky_close(store, record, reason, now):
        if record.id == broken_id:
            raise RuntimeError("disk full")
        return original_close(store, record, reason, now)

    monkeypatch.setattr(scheduler, "_close", flaky_close)
    result = scheduler.daily_sweep()

    assert result.failed_count == 1
    assert result.processed_count == 1
    assert reload(db, broken_id).is_open
    assert not reload(db, healthy_id).is_open


# ── Lifecycle ────────────────────────────────────────────────────────

def test_resume_on_start_rearms_only_unelapsed_deadlines(db, scheduler, employee, make_record, clock):
    make_record()
    clock.set(12, 0)

    assert scheduler.resume_on_start() == 1
    entry = scheduler.entry_for(employee.id)
    assert entry.fire_at == at(20, 0)
    assert entry.reason == ClosureReason.AUTO_TWO_HOUR

    scheduler.shutdown()
    clock.set(20, 30)
    assert scheduler.resume_on_start() == 0


def test_resume_on_start_keeps_overtime_path(db, scheduler, employee, make_record, clock):
    make_record(overtime_enabled=True, overtime_status="pending", auto_checkout_time=at(23, 55))
    clock.set(18, 30)

    scheduler.resume_on_start()

    assert scheduler.entry_for(employee.id).reason == ClosureReason.AUTO_DAILY_CLEANUP


def test_shutdown_drops_pending_timers(scheduler, employee, make_record):
    record = make_record()
    scheduler.arm(employee.id, record.id, time(18, 0))

    scheduler.shutdown()

    status = scheduler.status()
    assert status.pending_timers == 0
    assert not status.is_running


def test_auto_closure_after_late_evening_check_in_is_flagged(db, scheduler, make_record, clock):
    record = make_record(check_in=at(19, 0), auto_checkout_time=at(20, 0))
    clock.set(23, 55)

    scheduler.daily_sweep()

    closed = reload(db, record.id)
    assert closed.check_out_time == at(19, 0)
    assert closed.regular_working_hours == 0
    assert closed.data_quality_flag == "checkout_before_checkin"


# ── Overnight shifts ─────────────────────────────────────────────────

def overnight_record(make_record):
    next_day = WORK_DAY + timedelta(days=1)
    return make_record(
        check_in=at(22, 0),
        expected_check_in=at(22, 0),
        expected_check_out=at(6, 0, next_day),
        auto_checkout_time=at(8, 0, next_day),
    )


def test_sweep_leaves_overnight_shift_open_past_midnight(db, scheduler, make_record, clock):
    record = overnight_record(make_record)
    next_day = WORK_DAY + timedelta(days=1)

    assert scheduler.daily_sweep(at(23, 55)).processed_count == 0
    assert reload(db, record.id).is_open

    result = scheduler.daily_sweep(at(8, 0, next_day))

    assert result.processed_count == 1
    closed = reload(db, record.id)
    assert closed.closure_reason == "auto_two_hour"
    assert closed.check_out_time == at(6, 0, next_day)
    assert closed.regular_working_hours == pytest.approx(8.0)


def test_resume_after_midnight_rearms_overnight_shift(db, scheduler, employee, make_record, clock):
    record = overnight_record(make_record)
    clock.set(1, 0, WORK_DAY + timedelta(days=1))

    assert scheduler.resume_on_start() == 1
    entry = scheduler.entry_for(employee.id)
    assert entry.attendance_record_id == record.id
    assert entry.fire_at == at(8, 0, WORK_DAY + timedelta(days=1))


# ── Running scheduler ────────────────────────────────────────────────

def test_start_registers_daily_cleanup_and_safety_sweep(scheduler):
    scheduler.start()

    cleanup = scheduler.scheduler.get_job(DAILY_CLEANUP_JOB_ID)
    assert isinstance(cleanup.trigger, CronTrigger)
    fields = {f.name: str(f) for f in cleanup.trigger.fields}
    assert fields["hour"] == "23"
    assert fields["minute"] == "55"

    sweep = scheduler.scheduler.get_job(SAFETY_SWEEP_JOB_ID)
    assert isinstance(sweep.trigger, IntervalTrigger)
    assert sweep.trigger.interval == timedelta(minutes=15)

    status = scheduler.status()
    assert status.is_running
    assert status.next_sweep_at is not None


def test_start_resumes_pending_timers(db, scheduler, employee, make_record, clock):
    # Real wall-clock deadline so the started scheduler keeps the job pending
    clock.now = datetime.now().replace(microsecond=0)
    deadline = clock.now + timedelta(days=1)
    record = make_record(auto_checkout_time=deadline)

    scheduler.start()

    entry = scheduler.entry_for(employee.id)
    assert entry.attendance_record_id == record.id
    assert entry.fire_at == deadline
    assert scheduler.scheduler.get_job(f"auto-checkout-{employee.id}") is not None


def test_armed_timer_calls_fire_for_its_record(db, scheduler, employee, make_record, clock):
    record = make_record()
    scheduler.arm(employee.id, record.id, time(18, 0))

    job = scheduler.scheduler.get_job(f"auto-checkout-{employee.id}")
    assert job.func == scheduler.fire
    assert tuple(job.args) == (employee.id, record.id, "auto_two_hour")

    clock.set(20, 0)
    job.func(*job.args)

    assert reload(db, record.id).closure_reason == "auto_two_hour"
    assert scheduler.entry_for(employee.id) is None
