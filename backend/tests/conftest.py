import os
from datetime import date, datetime, time, timedelta

import pytest

# Point the app at an in-memory database before anything imports settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SEED_DEFAULT_DEPARTMENTS", "true")

from attendance_engine import models  # noqa: E402,F401
from attendance_engine.core.database import Base, SessionLocal, engine  # noqa: E402
from attendance_engine.models import AttendanceRecord, DepartmentTiming, Employee, OfficeLocation  # noqa: E402
from attendance_engine.schemas.location import Coordinate  # noqa: E402
from attendance_engine.services.auto_checkout import AutoCheckoutScheduler  # noqa: E402
from attendance_engine.services.time_accounting import DepartmentTimingCache, timing_cache  # noqa: E402

OFFICE_LAT = 9.9668
OFFICE_LNG = 78.1338
METERS_PER_DEGREE_LAT = 111194.9266

WORK_DAY = date(2026, 3, 2)


def north_of_office(meters: float) -> Coordinate:
    """A coordinate ``meters`` due north of the test office."""
    return Coordinate(latitude=OFFICE_LAT + meters / METERS_PER_DEGREE_LAT, longitude=OFFICE_LNG)


def at(hour: int, minute: int = 0, day: date = WORK_DAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


class FixedClock:
    """Injectable clock; tests move it explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int = 0, day: date = WORK_DAY) -> datetime:
        self.now = at(hour, minute, day)
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    timing_cache.clear()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        timing_cache.clear()


@pytest.fixture()
def clock():
    return FixedClock(at(9, 0))


@pytest.fixture()
def cache():
    return DepartmentTimingCache()


@pytest.fixture()
def employee(db):
    emp = Employee(full_name="Priya Raman", department="Engineering", is_active=True)
    db.add(emp)
    db.commit()
    db.refresh(emp)
    return emp


@pytest.fixture()
def office(db):
    loc = OfficeLocation(name="Madurai HQ", latitude=OFFICE_LAT, longitude=OFFICE_LNG, radius_meters=100)
    db.add(loc)
    db.commit()
    db.refresh(loc)
    return loc


@pytest.fixture()
def timing(db):
    row = DepartmentTiming(
        department="engineering",
        check_in_time=time(9, 0),
        check_out_time=time(18, 0),
        working_hours=8,
        late_threshold_minutes=15,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture()
def scheduler(db, clock, cache):
    sched = AutoCheckoutScheduler(SessionLocal, clock=clock, timing_cache=cache)
    yield sched
    sched.shutdown()


@pytest.fixture()
def make_record(db, employee):
    """Insert an open attendance record the way a 09:00 check-in would."""

    def _make(check_in=None, employee_id=None, **fields):
        check_in = check_in or at(9, 0)
        day = check_in.date()
        values = dict(
            employee_id=employee_id or employee.id,
            work_date=day,
            attendance_type="office",
            status="present",
            check_in_time=check_in,
            expected_check_in=at(9, 0, day),
            expected_check_out=at(18, 0, day),
            auto_checkout_enabled=True,
            auto_checkout_time=at(20, 0, day),
            overtime_status="not_requested",
        )
        values.update(fields)
        record = AttendanceRecord(**values)
        db.add(record)
        db.commit()
        db.refresh(record)
        return record

    return _make


def reload(db, record_id: int) -> AttendanceRecord:
    db.expire_all()
    return db.query(AttendanceRecord).filter(AttendanceRecord.id == record_id).one()
