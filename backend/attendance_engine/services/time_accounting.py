"""Department-aware time accounting: lateness, earliness, regular vs. overtime.

Overtime rule: overtime = max(0, total worked - department working hours);
regular = total - overtime. Expected check-in/out are the check-in day
combined with the department's wall-clock times.

Department timings are cached per department (lower-cased) for
TIMING_CACHE_TTL_SECONDS and dropped explicitly whenever a timing is written.
"""
import logging
import threading
import time as monotonic_time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from attendance_engine.core.clock import at_wall_clock, hours_between, local_now, parse_wall_clock
from attendance_engine.core.config import settings
from attendance_engine.schemas.timing import DepartmentTimingConfig, DepartmentTimingUpdate, TimeMetrics
from attendance_engine.services.storage import AttendanceStore, department_key

logger = logging.getLogger(__name__)

CHECKOUT_BEFORE_CHECKIN = "checkout_before_checkin"


def round_hours(value: float) -> float:
    return round(value, 2)


def default_timing(department: Optional[str]) -> DepartmentTimingConfig:
    return DepartmentTimingConfig(
        department=department_key(department) or "default",
        check_in_time=parse_wall_clock(settings.DEFAULT_CHECK_IN_TIME),
        check_out_time=parse_wall_clock(settings.DEFAULT_CHECK_OUT_TIME),
        working_hours=settings.DEFAULT_WORKING_HOURS,
        late_threshold_minutes=15,
        used_default=True,
    )


class DepartmentTimingCache:
    """Process-wide TTL cache of resolved department timings."""

    def __init__(self, ttl_seconds: float = None, timer: Callable[[], float] = monotonic_time.monotonic):
        self.ttl_seconds = settings.TIMING_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._timer = timer
        self._entries: Dict[str, Tuple[DepartmentTimingConfig, float]] = {}
        self._lock = threading.Lock()

    def get(self, department: str) -> Optional[DepartmentTimingConfig]:
        key = department_key(department)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            timing, expires_at = entry
            if expires_at <= self._timer():
                del self._entries[key]
                return None
            return timing

    def put(self, department: str, timing: DepartmentTimingConfig) -> None:
        with self._lock:
            self._entries[department_key(department)] = (timing, self._timer() + self.ttl_seconds)

    def invalidate(self, department: str) -> None:
        with self._lock:
            self._entries.pop(department_key(department), None)
        logger.info(f"Invalidated timing cache for department: {department}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)


timing_cache = DepartmentTimingCache()


class TimeAccountingService:

    def __init__(
        self,
        store: AttendanceStore,
        cache: DepartmentTimingCache = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.store = store
        self.cache = cache if cache is not None else timing_cache
        self.clock = clock

    def get_department_timing(self, department: Optional[str]) -> DepartmentTimingConfig:
        """Cached timing for ``department``; the default schedule when none is configured."""
        if department:
            cached = self.cache.get(department)
            if cached is not None:
                return cached

            try:
                timing = self.store.get_department_timing(department)
            except SQLAlchemyError as e:
                self.store.db.rollback()
                logger.error(f"Department timing lookup failed for '{department}': {e}")
                timing = None

            if timing is not None:
                self.cache.put(department, timing)
                return timing

        logger.warning(f"No timing configured for department '{department}', using default schedule")
        return default_timing(department)

    @staticmethod
    def calculate(
        timing: DepartmentTimingConfig,
        check_in: datetime,
        check_out: Optional[datetime] = None,
    ) -> TimeMetrics:
        """Pure metrics computation for one attendance day."""
        day = check_in.date()
        expected_in = at_wall_clock(day, timing.check_in_time)
        expected_out = at_wall_clock(day, timing.check_out_time)
        if expected_out <= expected_in:
            # Overnight shift ends the next morning
            expected_out += timedelta(days=1)

        metrics = TimeMetrics(
            expected_check_in=expected_in,
            expected_check_out=expected_out,
            used_default_timing=timing.used_default,
        )

        if check_in > expected_in:
            metrics.is_late = True
            metrics.late_minutes = int((check_in - expected_in).total_seconds() // 60)
        elif check_in < expected_in:
            metrics.is_early_arrival = True
            metrics.early_arrival_minutes = int((expected_in - check_in).total_seconds() // 60)

        if check_out is None:
            return metrics

        total = hours_between(check_in, check_out)
        if total < 0:
            logger.warning(f"Checkout {check_out} precedes check-in {check_in}, clamping to zero hours")
            metrics.data_quality_flag = CHECKOUT_BEFORE_CHECKIN
            total = 0.0

        overtime = max(0.0, total - timing.working_hours)
        metrics.total_hours = total
        metrics.overtime_hours = overtime
        metrics.regular_hours = max(0.0, total - overtime)

        if check_out < expected_out:
            metrics.is_early_checkout = True
            metrics.early_checkout_minutes = int((expected_out - check_out).total_seconds() // 60)
        return metrics

    def compute_metrics(
        self,
        department: Optional[str],
        check_in: datetime,
        check_out: Optional[datetime] = None,
    ) -> TimeMetrics:
        timing = self.get_department_timing(department)
        return self.calculate(timing, check_in, check_out)

    def expected_check_out(self, department: Optional[str], on: datetime = None) -> datetime:
        """Today's (or ``on``'s) expected checkout instant for the department."""
        timing = self.get_department_timing(department)
        return self.calculate(timing, on or self.clock()).expected_check_out

    def update_department_timing(self, department: str, update: DepartmentTimingUpdate) -> DepartmentTimingConfig:
        working_hours = update.working_hours
        if working_hours is None:
            start = at_wall_clock(datetime.min.date(), update.check_in_time)
            end = at_wall_clock(datetime.min.date(), update.check_out_time)
            if end <= start:
                end += timedelta(days=1)
            working_hours = hours_between(start, end)

        timing = self.store.upsert_department_timing(
            department,
            check_in_time=update.check_in_time,
            check_out_time=update.check_out_time,
            working_hours=working_hours,
            late_threshold_minutes=update.late_threshold_minutes,
            is_flexible_timing=update.is_flexible_timing,
            allow_early_check_out=update.allow_early_check_out,
        )
        self.invalidate(department)
        logger.info(
            f"Department timing updated for {department}: "
            f"{update.check_in_time:%H:%M}-{update.check_out_time:%H:%M} ({working_hours:.2f}h)"
        )
        return timing

    def invalidate(self, department: str) -> None:
        self.cache.invalidate(department)
