from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime, time

from attendance_engine.core.clock import parse_wall_clock


class DepartmentTimingConfig(BaseModel):
    """Resolved schedule for a department.

    ``used_default`` is True when no configured record existed and the
    built-in 09:00-18:00 schedule was substituted.
    """
    department: str
    check_in_time: time
    check_out_time: time
    working_hours: float = 8.0
    late_threshold_minutes: int = 15
    is_flexible_timing: bool = False
    allow_early_check_out: bool = False
    used_default: bool = False


class TimeMetrics(BaseModel):
    """Lateness, earliness and the hours split for one attendance day.

    Hour figures are kept at full precision; round them with
    ``round_hours`` where they are persisted.
    """
    expected_check_in: datetime
    expected_check_out: datetime
    is_late: bool = False
    late_minutes: int = 0
    is_early_arrival: bool = False
    early_arrival_minutes: int = 0
    is_early_checkout: bool = False
    early_checkout_minutes: int = 0
    total_hours: float = 0.0
    regular_hours: float = 0.0
    overtime_hours: float = 0.0
    data_quality_flag: Optional[str] = None
    used_default_timing: bool = False


class DepartmentTimingUpdate(BaseModel):
    check_in_time: time
    check_out_time: time
    working_hours: Optional[float] = Field(None, gt=0, le=24)
    late_threshold_minutes: int = Field(15, ge=0)
    is_flexible_timing: bool = False
    allow_early_check_out: bool = False

    @field_validator("check_in_time", "check_out_time", mode="before")
    @classmethod
    def _parse_wall_clock(cls, value):
        return parse_wall_clock(value)
