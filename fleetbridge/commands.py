"""
Outbound command strings understood by the robots.

  schedule_<HH>_<MM>_<Mon>_<Tue>_<Wed>_<Thu>_<Fri>_<Sat>_<Sun>_<Nun>
  set_time_<year>_<weekday>_<MM>_<DD>_<HH>_<mm>_<ss>

Day flags are 0/1. The trailing "Nun" flag is always 0 on the wire; an
all-zero schedule at 00:00 means "no schedule".
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

DAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
NO_SCHEDULE_DAY = "Nun"
DAY_FLAGS = DAYS + (NO_SCHEDULE_DAY,)

NO_SCHEDULE = "schedule_00_00_" + "_".join("0" * len(DAY_FLAGS))
STATUS_REQUEST = "status"


class CommandError(ValueError):
    """Raised for command arguments the robots cannot represent."""


@dataclass(frozen=True)
class Schedule:
    hour: int
    minute: int
    days: tuple = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not any(d in DAYS for d in self.days)

    def to_dict(self) -> dict:
        return {"hour": self.hour, "minute": self.minute, "days": list(self.days),
                "active": not self.is_empty}


def encode_schedule(days: Iterable[str], hour: int = 0, minute: int = 0) -> str:
    """Build the schedule command. Selecting "Nun" (or no day) clears it."""
    days = list(days)
    unknown = [d for d in days if d not in DAY_FLAGS]
    if unknown:
        raise CommandError(f"Unknown day(s): {', '.join(unknown)}")
    if NO_SCHEDULE_DAY in days or not days:
        return NO_SCHEDULE
    if not 0 <= int(hour) <= 23:
        raise CommandError("hour must be 0-23")
    if not 0 <= int(minute) <= 59:
        raise CommandError("minute must be 0-59")
    flags = ["1" if d in days else "0" for d in DAYS] + ["0"]
    return "schedule_{:02d}_{:02d}_{}".format(int(hour), int(minute), "_".join(flags))


def parse_schedule(text: str) -> Optional[Schedule]:
    """Inverse of ``encode_schedule``; None if *text* is not a schedule."""
    if not text:
        return None
    parts = text.strip().split("_")
    if len(parts) < 11 or parts[0] != "schedule":
        return None
    try:
        hour, minute = int(parts[1]), int(parts[2])
    except ValueError:
        return None
    flags = parts[3:11]
    days = tuple(day for day, flag in zip(DAY_FLAGS, flags) if flag == "1")
    return Schedule(hour=hour, minute=minute, days=days)


def encode_time_sync(now: datetime = None) -> str:
    """``set_time`` command for *now* (local time). Weekday is 0 for Sunday."""
    now = now or datetime.now()
    weekday = now.isoweekday() % 7
    return "set_time_{}_{}_{:02d}_{:02d}_{:02d}_{:02d}_{:02d}".format(
        now.year, weekday, now.month, now.day, now.hour, now.minute, now.second)
