"""Local-time helpers for epoch-second timestamps."""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Resolve an IANA zone name such as "Asia/Shanghai".

    Raises:
        ValueError: The zone is unknown on this system.
    """

    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"无效时区：{tz_name!r}。例如可用：Asia/Shanghai") from exc


def dt_from_epoch_s(epoch_s: float, tz_name: str) -> datetime:
    return datetime.fromtimestamp(epoch_s, tz=tzinfo_from_name(tz_name))


def day_range_s(start_d: date, end_d: date, tz_name: str) -> tuple[float, float]:
    """Epoch seconds of local midnight on start_d and on the day after end_d.

    The result is half-open, so a record ending exactly at the upper bound
    belongs to the next day.
    """

    tz = tzinfo_from_name(tz_name)
    lo = datetime.combine(start_d, time.min, tzinfo=tz)
    hi = datetime.combine(end_d + timedelta(days=1), time.min, tzinfo=tz)
    return lo.timestamp(), hi.timestamp()


def format_hhmmss(seconds: float) -> str:
    total = int(round(max(0.0, seconds)))
    minutes, sec = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{sec:02d}"


@dataclass(frozen=True, slots=True)
class DeltaStats:
    """Spacing between consecutive accepted samples, in seconds."""

    count: int
    min_s: float
    median_s: float
    p95_s: float
    max_s: float


def delta_stats(timestamps: Iterable[float]) -> DeltaStats | None:
    """Interval statistics over ascending timestamps; None when there is no gap."""

    ts = list(timestamps)
    gaps = sorted(b - a for a, b in zip(ts, ts[1:]) if b >= a)
    if not gaps:
        return None
    return DeltaStats(
        count=len(gaps),
        min_s=gaps[0],
        median_s=statistics.median(gaps),
        p95_s=gaps[int(0.95 * (len(gaps) - 1))],
        max_s=gaps[-1],
    )
