"""CSV input/output: recorded tracks in, places out."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from stay_tracker.models import LocationSample, Place
from stay_tracker.timeutils import dt_from_epoch_s, format_hhmmss

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CsvSummary:
    """Quick summary of CSV parsing."""

    rows_total: int
    rows_parsed: int
    rows_skipped: int
    fieldnames: Sequence[str]


def _parse_float(value: str) -> float:
    return float(value.strip())


def _sample_from_row(row: dict[str, str]) -> LocationSample:
    return LocationSample(
        timestamp=int(row["geoTime"].strip()) / 1000.0,
        latitude=_parse_float(row["latitude"]),
        longitude=_parse_float(row["longitude"]),
        horizontal_accuracy=_parse_float(row.get("horizontalAccuracy", "-1") or "-1"),
        speed=_parse_float(row.get("speed", "-1") or "-1"),
    )


def load_samples(csv_path: str | Path) -> tuple[list[LocationSample], CsvSummary]:
    """Load a Path.csv export as location samples, sorted by time.

    The export uses these columns (observed):
      - geoTime: epoch milliseconds
      - latitude/longitude: decimal degrees
      - speed (m/s, -1 when unknown), horizontalAccuracy (m, -1 when invalid)

    Returns:
        (samples, summary)
    """

    p = Path(csv_path)
    rows_total = 0
    parsed: list[LocationSample] = []
    fieldnames: Sequence[str] = ()

    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or ()
        missing = [c for c in ("geoTime", "latitude", "longitude") if c not in fieldnames]
        if missing:
            raise KeyError(f"CSV缺少必要字段：{missing}. 实际字段：{list(fieldnames)}")
        for row in reader:
            rows_total += 1
            try:
                parsed.append(_sample_from_row(row))
            except (KeyError, ValueError, TypeError, AttributeError):
                # 某些行可能损坏/空行，直接跳过
                continue

    parsed.sort(key=lambda s: s.timestamp)
    summary = CsvSummary(
        rows_total=rows_total,
        rows_parsed=len(parsed),
        rows_skipped=rows_total - len(parsed),
        fieldnames=fieldnames,
    )
    if summary.rows_skipped > 0:
        logger.warning("CSV中有 %s 行解析失败已跳过", summary.rows_skipped)
    return parsed, summary


PLACE_FIELDNAMES = [
    "place_id",
    "start_time",
    "end_time",
    "duration_seconds",
    "duration_hhmmss",
    "sample_count",
    "latitude",
    "longitude",
    "display_address",
    "name",
    "street",
    "city",
    "state",
    "country",
    "postal_code",
]


def write_places_csv(places: Iterable[Place], out_path: str | Path, tz_name: str) -> int:
    """Write places to CSV; returns the number of rows written."""

    p = Path(out_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=PLACE_FIELDNAMES)
        w.writeheader()
        for place in places:
            w.writerow(
                {
                    "place_id": place.id,
                    "start_time": dt_from_epoch_s(place.start_time, tz_name).isoformat(sep=" "),
                    "end_time": dt_from_epoch_s(place.end_time, tz_name).isoformat(sep=" "),
                    "duration_seconds": f"{place.duration_seconds:.3f}",
                    "duration_hhmmss": format_hhmmss(place.duration_seconds),
                    "sample_count": place.sample_count,
                    "latitude": f"{place.latitude:.7f}",
                    "longitude": f"{place.longitude:.7f}",
                    "display_address": place.display_address,
                    "name": place.name or "",
                    "street": place.street or "",
                    "city": place.city or "",
                    "state": place.state or "",
                    "country": place.country or "",
                    "postal_code": place.postal_code or "",
                }
            )
            n += 1
    return n
