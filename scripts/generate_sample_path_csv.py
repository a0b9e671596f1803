from __future__ import annotations

import argparse
import csv
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Final

from zoneinfo import ZoneInfo


TZ: Final[str] = "Asia/Shanghai"


@dataclass(frozen=True, slots=True)
class Stop:
    name: str
    lat: float
    lon: float


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _jitter(rng: random.Random, lat: float, lon: float, radius_m: float) -> tuple[float, float]:
    """Random point within radius_m of (lat, lon)."""

    r = radius_m * math.sqrt(rng.random())
    theta = rng.uniform(0, 2 * math.pi)
    d_lat = (r * math.cos(theta)) / 111_320.0
    d_lon = (r * math.sin(theta)) / (111_320.0 * math.cos(math.radians(lat)))
    return lat + d_lat, lon + d_lon


def _row(ts: datetime, lat: float, lon: float, speed: float, hacc: float) -> dict[str, str]:
    return {
        "geoTime": str(_epoch_ms(ts)),
        "latitude": f"{lat:.7f}",
        "longitude": f"{lon:.7f}",
        "horizontalAccuracy": f"{hacc:.1f}",
        "speed": f"{speed:.1f}",
    }


def generate_points(
    *,
    stops: list[Stop],
    seed: int,
    start_local: datetime,
    days: int,
) -> list[dict[str, str]]:
    """Generate a fake Path.csv: stays at a few stops joined by commutes.

    During stays the sensor reports every ~20-60 s with near-zero speed; during
    commutes every ~5-15 s at walking or driving speed. A few fixes carry invalid
    or very poor accuracy, as real exports do.
    """

    rng = random.Random(seed)
    cur = start_local.replace(tzinfo=ZoneInfo(TZ))
    end = cur + timedelta(days=days)
    here = stops[0]
    out: list[dict[str, str]] = []

    while cur < end:
        # stay
        stay_end = cur + timedelta(minutes=rng.uniform(20, 240))
        while cur < stay_end:
            lat, lon = _jitter(rng, here.lat, here.lon, 12.0)
            hacc = rng.choice([5.0, 8.0, 10.0, 15.0, 25.0, 150.0, -1.0])
            speed = rng.choice([0.0, 0.0, 0.2, -1.0])
            out.append(_row(cur, lat, lon, speed, hacc))
            cur += timedelta(seconds=rng.uniform(20, 60))

        # commute
        nxt = rng.choice([s for s in stops if s != here])
        speed = rng.choice([1.4, 1.4, 9.0, 14.0])
        dist = 111_320.0 * math.hypot(nxt.lat - here.lat, (nxt.lon - here.lon) * math.cos(math.radians(here.lat)))
        travel_s = dist / speed
        steps = max(2, int(travel_s / rng.uniform(5, 15)))
        for i in range(1, steps + 1):
            f = i / steps
            lat = here.lat + (nxt.lat - here.lat) * f
            lon = here.lon + (nxt.lon - here.lon) * f
            t = cur + timedelta(seconds=travel_s * f)
            out.append(_row(t, lat, lon, speed * rng.uniform(0.8, 1.2), rng.choice([5.0, 10.0, 20.0])))
        cur += timedelta(seconds=travel_s)
        here = nxt

    # Ensure stable order by time
    out.sort(key=lambda r: int(r["geoTime"]))
    return out


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a fake Path.csv for replay/testing (privacy-safe).")
    p.add_argument("--out", type=str, default="sample_data/Path.csv", help="Output CSV path")
    p.add_argument("--days", type=int, default=2, help="Number of simulated days")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument(
        "--start",
        type=str,
        default="2025-01-01 08:00:00",
        help="Start local time in Asia/Shanghai, e.g. '2025-01-01 08:00:00'",
    )
    args = p.parse_args()

    start_local = datetime.fromisoformat(args.start)
    stops = [
        Stop("shanghai_lab", 31.2304000, 121.4737000),
        Stop("shanghai_home", 31.2222000, 121.4588000),
        Stop("cafe", 31.2281000, 121.4695000),
        Stop("gym", 31.2188000, 121.4652000),
    ]

    rows = generate_points(stops=stops, seed=args.seed, start_local=start_local, days=args.days)
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    with out_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=["geoTime", "latitude", "longitude", "horizontalAccuracy", "speed"])
        w.writeheader()
        w.writerows(rows)

    print(f"Generated: {out_path} (rows={len(rows)}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
