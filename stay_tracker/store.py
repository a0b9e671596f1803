"""DuckDB-backed store for accepted samples and finalized places."""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Callable, Sequence

import duckdb

from stay_tracker.errors import SAVE_FAILED, PersistenceError
from stay_tracker.geocode import GeocodeResolver, ResolveOutcome
from stay_tracker.interfaces import RecordKind
from stay_tracker.models import LocationSample, Place

logger = logging.getLogger(__name__)

DDL = """
create table if not exists samples (
    ts double,
    lat double,
    lon double,
    horizontal_accuracy double,
    speed double,
    saved_at timestamp default current_timestamp
);

create table if not exists places (
    place_id varchar primary key,
    start_time double,
    end_time double,
    lat double,
    lon double,
    sample_count integer,
    name varchar,
    street varchar,
    city varchar,
    state varchar,
    country varchar,
    postal_code varchar,
    formatted_address varchar,
    saved_at timestamp default current_timestamp
);
"""

_PLACE_COLUMNS = (
    "place_id, start_time, end_time, lat, lon, sample_count, "
    "name, street, city, state, country, postal_code, formatted_address"
)


def connect(db_path: str) -> duckdb.DuckDBPyConnection:
    return duckdb.connect(db_path)


def init_db(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(DDL)


def _place_from_row(row: Sequence[object]) -> Place:
    return Place(
        id=str(row[0]),
        start_time=float(row[1]),
        end_time=float(row[2]),
        latitude=float(row[3]),
        longitude=float(row[4]),
        sample_count=int(row[5]),
        name=row[6],
        street=row[7],
        city=row[8],
        state=row[9],
        country=row[10],
        postal_code=row[11],
        formatted_address=row[12],
    )


def _sample_from_row(row: Sequence[object]) -> LocationSample:
    return LocationSample(
        timestamp=float(row[0]),
        latitude=float(row[1]),
        longitude=float(row[2]),
        horizontal_accuracy=float(row[3]),
        speed=float(row[4]),
    )


class DuckDBStore:
    """Store implementation with one explicit transaction per save.

    Places are upserted by id, so saving a place again after its address was
    resolved replaces the earlier snapshot. Writes are expected from a single
    thread (the engine loop).
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self._conn = conn
        self._in_tx = False
        init_db(conn)

    @classmethod
    def open(cls, db_path: str) -> DuckDBStore:
        return cls(connect(db_path))

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    def save(self, record: Place | LocationSample) -> None:
        """Persist one record atomically.

        Raises:
            PersistenceError: save_failed; the transaction has been rolled back.
        """

        try:
            self._conn.execute("begin transaction")
            self._in_tx = True
            if isinstance(record, Place):
                self._write_place(record)
            else:
                self._write_sample(record)
            self._conn.execute("commit")
            self._in_tx = False
        except duckdb.Error as exc:
            self.rollback()
            raise PersistenceError(SAVE_FAILED, f"保存失败：{type(record).__name__} {exc}") from exc

    def rollback(self) -> None:
        if not self._in_tx:
            return
        try:
            self._conn.execute("rollback")
        except duckdb.Error:
            logger.warning("回滚失败（事务可能已被数据库终止）")
        finally:
            self._in_tx = False

    def _write_place(self, place: Place) -> None:
        self._conn.execute(
            f"insert or replace into places ({_PLACE_COLUMNS}) values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                place.id,
                place.start_time,
                place.end_time,
                place.latitude,
                place.longitude,
                place.sample_count,
                place.name,
                place.street,
                place.city,
                place.state,
                place.country,
                place.postal_code,
                place.formatted_address,
            ],
        )

    def _write_sample(self, sample: LocationSample) -> None:
        self._conn.execute(
            "insert into samples (ts, lat, lon, horizontal_accuracy, speed) values (?, ?, ?, ?, ?)",
            [sample.timestamp, sample.latitude, sample.longitude, sample.horizontal_accuracy, sample.speed],
        )

    def most_recent(
        self,
        n: int,
        kind: RecordKind = "places",
        start: float | None = None,
        end: float | None = None,
    ) -> list[Place] | list[LocationSample]:
        """Latest n records, optionally restricted to [start, end).

        Places match when their interval overlaps the range; samples when their
        timestamp falls inside it.
        """

        lo = float("-inf") if start is None else start
        hi = float("inf") if end is None else end
        if kind == "places":
            rows = self._conn.execute(
                f"""
                select {_PLACE_COLUMNS}
                from places
                where start_time < ? and end_time > ?
                order by end_time desc
                limit ?
                """,
                [hi, lo, n],
            ).fetchall()
            return [_place_from_row(r) for r in rows]
        if kind == "samples":
            rows = self._conn.execute(
                """
                select ts, lat, lon, horizontal_accuracy, speed
                from samples
                where ts >= ? and ts < ?
                order by ts desc
                limit ?
                """,
                [lo, hi, n],
            ).fetchall()
            return [_sample_from_row(r) for r in rows]
        raise ValueError(f"Unsupported record kind: {kind}")

    def places_overlapping(self, start: float, end: float) -> list[Place]:
        """All places whose interval overlaps [start, end), oldest first."""

        rows = self._conn.execute(
            f"""
            select {_PLACE_COLUMNS}
            from places
            where start_time < ? and end_time > ?
            order by start_time
            """,
            [end, start],
        ).fetchall()
        return [_place_from_row(r) for r in rows]

    def get_place(self, place_id: str) -> Place | None:
        row = self._conn.execute(
            f"select {_PLACE_COLUMNS} from places where place_id = ?", [place_id]
        ).fetchone()
        return _place_from_row(row) if row is not None else None

    def unresolved_places(self, limit: int) -> list[Place]:
        rows = self._conn.execute(
            f"""
            select {_PLACE_COLUMNS}
            from places
            where formatted_address is null
            order by start_time desc
            limit ?
            """,
            [limit],
        ).fetchall()
        return [_place_from_row(r) for r in rows]

    def count(self, kind: RecordKind) -> int:
        table = "places" if kind == "places" else "samples"
        return int(self._conn.execute(f"select count(*) from {table}").fetchone()[0])


def resolve_pending(
    store: DuckDBStore,
    resolver: GeocodeResolver,
    limit: int = 50,
    interval_s: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Counter[str]:
    """Re-submit stored places that still lack an address.

    Runs on the calling thread and pauses `interval_s` after every provider lookup,
    so it can be scheduled periodically without hammering the geocoding service.
    Returns outcome counts.
    """

    outcomes: Counter[str] = Counter()
    for place in store.unresolved_places(limit):
        outcome = resolver.resolve(place)
        outcomes[outcome.value] += 1
        if outcome in (ResolveOutcome.RESOLVED, ResolveOutcome.CACHE_HIT):
            try:
                store.save(place)
            except PersistenceError as exc:
                logger.warning("地址已解析但保存失败：%s %s", place.id, exc)
                outcomes["save_failed"] += 1
        if outcome in (ResolveOutcome.RESOLVED, ResolveOutcome.FAILED) and interval_s > 0:
            sleep(interval_s)
    return outcomes
