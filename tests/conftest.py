from concurrent.futures import Executor, Future

import duckdb
import pytest

from stay_tracker.errors import NO_RESULT, ResolutionError
from stay_tracker.geo import offset_m
from stay_tracker.models import ActivityType, Address, LocationSample
from stay_tracker.store import DuckDBStore

BASE_LAT = 31.2304
BASE_LON = 121.4737


def make_sample(
    t: float,
    north_m: float = 0.0,
    east_m: float = 0.0,
    *,
    accuracy: float = 5.0,
    speed: float = 0.0,
) -> LocationSample:
    lat, lon = offset_m(BASE_LAT, BASE_LON, north_m, east_m)
    return LocationSample(timestamp=t, latitude=lat, longitude=lon, horizontal_accuracy=accuracy, speed=speed)


class FakeProvider:
    """GeocodeProvider that counts calls and can be told to fail."""

    def __init__(self, fail_with: str | None = None) -> None:
        self.calls: list[tuple[float, float]] = []
        self.fail_with = fail_with

    def reverse_geocode(self, latitude: float, longitude: float) -> Address:
        self.calls.append((latitude, longitude))
        if self.fail_with is not None:
            raise ResolutionError(self.fail_with, "boom")
        return Address(
            name=f"Place {len(self.calls)}",
            street="Nanjing Rd",
            city="Shanghai",
            state="",
            country="China",
            postal_code="200000",
        )


class FixedClassifier:
    """ActivityClassifier returning a settable answer and recording query windows."""

    def __init__(self, activity: ActivityType = ActivityType.STATIONARY) -> None:
        self.activity = activity
        self.windows: list[tuple[float, float]] = []

    def classify(self, window_start: float, window_end: float) -> ActivityType:
        self.windows.append((window_start, window_end))
        return self.activity


class DeferredExecutor(Executor):
    """Queue submitted work until run_all() is called."""

    def __init__(self) -> None:
        self.jobs: list[tuple[Future, object, tuple, dict]] = []

    def submit(self, fn, /, *args, **kwargs):  # type: ignore[override]
        fut: Future = Future()
        self.jobs.append((fut, fn, args, kwargs))
        return fut

    def run_all(self) -> None:
        jobs, self.jobs = self.jobs, []
        for fut, fn, args, kwargs in jobs:
            if not fut.set_running_or_notify_cancel():
                continue
            try:
                fut.set_result(fn(*args, **kwargs))
            except Exception as exc:
                fut.set_exception(exc)


@pytest.fixture
def duckdb_conn():
    conn = duckdb.connect(":memory:")
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def store(duckdb_conn) -> DuckDBStore:
    return DuckDBStore(duckdb_conn)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def failing_provider() -> FakeProvider:
    return FakeProvider(fail_with=NO_RESULT)
