import itertools

import duckdb
import pytest

from conftest import DeferredExecutor, FakeProvider, make_sample
from stay_tracker.clustering import StayClusterer, fold_sample
from stay_tracker.config import ClusterConfig
from stay_tracker.errors import PersistenceError
from stay_tracker.geocode import GeocodeCache, GeocodeResolver
from stay_tracker.models import Place


def test_incremental_mean_matches_batch_mean_in_any_order() -> None:
    samples = [
        make_sample(0, 0, 0),
        make_sample(60, 4, -2),
        make_sample(130, -3, 1),
        make_sample(200, 2, 5),
    ]
    batch_lat = sum(s.latitude for s in samples) / len(samples)
    batch_lon = sum(s.longitude for s in samples) / len(samples)

    for order in itertools.permutations(samples):
        place = Place.seeded(order[0])
        for s in order[1:]:
            fold_sample(place, s)
        assert place.sample_count == 4
        assert place.latitude == pytest.approx(batch_lat, abs=1e-12)
        assert place.longitude == pytest.approx(batch_lon, abs=1e-12)


def test_stay_then_departure(store, provider) -> None:
    executor = DeferredExecutor()
    resolver = GeocodeResolver(provider, GeocodeCache(), executor=executor)
    clusterer = StayClusterer(ClusterConfig(), store=store, resolver=resolver)

    for t, north in ((0, 0), (60, 5), (130, 3), (200, 4)):
        assert clusterer.ingest(make_sample(t, north)) is None

    open_place = clusterer.open_place
    assert open_place is not None
    assert open_place.sample_count == 4
    assert open_place.duration_seconds == 200
    assert store.count("places") == 0

    kept = clusterer.ingest(make_sample(260, 500))

    assert kept is open_place
    assert kept.duration_seconds == 260
    assert kept.sample_count == 4
    assert store.get_place(kept.id) is not None
    assert len(executor.jobs) == 1

    second = clusterer.open_place
    assert second is not None and second is not kept
    assert second.sample_count == 1
    assert second.start_time == 260

    executor.run_all()
    assert kept.formatted_address == "Place 1, Nanjing Rd, Shanghai, China, 200000"


def test_short_stays_are_never_stored(store) -> None:
    clusterer = StayClusterer(ClusterConfig(), store=store)
    clusterer.ingest(make_sample(0))
    clusterer.ingest(make_sample(100, 2))
    assert clusterer.ingest(make_sample(150, 300)) is None
    assert clusterer.close() is None

    assert clusterer.discarded == 2
    assert clusterer.kept_count == 0
    assert store.count("places") == 0


def test_close_keeps_long_open_place(store) -> None:
    clusterer = StayClusterer(ClusterConfig(), store=store)
    clusterer.ingest(make_sample(0))
    clusterer.ingest(make_sample(400, 3))

    place = clusterer.close()

    assert place is not None
    assert place.duration_seconds == 400
    assert clusterer.open_place is None
    assert [p.id for p in store.most_recent(10)] == [place.id]
    assert clusterer.close() is None


def test_threshold_is_measured_from_running_centroid() -> None:
    clusterer = StayClusterer(ClusterConfig())
    clusterer.ingest(make_sample(0, 0))
    clusterer.ingest(make_sample(60, 20))
    # centroid now ~10 m north; 35 m north is 25 m from it
    clusterer.ingest(make_sample(120, 35))
    assert clusterer.open_place is not None
    assert clusterer.open_place.sample_count == 3


class FlakyStore:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.saved: list[Place] = []

    def save(self, record) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("save_failed", "disk full")
        self.saved.append(record)

    def rollback(self) -> None:
        pass

    def most_recent(self, n, kind="places", start=None, end=None):
        return self.saved[-n:]


def test_failed_save_is_raised_and_retried() -> None:
    store = FlakyStore(failures=1)
    clusterer = StayClusterer(ClusterConfig(), store=store)
    kept: list[Place] = []
    clusterer.on_kept = kept.append
    clusterer.ingest(make_sample(0))
    clusterer.ingest(make_sample(300, 2))

    with pytest.raises(PersistenceError):
        clusterer.ingest(make_sample(360, 400))

    (first,) = kept
    assert clusterer.kept_count == 1
    assert clusterer.unsaved == [first]
    assert clusterer.open_place is not None and clusterer.open_place.start_time == 360

    clusterer.flush_unsaved()
    assert store.saved == [first]
    assert clusterer.unsaved == []


def test_store_rollback_leaves_place_queued(store, monkeypatch) -> None:
    clusterer = StayClusterer(ClusterConfig(), store=store)
    clusterer.ingest(make_sample(0))
    clusterer.ingest(make_sample(300, 2))

    def boom(place):
        raise duckdb.Error("simulated write failure")

    monkeypatch.setattr(store, "_write_place", boom)
    with pytest.raises(PersistenceError):
        clusterer.close()
    assert store.count("places") == 0
    assert len(clusterer.unsaved) == 1

    monkeypatch.undo()
    clusterer.flush_unsaved()
    assert store.count("places") == 1


def test_resolver_failure_does_not_block_ingest(store) -> None:
    resolver = GeocodeResolver(FakeProvider(fail_with="provider_failure"), GeocodeCache(), executor=DeferredExecutor())
    clusterer = StayClusterer(ClusterConfig(), store=store, resolver=resolver)
    clusterer.ingest(make_sample(0))
    clusterer.ingest(make_sample(200, 1))
    kept = clusterer.ingest(make_sample(230, 600))

    assert kept is not None
    assert kept.formatted_address is None
    assert clusterer.open_place is not None


def test_kept_places_are_counted_and_handed_off(store) -> None:
    clusterer = StayClusterer(ClusterConfig(), store=store)
    kept: list[Place] = []
    clusterer.on_kept = kept.append

    clusterer.ingest(make_sample(0))
    clusterer.ingest(make_sample(300, 2))
    clusterer.ingest(make_sample(360, 400))
    clusterer.ingest(make_sample(400, 800))
    clusterer.close()

    assert clusterer.kept_count == 1
    assert clusterer.discarded == 2
    assert [p.start_time for p in kept] == [0]
