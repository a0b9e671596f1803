import pytest

from conftest import DeferredExecutor, FixedClassifier, make_sample
from stay_tracker.engine import MAX_RECENT_ERRORS, SamplingEngine, TrackingStatus
from stay_tracker.errors import PERMISSION_DENIED, PersistenceError, SensorError
from stay_tracker.geocode import GeocodeCache, GeocodeResolver
from stay_tracker.interfaces import AuthorizationStatus, PositionErrorEvent, PositionErrorKind, SampleEvent
from stay_tracker.models import ActivityType, LocationSample, Place, SamplingMode
from stay_tracker.replay import InlineExecutor, ReplayPositionSource
from stay_tracker.store import DuckDBStore


def _engine(store, classifier=None, source=None, resolver=None, activity_executor=None):
    source = source or ReplayPositionSource()
    engine = SamplingEngine(
        source,
        classifier or FixedClassifier(ActivityType.WALKING),
        store,
        resolver=resolver,
        activity_executor=activity_executor or InlineExecutor(),
    )
    source.sink = engine.post
    return engine, source


def _feed(engine: SamplingEngine, *samples) -> None:
    for s in samples:
        engine.post(SampleEvent(s))
    engine.process_pending()


def _park(engine: SamplingEngine) -> None:
    """Drive a started engine into geofenced significant-change mode."""

    _feed(engine, make_sample(0, speed=0.0))
    assert engine.controller.mode is SamplingMode.GEOFENCED


def test_low_accuracy_samples_never_reach_clustering(store) -> None:
    engine, _ = _engine(store)
    engine.start_tracking()

    _feed(engine, make_sample(0, accuracy=150.0), make_sample(10, accuracy=-1.0))

    assert engine.stats.rejected_low_accuracy == 2
    assert engine.stats.activity_queries == 0
    assert engine.open_place is None
    assert store.count("samples") == 0


def test_rate_limited_samples_still_query_activity(store) -> None:
    classifier = FixedClassifier(ActivityType.WALKING)
    engine, _ = _engine(store, classifier=classifier)
    engine.start_tracking()

    _feed(engine, make_sample(0), make_sample(60))

    assert engine.stats.accepted == 1
    assert engine.stats.rejected_rate_limited == 1
    assert classifier.windows == [(-30.0, 0.0), (30.0, 60.0)]
    assert store.count("samples") == 1


def test_stationary_enters_geofenced_mode(store) -> None:
    engine, source = _engine(store, classifier=FixedClassifier(ActivityType.STATIONARY))
    engine.start_tracking()
    _park(engine)

    assert source.mode is SamplingMode.SIGNIFICANT_CHANGE_ONLY
    assert source.geofence is not None
    assert source.geofence.radius_m == 120.0


def test_stop_twice_leaves_no_geofence(store) -> None:
    engine, source = _engine(store, classifier=FixedClassifier(ActivityType.STATIONARY))
    engine.start_tracking()
    _park(engine)

    engine.stop_tracking()
    engine.stop_tracking()

    assert engine.status is TrackingStatus.STOPPED
    assert source.geofence is None
    assert source.mode is None
    assert engine.controller.geofence is None
    assert engine.error_count == 0


def test_samples_ignored_while_stopped(store) -> None:
    engine, _ = _engine(store)
    _feed(engine, make_sample(0))
    assert engine.stats.ignored_while_stopped == 1
    assert store.count("samples") == 0


def test_geofence_exit_resumes_continuous(store) -> None:
    engine, source = _engine(store, classifier=FixedClassifier(ActivityType.STATIONARY))
    engine.start_tracking()
    _park(engine)

    assert not source.deliver(make_sample(350, 10))
    assert source.deliver(make_sample(400, 200, speed=3.0))
    engine.process_pending()

    assert engine.controller.mode is SamplingMode.CONTINUOUS
    assert source.mode is SamplingMode.CONTINUOUS
    assert source.geofence is None
    assert engine.stats.accepted == 2


def test_authorization_requested_then_granted(store) -> None:
    source = ReplayPositionSource(authorization=AuthorizationStatus.NOT_DETERMINED, grant_on_request=False)
    engine, _ = _engine(store, source=source)

    assert engine.start_tracking() is TrackingStatus.AWAITING_AUTHORIZATION
    assert source.calls == ["request_authorization"]
    assert source.mode is None

    source.set_authorization(AuthorizationStatus.AUTHORIZED)
    engine.process_pending()

    assert engine.status is TrackingStatus.TRACKING
    assert source.mode is SamplingMode.CONTINUOUS


def test_authorization_granted_on_request(store) -> None:
    source = ReplayPositionSource(authorization=AuthorizationStatus.NOT_DETERMINED)
    engine, _ = _engine(store, source=source)

    engine.start_tracking()
    engine.process_pending()

    assert engine.status is TrackingStatus.TRACKING


def test_denied_authorization_reports_permission_error(store) -> None:
    source = ReplayPositionSource(authorization=AuthorizationStatus.DENIED)
    engine, _ = _engine(store, source=source)

    assert engine.start_tracking() is TrackingStatus.PERMISSION_DENIED
    assert isinstance(engine.last_error, SensorError)
    assert engine.last_error.kind == PERMISSION_DENIED
    assert source.mode is None


def test_revoked_permission_halts_and_keeps_stay(store) -> None:
    engine, source = _engine(store)
    engine.start_tracking()
    _feed(engine, make_sample(0), make_sample(300, 2))

    engine.post(PositionErrorEvent(PositionErrorKind.PERMISSION_DENIED, "revoked"))
    engine.process_pending()

    assert engine.status is TrackingStatus.PERMISSION_DENIED
    assert source.mode is None
    assert store.count("places") == 1
    assert engine.last_error is not None and engine.last_error.kind == PERMISSION_DENIED

    source.set_authorization(AuthorizationStatus.AUTHORIZED)
    engine.process_pending()
    assert engine.status is TrackingStatus.TRACKING


def test_transient_errors_do_not_stop_tracking(store) -> None:
    engine, _ = _engine(store)
    engine.start_tracking()
    engine.post(PositionErrorEvent(PositionErrorKind.ACCURACY_UNAVAILABLE))
    engine.post(PositionErrorEvent(PositionErrorKind.TRANSIENT, "no fix"))
    engine.process_pending()

    assert engine.status is TrackingStatus.TRACKING
    assert engine.error_count == 0


def test_pending_activity_queries_cancelled_on_stop(store) -> None:
    classifier = FixedClassifier(ActivityType.STATIONARY)
    executor = DeferredExecutor()
    engine, _ = _engine(store, classifier=classifier, activity_executor=executor)
    engine.start_tracking()
    _feed(engine, make_sample(0))
    assert len(executor.jobs) == 1

    engine.stop_tracking()
    engine.start_tracking()
    executor.run_all()
    engine.process_pending()

    assert classifier.windows == []
    assert engine.controller.mode is SamplingMode.CONTINUOUS


def test_tracking_toggle(store) -> None:
    engine, source = _engine(store)
    assert engine.set_tracking_enabled(False) is TrackingStatus.STOPPED
    assert engine.start_tracking() is TrackingStatus.STOPPED
    assert source.mode is None

    assert engine.set_tracking_enabled(True) is TrackingStatus.TRACKING
    assert source.mode is SamplingMode.CONTINUOUS


def test_resolution_after_stop_is_saved_without_mode_change(store, provider) -> None:
    executor = DeferredExecutor()
    resolver = GeocodeResolver(provider, GeocodeCache(), executor=executor)
    engine, source = _engine(store, resolver=resolver)
    kept: list[Place] = []
    engine.clusterer.on_kept = kept.append
    engine.start_tracking()
    _feed(engine, make_sample(0), make_sample(300, 2))
    engine.stop_tracking()

    (place,) = kept
    assert store.get_place(place.id).formatted_address is None
    calls = list(source.calls)

    executor.run_all()
    engine.process_pending()

    assert store.get_place(place.id).formatted_address == place.formatted_address
    assert place.formatted_address is not None
    assert source.calls == calls
    assert engine.status is TrackingStatus.STOPPED


class PlaceFailingStore(DuckDBStore):
    fail_places = True

    def save(self, record) -> None:
        if isinstance(record, Place) and self.fail_places:
            raise PersistenceError("save_failed", "places table locked")
        super().save(record)


def test_place_save_failure_is_surfaced_and_retried(duckdb_conn) -> None:
    store = PlaceFailingStore(duckdb_conn)
    engine, _ = _engine(store)
    engine.start_tracking()

    _feed(engine, make_sample(0), make_sample(300, 2), make_sample(330, 500, speed=6.0))

    assert isinstance(engine.last_error, PersistenceError)
    assert store.count("places") == 0
    assert engine.open_place is not None and engine.open_place.start_time == 330

    store.fail_places = False
    _feed(engine, make_sample(360, 510, speed=6.0))

    assert store.count("places") == 1
    assert engine.error_count == 1
    assert engine.clusterer.unsaved == []


def test_ingest_continues_while_place_saves_keep_failing(duckdb_conn) -> None:
    store = PlaceFailingStore(duckdb_conn)
    engine, _ = _engine(store)
    engine.start_tracking()

    _feed(engine, make_sample(0), make_sample(300, 2), make_sample(330, 500, speed=6.0))
    _feed(engine, make_sample(630, 505), make_sample(930, 505))

    assert engine.stats.accepted == 5
    assert engine.open_place is not None
    assert engine.open_place.start_time == 330
    assert engine.open_place.sample_count == 3
    assert len(engine.clusterer.unsaved) == 1
    # the same unsaved place is reported once, not on every retry
    assert engine.error_count == 1
    assert len(engine.errors) == 1

    store.fail_places = False
    _feed(engine, make_sample(1230, 505))

    assert store.count("places") == 1
    assert engine.clusterer.unsaved == []
    assert engine.open_place.sample_count == 4
    assert engine.error_count == 1


class SampleFailingStore(DuckDBStore):
    def save(self, record) -> None:
        if isinstance(record, LocationSample):
            raise PersistenceError("save_failed", "samples table locked")
        super().save(record)


def test_error_history_is_bounded(duckdb_conn) -> None:
    engine, _ = _engine(SampleFailingStore(duckdb_conn))
    engine.start_tracking()

    _feed(engine, *(make_sample(i * 300) for i in range(MAX_RECENT_ERRORS + 10)))

    assert engine.stats.accepted == MAX_RECENT_ERRORS + 10
    assert engine.error_count == MAX_RECENT_ERRORS + 10
    assert len(engine.errors) == MAX_RECENT_ERRORS
    assert engine.errors[-1] is engine.last_error


def test_moving_stream_end_to_end(store, provider) -> None:
    resolver = GeocodeResolver(provider, GeocodeCache(), executor=InlineExecutor())
    engine, _ = _engine(store, resolver=resolver)
    engine.start_tracking()

    _feed(
        engine,
        make_sample(0, 0, speed=6.0),
        make_sample(60, 5, speed=6.0),
        make_sample(130, 3, speed=6.0),
        make_sample(200, 4, speed=6.0),
    )
    assert engine.open_place is not None
    assert engine.open_place.sample_count == 4
    assert engine.open_place.duration_seconds == 200

    _feed(engine, make_sample(260, 500, speed=6.0))

    (place,) = store.most_recent(10)
    assert place.duration_seconds == 260
    assert place.sample_count == 4
    assert place.formatted_address == "Place 1, Nanjing Rd, Shanghai, China, 200000"
    assert engine.open_place is not None and engine.open_place.sample_count == 1
    assert store.count("samples") == 5

    engine.shutdown()
    assert engine.status is TrackingStatus.STOPPED


def test_unknown_event_type_is_rejected(store) -> None:
    engine, _ = _engine(store)
    engine.post("not an event")  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        engine.process_pending()
