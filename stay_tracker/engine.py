"""Event loop that wires position events through the gate, clusterer and controller.

Collaborators post events to `SamplingEngine.post`; `process_pending` (or the
blocking `run` loop) handles them one at a time in delivery order. Activity
queries and address resolution run on executors and report back through the same
queue, so ingestion never waits on them and the store only has one writer.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Final

from stay_tracker.clustering import StayClusterer
from stay_tracker.config import TrackerConfig
from stay_tracker.errors import LOW_ACCURACY, PERMISSION_DENIED, PersistenceError, SensorError, StayTrackerError
from stay_tracker.geocode import GeocodeResolver
from stay_tracker.interfaces import (
    ActivityClassifier,
    ActivityEvent,
    AuthorizationEvent,
    AuthorizationStatus,
    EngineEvent,
    GeofenceExitEvent,
    PlaceResolvedEvent,
    PositionErrorEvent,
    PositionErrorKind,
    PositionSource,
    SampleEvent,
    Store,
)
from stay_tracker.models import ActivityType, LocationSample, Place
from stay_tracker.sampling import RATE_LIMITED, AcceptanceGate, SamplingModeController

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS: Final[int] = 50


class TrackingStatus(str, Enum):
    STOPPED = "stopped"
    TRACKING = "tracking"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    PERMISSION_DENIED = "permission_denied"


@dataclass(slots=True)
class EngineStats:
    accepted: int = 0
    rejected_low_accuracy: int = 0
    rejected_rate_limited: int = 0
    activity_queries: int = 0
    ignored_while_stopped: int = 0


class SamplingEngine:
    """Orchestrates sampling, stay clustering and address resolution.

    Args:
        source: Position sensor; reconfigured by the mode controller.
        classifier: Motion classifier, queried after every accepted or rate-limited sample.
        store: Durable store for accepted samples and finalized places.
        resolver: Optional address resolver for finalized places.
        config: Thresholds.
        activity_executor: Where classifier queries run. Defaults to a single worker thread.
    """

    def __init__(
        self,
        source: PositionSource,
        classifier: ActivityClassifier,
        store: Store,
        resolver: GeocodeResolver | None = None,
        config: TrackerConfig | None = None,
        activity_executor: Executor | None = None,
    ) -> None:
        self.config = config or TrackerConfig()
        self._source = source
        self._classifier = classifier
        self._store = store
        self._resolver = resolver
        if resolver is not None and resolver.on_resolved is None:
            resolver.on_resolved = self._place_resolved
        self.gate = AcceptanceGate(self.config.sampling)
        self.controller = SamplingModeController(source, self.config.sampling)
        self.clusterer = StayClusterer(self.config.cluster, store=store, resolver=resolver)
        self._owns_activity_executor = activity_executor is None
        self._activity_executor = activity_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="activity"
        )
        self._activity_futures: list[Future[ActivityType]] = []
        self._queue: queue.Queue[EngineEvent] = queue.Queue()
        # Bumped on every start/stop; activity results from an older session are dropped.
        self._session = 0
        self.status = TrackingStatus.STOPPED
        self.tracking_enabled = True
        self.stats = EngineStats()
        self.errors: deque[StayTrackerError] = deque(maxlen=MAX_RECENT_ERRORS)
        self.error_count = 0
        self._reported_unsaved: set[str] = set()
        self.last_error: StayTrackerError | None = None

    # -- public API ---------------------------------------------------------

    def post(self, event: EngineEvent) -> None:
        """Deliver an event from any thread."""

        self._queue.put(event)

    def process_pending(self) -> int:
        """Handle every queued event; returns how many were handled."""

        handled = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return handled
            self._dispatch(event)
            handled += 1

    def run(self, stop: threading.Event, poll_interval: float = 0.2) -> None:
        """Blocking loop until `stop` is set."""

        while not stop.is_set():
            try:
                event = self._queue.get(timeout=poll_interval)
            except queue.Empty:
                continue
            self._dispatch(event)
        self.process_pending()

    def start_tracking(self) -> TrackingStatus:
        """Arm the position source in continuous mode, subject to authorization."""

        if not self.tracking_enabled:
            logger.info("定位追踪已关闭，忽略启动请求")
            return self.status
        if self.status is TrackingStatus.TRACKING:
            return self.status

        auth = self._source.authorization_status
        if auth is AuthorizationStatus.AUTHORIZED:
            self._begin()
        elif auth is AuthorizationStatus.NOT_DETERMINED:
            self._source.request_authorization()
            self.status = TrackingStatus.AWAITING_AUTHORIZATION
            logger.info("等待定位授权")
        else:
            self._halt(TrackingStatus.PERMISSION_DENIED)
            self._note_error(SensorError(PERMISSION_DENIED, "定位权限被拒绝"))
        return self.status

    def stop_tracking(self) -> None:
        """Finalize the open place and disable all monitoring. Idempotent."""

        self._halt(TrackingStatus.STOPPED)

    def set_tracking_enabled(self, enabled: bool) -> TrackingStatus:
        self.tracking_enabled = enabled
        if enabled:
            return self.start_tracking()
        self.stop_tracking()
        return self.status

    def shutdown(self, wait_for_resolutions: bool = True) -> None:
        """Stop tracking, let in-flight resolutions land, release executors."""

        self.stop_tracking()
        if wait_for_resolutions and self.clusterer.pending_resolutions:
            wait(self.clusterer.pending_resolutions)
        self.process_pending()
        if self._resolver is not None:
            self._resolver.shutdown(wait=wait_for_resolutions)
        if self._owns_activity_executor:
            self._activity_executor.shutdown(wait=False, cancel_futures=True)

    @property
    def open_place(self) -> Place | None:
        return self.clusterer.open_place

    # -- event handling -----------------------------------------------------

    def _dispatch(self, event: EngineEvent) -> None:
        if isinstance(event, SampleEvent):
            self._on_sample(event.sample)
        elif isinstance(event, ActivityEvent):
            self._on_activity(event)
        elif isinstance(event, GeofenceExitEvent):
            if self.status is TrackingStatus.TRACKING:
                self.controller.on_geofence_exit(event)
        elif isinstance(event, PositionErrorEvent):
            self._on_position_error(event)
        elif isinstance(event, AuthorizationEvent):
            self._on_authorization(event)
        elif isinstance(event, PlaceResolvedEvent):
            self._save(event.place)
        else:
            raise TypeError(f"Unsupported event: {event!r}")

    def _on_sample(self, sample: LocationSample) -> None:
        if self.status is not TrackingStatus.TRACKING:
            self.stats.ignored_while_stopped += 1
            return

        decision = self.gate.evaluate(sample)
        if decision.accepted:
            self.stats.accepted += 1
            self._save(sample)
            if self.clusterer.unsaved:
                try:
                    self.clusterer.flush_unsaved()
                except PersistenceError as exc:
                    self._place_save_failed(exc)
            try:
                self.clusterer.ingest(sample)
            except PersistenceError as exc:
                self._place_save_failed(exc)
            self._reported_unsaved &= {p.id for p in self.clusterer.unsaved}
            self.controller.observe_sample(sample, decision.displacement_m)
        elif decision.reason == LOW_ACCURACY:
            self.stats.rejected_low_accuracy += 1
        elif decision.reason == RATE_LIMITED:
            self.stats.rejected_rate_limited += 1

        if decision.triggers_activity_query:
            self._query_activity(sample.timestamp)

    def _query_activity(self, window_end: float) -> None:
        session = self._session
        window_start = window_end - self.config.sampling.activity_window_s
        self.stats.activity_queries += 1
        fut = self._activity_executor.submit(self._classifier.classify, window_start, window_end)
        self._activity_futures = [f for f in self._activity_futures if not f.done()]
        self._activity_futures.append(fut)
        fut.add_done_callback(lambda f: self._activity_done(f, window_end, session))

    def _activity_done(self, fut: Future[ActivityType], window_end: float, session: int) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("运动状态查询失败：%s", exc)
            return
        self.post(ActivityEvent(activity=fut.result(), window_end=window_end, session=session))

    def _on_activity(self, event: ActivityEvent) -> None:
        if event.session != self._session or self.status is not TrackingStatus.TRACKING:
            logger.debug("忽略过期的运动状态结果：%s", event)
            return
        self.controller.on_activity(event.activity)

    def _on_position_error(self, event: PositionErrorEvent) -> None:
        if event.kind is PositionErrorKind.ACCURACY_UNAVAILABLE:
            logger.debug("定位精度不可用：%s", event.message)
        elif event.kind is PositionErrorKind.PERMISSION_DENIED:
            self._halt(TrackingStatus.PERMISSION_DENIED)
            self._note_error(SensorError(PERMISSION_DENIED, event.message or "定位权限被撤销"))
        else:
            logger.warning("定位暂时失败：%s", event.message)

    def _on_authorization(self, event: AuthorizationEvent) -> None:
        if event.status is AuthorizationStatus.AUTHORIZED:
            if self.tracking_enabled and self.status in (
                TrackingStatus.AWAITING_AUTHORIZATION,
                TrackingStatus.PERMISSION_DENIED,
            ):
                self._begin()
        elif event.status is AuthorizationStatus.DENIED:
            self._halt(TrackingStatus.PERMISSION_DENIED)
            self._note_error(SensorError(PERMISSION_DENIED, "定位权限被拒绝"))

    # -- helpers ------------------------------------------------------------

    def _begin(self) -> None:
        self._session += 1
        self.gate.reset()
        self.controller.start()
        self.status = TrackingStatus.TRACKING

    def _halt(self, status: TrackingStatus) -> None:
        self._session += 1
        for fut in self._activity_futures:
            fut.cancel()
        self._activity_futures.clear()
        if self.status is TrackingStatus.TRACKING:
            try:
                self.clusterer.close()
            except PersistenceError as exc:
                self._place_save_failed(exc)
        self.controller.stop()
        self.status = status

    def _save(self, record: Place | LocationSample) -> None:
        try:
            self._store.save(record)
        except PersistenceError as exc:
            self._note_error(exc)

    def _place_resolved(self, place: Place) -> None:
        # Called on a resolver worker thread; persistence happens on the engine loop.
        self.post(PlaceResolvedEvent(place))

    def _place_save_failed(self, exc: PersistenceError) -> None:
        # Each place is reported once; later retries of the same backlog only log at DEBUG.
        fresh = {p.id for p in self.clusterer.unsaved} - self._reported_unsaved
        if not fresh:
            logger.debug("停留点仍未保存，稍后重试：%s", exc)
            return
        self._reported_unsaved |= fresh
        self._note_error(exc)

    def _note_error(self, exc: StayTrackerError) -> None:
        logger.warning("%s: %s", type(exc).__name__, exc)
        self.last_error = exc
        self.error_count += 1
        self.errors.append(exc)
