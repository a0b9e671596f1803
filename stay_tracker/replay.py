"""Replay a recorded track through the engine with in-process collaborators.

`ReplayPositionSource` behaves like the device sensor: it only delivers samples
while some monitoring is on, and in significant-change mode it stays silent
inside the armed stay-region and raises a geofence exit for the first sample
outside it. `SpeedActivityClassifier` stands in for the motion coprocessor by
looking at the recorded speeds around the query window.
"""

from __future__ import annotations

import bisect
import logging
from collections import Counter
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Callable, Sequence

from stay_tracker.config import TrackerConfig
from stay_tracker.engine import SamplingEngine, TrackingStatus
from stay_tracker.geo import is_inside_geofence
from stay_tracker.geocode import GeocodeResolver
from stay_tracker.interfaces import (
    AuthorizationEvent,
    AuthorizationStatus,
    EngineEvent,
    GeofenceExitEvent,
    SampleEvent,
    Store,
)
from stay_tracker.models import ActivityType, Geofence, LocationSample, Place, SamplingMode
from stay_tracker.timeutils import DeltaStats, delta_stats

logger = logging.getLogger(__name__)


class InlineExecutor(Executor):
    """Run submitted callables immediately on the calling thread.

    Keeps replays deterministic: an activity result is queued right behind the
    sample that asked for it.
    """

    def submit(self, fn, /, *args, **kwargs):  # type: ignore[override]
        fut: Future = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            fut.set_exception(exc)
        else:
            fut.set_result(result)
        return fut


class ReplayPositionSource:
    """PositionSource that feeds recorded samples to a sink (usually `engine.post`)."""

    def __init__(
        self,
        authorization: AuthorizationStatus = AuthorizationStatus.AUTHORIZED,
        grant_on_request: bool = True,
    ) -> None:
        self._authorization = authorization
        self._grant_on_request = grant_on_request
        self.sink: Callable[[EngineEvent], None] | None = None
        self.mode: SamplingMode | None = None
        self.geofence: Geofence | None = None
        self.calls: list[str] = []
        self.delivered = 0
        self.suppressed = 0

    @property
    def authorization_status(self) -> AuthorizationStatus:
        return self._authorization

    def request_authorization(self) -> None:
        self.calls.append("request_authorization")
        if self._grant_on_request and self._authorization is AuthorizationStatus.NOT_DETERMINED:
            self.set_authorization(AuthorizationStatus.AUTHORIZED)

    def set_authorization(self, status: AuthorizationStatus) -> None:
        self._authorization = status
        self._emit(AuthorizationEvent(status))

    def start_continuous(self) -> None:
        self.calls.append("start_continuous")
        self.mode = SamplingMode.CONTINUOUS

    def start_significant_change_only(self) -> None:
        self.calls.append("start_significant_change_only")
        self.mode = SamplingMode.SIGNIFICANT_CHANGE_ONLY

    def arm_geofence(self, geofence: Geofence) -> None:
        self.calls.append("arm_geofence")
        self.geofence = geofence

    def disarm_geofence(self) -> None:
        self.calls.append("disarm_geofence")
        self.geofence = None

    def stop_all(self) -> None:
        self.calls.append("stop_all")
        self.mode = None
        self.geofence = None

    def deliver(self, sample: LocationSample) -> bool:
        """Offer one recorded sample; returns whether it reached the sink."""

        if self.mode is None:
            self.suppressed += 1
            return False
        fence = self.geofence
        if fence is not None and fence.notify_on_exit:
            if is_inside_geofence(sample.latitude, sample.longitude, fence):
                if self.mode is SamplingMode.SIGNIFICANT_CHANGE_ONLY:
                    self.suppressed += 1
                    return False
            else:
                self._emit(GeofenceExitEvent(timestamp=sample.timestamp, geofence=fence))
        self._emit(SampleEvent(sample))
        self.delivered += 1
        return True

    def _emit(self, event: EngineEvent) -> None:
        if self.sink is not None:
            self.sink(event)


class SpeedActivityClassifier:
    """Classify a window from recorded speeds (the unknown sentinel is ignored)."""

    def __init__(self, track: Sequence[LocationSample]) -> None:
        self._track = sorted(track, key=lambda s: s.timestamp)
        self._times = [s.timestamp for s in self._track]

    def classify(self, window_start: float, window_end: float) -> ActivityType:
        lo = bisect.bisect_left(self._times, window_start)
        hi = bisect.bisect_right(self._times, window_end)
        speeds = [s.speed for s in self._track[lo:hi] if s.speed >= 0]
        if not speeds:
            return ActivityType.UNAVAILABLE
        return activity_for_speed(max(speeds))


def activity_for_speed(speed_mps: float) -> ActivityType:
    if speed_mps < 0.5:
        return ActivityType.STATIONARY
    if speed_mps < 2.5:
        return ActivityType.WALKING
    if speed_mps < 4.5:
        return ActivityType.RUNNING
    if speed_mps < 8.0:
        return ActivityType.CYCLING
    return ActivityType.AUTOMOTIVE


@dataclass(slots=True)
class ReplaySummary:
    samples_total: int
    delivered: int
    suppressed: int
    accepted: int
    rejected: Counter[str] = field(default_factory=Counter)
    mode_transitions: int = 0
    places: list[Place] = field(default_factory=list)
    discarded_places: int = 0
    errors: int = 0
    accepted_interval: DeltaStats | None = None
    final_status: TrackingStatus = TrackingStatus.STOPPED


def replay_track(
    samples: Sequence[LocationSample],
    store: Store,
    resolver: GeocodeResolver | None = None,
    config: TrackerConfig | None = None,
) -> ReplaySummary:
    """Run a full tracking session over a recorded track.

    The resolver (if any) is shut down at the end, after its pending lookups land.
    """

    track = sorted(samples, key=lambda s: s.timestamp)
    source = ReplayPositionSource()
    engine = SamplingEngine(
        source,
        SpeedActivityClassifier(track),
        store,
        resolver=resolver,
        config=config,
        activity_executor=InlineExecutor(),
    )
    source.sink = engine.post
    kept: list[Place] = []
    engine.clusterer.on_kept = kept.append
    engine.start_tracking()
    engine.process_pending()

    for sample in track:
        source.deliver(sample)
        engine.process_pending()

    engine.shutdown(wait_for_resolutions=True)

    accepted_ts: list[float] = []
    if track:
        stored = store.most_recent(len(track), "samples", start=track[0].timestamp, end=track[-1].timestamp + 1.0)
        accepted_ts = sorted(s.timestamp for s in stored)
    summary = ReplaySummary(
        samples_total=len(track),
        delivered=source.delivered,
        suppressed=source.suppressed,
        accepted=engine.stats.accepted,
        rejected=Counter(
            low_accuracy=engine.stats.rejected_low_accuracy,
            rate_limited=engine.stats.rejected_rate_limited,
        ),
        mode_transitions=engine.controller.transitions,
        places=sorted(kept, key=lambda p: p.start_time),
        discarded_places=engine.clusterer.discarded,
        errors=engine.error_count,
        accepted_interval=delta_stats(accepted_ts),
        final_status=engine.status,
    )
    logger.info(
        "回放完成：样本=%d 投递=%d 接受=%d 停留点=%d",
        summary.samples_total,
        summary.delivered,
        summary.accepted,
        len(summary.places),
    )
    return summary
