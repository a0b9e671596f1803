"""Sample acceptance gate and sampling-mode controller.

The gate decides which raw fixes are worth keeping: it drops inaccurate fixes and
rate-limits the rest with a three-tier interval table (fast movers every 30 s,
slow movers every 90 s, stationary every 300 s).

The controller trades accuracy for energy. While the subject is stationary it
parks the position source in significant-change monitoring and arms a stay-region
geofence around the last accepted position; leaving the region, or the activity
classifier reporting motion, brings it back to continuous acquisition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

from stay_tracker.config import SamplingConfig
from stay_tracker.errors import LOW_ACCURACY
from stay_tracker.geo import sample_distance_m
from stay_tracker.interfaces import GeofenceExitEvent, PositionSource
from stay_tracker.models import ActivityType, Geofence, LocationSample, SamplingMode

logger = logging.getLogger(__name__)

RATE_LIMITED: Final[str] = "rate_limited"


def min_interval_for(speed_mps: float, displacement_m: float, cfg: SamplingConfig) -> float:
    """Minimum spacing between accepted samples for the given motion."""

    if speed_mps > cfg.fast_speed_mps or displacement_m > cfg.fast_displacement_m:
        return cfg.fast_interval_s
    if speed_mps > cfg.moving_speed_mps or displacement_m > cfg.moving_displacement_m:
        return cfg.moving_interval_s
    return cfg.stationary_interval_s


def is_stationary(speed_mps: float, displacement_m: float, cfg: SamplingConfig) -> bool:
    return speed_mps <= cfg.stationary_speed_mps and displacement_m <= cfg.stationary_displacement_m


def is_accuracy_acceptable(sample: LocationSample, cfg: SamplingConfig) -> bool:
    return 0.0 <= sample.horizontal_accuracy <= cfg.max_horizontal_accuracy_m


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Outcome of the acceptance gate for one raw sample.

    Attributes:
        accepted: Whether the sample goes on to clustering and persistence.
        reason: None when accepted, otherwise "low_accuracy" or "rate_limited".
        min_interval_s: Interval tier computed for the sample (0.0 for low accuracy).
        displacement_m: Distance from the last accepted sample (0.0 for the first one).
    """

    accepted: bool
    reason: str | None
    min_interval_s: float
    displacement_m: float

    @property
    def triggers_activity_query(self) -> bool:
        """Accepted and rate-limited samples both feed the motion classification."""

        return self.accepted or self.reason == RATE_LIMITED


class AcceptanceGate:
    """Accept/reject raw samples against the last *accepted* sample."""

    def __init__(self, config: SamplingConfig) -> None:
        self._cfg = config
        self._last_accepted: LocationSample | None = None

    @property
    def last_accepted(self) -> LocationSample | None:
        return self._last_accepted

    def reset(self) -> None:
        self._last_accepted = None

    def evaluate(self, sample: LocationSample) -> GateDecision:
        if not is_accuracy_acceptable(sample, self._cfg):
            logger.debug(
                "丢弃低精度样本：t=%.0f accuracy=%.1f", sample.timestamp, sample.horizontal_accuracy
            )
            return GateDecision(accepted=False, reason=LOW_ACCURACY, min_interval_s=0.0, displacement_m=0.0)

        last = self._last_accepted
        if last is None:
            self._last_accepted = sample
            interval = min_interval_for(sample.known_speed, 0.0, self._cfg)
            return GateDecision(accepted=True, reason=None, min_interval_s=interval, displacement_m=0.0)

        displacement = sample_distance_m(last, sample)
        interval = min_interval_for(sample.known_speed, displacement, self._cfg)
        if sample.timestamp - last.timestamp < interval:
            logger.debug(
                "限频丢弃样本：t=%.0f 距上次接受 %.0fs < %.0fs", sample.timestamp, sample.timestamp - last.timestamp, interval
            )
            return GateDecision(
                accepted=False, reason=RATE_LIMITED, min_interval_s=interval, displacement_m=displacement
            )

        self._last_accepted = sample
        return GateDecision(accepted=True, reason=None, min_interval_s=interval, displacement_m=displacement)


class SamplingModeController:
    """Owns the acquisition mode of a PositionSource.

    All methods are called from the engine's event loop; transitions are
    synchronous and idempotent. Each transition method returns True when the mode
    actually changed.
    """

    def __init__(self, source: PositionSource, config: SamplingConfig) -> None:
        self._source = source
        self._cfg = config
        self._mode = SamplingMode.CONTINUOUS
        self._geofence: Geofence | None = None
        self._active = False
        self._last_sample: LocationSample | None = None
        self._last_stationary = False
        self.transitions = 0

    @property
    def base_mode(self) -> SamplingMode:
        """CONTINUOUS or SIGNIFICANT_CHANGE_ONLY, ignoring the geofence sub-state."""

        return self._mode

    @property
    def mode(self) -> SamplingMode:
        if self._mode is SamplingMode.SIGNIFICANT_CHANGE_ONLY and self._geofence is not None:
            return SamplingMode.GEOFENCED
        return self._mode

    @property
    def geofence(self) -> Geofence | None:
        return self._geofence

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        """Arm the source in continuous mode (no-op when already active)."""

        if self._active:
            return
        self._active = True
        self._mode = SamplingMode.CONTINUOUS
        self._geofence = None
        self._source.start_continuous()
        logger.info("开始连续定位")

    def stop(self) -> None:
        """Disable every kind of monitoring. Safe to call repeatedly."""

        was_active = self._active
        self._active = False
        self._geofence = None
        self._mode = SamplingMode.CONTINUOUS
        self._last_sample = None
        self._last_stationary = False
        self._source.stop_all()
        if was_active:
            logger.info("已停止全部定位监控")

    def observe_sample(self, sample: LocationSample, displacement_m: float) -> None:
        """Record the most recent accepted sample and whether it looks stationary."""

        self._last_sample = sample
        self._last_stationary = is_stationary(sample.known_speed, displacement_m, self._cfg)

    def on_activity(self, activity: ActivityType) -> bool:
        if not self._active or activity is ActivityType.UNAVAILABLE:
            return False
        if self._mode is SamplingMode.CONTINUOUS:
            if activity is ActivityType.STATIONARY and self._last_stationary and self._last_sample is not None:
                return self._enter_significant_change(self._last_sample)
            return False
        if activity.is_moving:
            return self._enter_continuous(f"activity={activity.value}")
        return False

    def on_geofence_exit(self, event: GeofenceExitEvent) -> bool:
        if not self._active or self._geofence is None:
            return False
        if event.geofence != self._geofence:
            logger.debug("忽略过期围栏的离开事件：%s", event.geofence)
            return False
        return self._enter_continuous("geofence_exit")

    def _enter_significant_change(self, anchor: LocationSample) -> bool:
        if self._mode is SamplingMode.SIGNIFICANT_CHANGE_ONLY:
            return False
        geofence = Geofence(
            latitude=anchor.latitude,
            longitude=anchor.longitude,
            radius_m=self._cfg.geofence_radius_m,
            notify_on_exit=True,
            notify_on_entry=False,
        )
        self._source.start_significant_change_only()
        self._source.arm_geofence(geofence)
        self._mode = SamplingMode.SIGNIFICANT_CHANGE_ONLY
        self._geofence = geofence
        self.transitions += 1
        logger.info(
            "静止：切换到显著位置变化模式，围栏 (%.6f, %.6f) r=%.0fm",
            geofence.latitude,
            geofence.longitude,
            geofence.radius_m,
        )
        return True

    def _enter_continuous(self, trigger: str) -> bool:
        if self._mode is SamplingMode.CONTINUOUS:
            return False
        if self._geofence is not None:
            self._source.disarm_geofence()
            self._geofence = None
        self._source.start_continuous()
        self._mode = SamplingMode.CONTINUOUS
        self.transitions += 1
        logger.info("移动（%s）：恢复连续定位", trigger)
        return True
