"""Stay detection: fold accepted samples into places with a running centroid."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import Callable

from stay_tracker.config import ClusterConfig
from stay_tracker.geo import distance_to_place_m
from stay_tracker.geocode import GeocodeResolver, ResolveOutcome
from stay_tracker.interfaces import Store
from stay_tracker.models import LocationSample, Place

logger = logging.getLogger(__name__)


def fold_sample(place: Place, sample: LocationSample) -> None:
    """Fold one sample into the place's centroid (incremental mean)."""

    n = place.sample_count
    place.latitude = (place.latitude * n + sample.latitude) / (n + 1)
    place.longitude = (place.longitude * n + sample.longitude) / (n + 1)
    place.sample_count = n + 1
    place.end_time = sample.timestamp


class StayClusterer:
    """Turn the accepted-sample stream into Place records.

    At most one place is open at a time. A place is finalized when a sample lands
    outside the distance threshold or when `close()` is called; finalized places
    shorter than the minimum duration are discarded, the rest are saved and handed
    to the resolver. A finalized place is never re-opened.

    Places whose save failed are kept in `unsaved` and retried before the next
    finalize; the failure itself is re-raised to the caller.
    """

    def __init__(
        self,
        config: ClusterConfig,
        store: Store | None = None,
        resolver: GeocodeResolver | None = None,
    ) -> None:
        self._cfg = config
        self._store = store
        self._resolver = resolver
        self._open: Place | None = None
        self.unsaved: list[Place] = []
        self.pending_resolutions: list[Future[ResolveOutcome]] = []
        self.discarded = 0
        self.kept_count = 0
        # Receives every kept place as it is finalized.
        self.on_kept: Callable[[Place], None] | None = None

    @property
    def open_place(self) -> Place | None:
        return self._open

    def ingest(self, sample: LocationSample) -> Place | None:
        """Add one accepted sample.

        Returns:
            The place finalized (and kept) because of this sample, else None.

        Raises:
            PersistenceError: the finalized place could not be saved. The new place
                has already been opened when this is raised.
        """

        current = self._open
        if current is None:
            self._open = Place.seeded(sample)
            return None

        distance = distance_to_place_m(sample, current)
        if distance < self._cfg.place_distance_threshold_m:
            fold_sample(current, sample)
            return None

        self._open = Place.seeded(sample)
        logger.debug("离开停留点 %s（距离 %.1fm），开始新停留点", current.id, distance)
        return self.finalize(current, left_at=sample.timestamp)

    def close(self) -> Place | None:
        """Finalize the open place without a departure sample (tracking stopped)."""

        current = self._open
        self._open = None
        if current is None:
            return None
        return self.finalize(current)

    def finalize(self, place: Place, left_at: float | None = None) -> Place | None:
        """Close a place: discard short stays, save and submit the rest.

        Args:
            place: The place being closed.
            left_at: Departure time; extends end_time when later than the last sample.

        Returns:
            The kept place, or None when it was discarded.
        """

        if left_at is not None and left_at > place.end_time:
            place.end_time = left_at

        if place.duration_seconds < self._cfg.min_place_duration_s:
            self.discarded += 1
            logger.debug(
                "丢弃短停留：%s 时长 %.0fs < %.0fs",
                place.id,
                place.duration_seconds,
                self._cfg.min_place_duration_s,
            )
            return None

        self.kept_count += 1
        if self.on_kept is not None:
            self.on_kept(place)
        logger.info(
            "停留点完成：%s (%.6f, %.6f) 时长=%.0fs 样本=%d",
            place.id,
            place.latitude,
            place.longitude,
            place.duration_seconds,
            place.sample_count,
        )
        self.unsaved.append(place)
        try:
            self.flush_unsaved()
        finally:
            if self._resolver is not None:
                self.pending_resolutions.append(self._resolver.submit(place))
                self.pending_resolutions = [f for f in self.pending_resolutions if not f.done()]
        return place

    def flush_unsaved(self) -> None:
        """Save places whose earlier save failed, oldest first."""

        if self._store is None:
            self.unsaved.clear()
            return
        while self.unsaved:
            # Raises PersistenceError and leaves the place queued.
            self._store.save(self.unsaved[0])
            self.unsaved.pop(0)
