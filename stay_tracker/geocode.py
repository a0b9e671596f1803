"""Reverse geocoding for finalized places (lat/lon -> postal address).

The resolver is a *geographic* cache in front of a GeocodeProvider: any cached
coordinate within `cache_radius_m` of a place's centroid counts as a hit, so
repeated stays at the same spot never trigger a second lookup.

Important:
    - Public reverse-geocoding services are rate-limited.
    - For Nominatim (OpenStreetMap), please respect their usage policy and set a reasonable
      request interval and a descriptive User-Agent.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.parse
import urllib.request
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from stay_tracker.config import GeocodeConfig, NominatimConfig
from stay_tracker.errors import NO_RESULT, PROVIDER_FAILURE, ResolutionError
from stay_tracker.geo import haversine_m
from stay_tracker.interfaces import GeocodeProvider
from stay_tracker.models import Address, Place

logger = logging.getLogger(__name__)


def coord_key(lat: float, lon: float, precision: int) -> str:
    """Build a stable key by rounding coordinates.

    Notes:
        Precision=4 is often a good default (lat ~ 11m resolution).
    """

    return f"{round(lat, precision):.{precision}f},{round(lon, precision):.{precision}f}"


def parse_coord_key(key: str) -> tuple[float, float] | None:
    try:
        lat_s, lon_s = key.split(",", 1)
        return float(lat_s), float(lon_s)
    except ValueError:
        return None


class JsonDiskCache:
    """Address cache persisted as a JSON object keyed by `coord_key`.

    `set` appends to a JSON-lines journal next to the snapshot
    (geocode_cache.json -> geocode_cache.journal.jsonl), so results survive a
    crash between flushes. `flush` rewrites the snapshot and drops the journal.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._journal = self._path.with_name(f"{self._path.stem}.journal.jsonl")
        self._data: dict[str, dict[str, Any]] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _entries(self) -> dict[str, dict[str, Any]]:
        if self._data is None:
            self._data = self._read_snapshot()
            self._data.update(self._read_journal())
        return self._data

    def _read_snapshot(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        text = self._path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            broken = self._path.with_name(self._path.name + ".broken")
            broken.write_text(text, encoding="utf-8")
            logger.warning("地址缓存文件损坏，已备份到 %s", broken)
            return {}
        return data if isinstance(data, dict) else {}

    def _read_journal(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        if not self._journal.exists():
            return out
        try:
            lines = self._journal.read_text(encoding="utf-8").splitlines()
        except OSError:
            logger.warning("无法读取地址缓存日志：%s", self._journal)
            return out
        for line in lines:
            try:
                rec = json.loads(line)
            except json.JSONDecodeError:
                continue  # torn write at the tail
            if isinstance(rec, dict) and isinstance(rec.get("k"), str) and isinstance(rec.get("v"), dict):
                out[rec["k"]] = rec["v"]
        return out

    def items(self) -> list[tuple[str, dict[str, Any]]]:
        return list(self._entries().items())

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._entries()[key] = value
        self._journal.parent.mkdir(parents=True, exist_ok=True)
        with self._journal.open("a", encoding="utf-8", newline="\n") as f:
            f.write(json.dumps({"k": key, "v": value}, ensure_ascii=False) + "\n")

    def flush(self) -> None:
        data = self._entries()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self._path)
        self._journal.unlink(missing_ok=True)


@dataclass(frozen=True, slots=True)
class GeocodeCacheEntry:
    latitude: float
    longitude: float
    address: Address


class GeocodeCache:
    """Spatial address cache: lookups match any entry within a radius.

    Optionally backed by a JsonDiskCache so resolved addresses survive restarts.
    Not thread-safe on its own; GeocodeResolver serializes access.
    """

    def __init__(self, radius_m: float = 30.0, disk: JsonDiskCache | None = None, precision: int = 4) -> None:
        self.radius_m = radius_m
        self._disk = disk
        self._precision = precision
        self._entries: list[GeocodeCacheEntry] = []
        if disk is not None:
            for key, value in disk.items():
                coord = parse_coord_key(key)
                if coord is None:
                    continue
                self._entries.append(GeocodeCacheEntry(coord[0], coord[1], Address.from_dict(value)))

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, lat: float, lon: float) -> Address | None:
        """Return the nearest cached address within the radius, if any."""

        best: GeocodeCacheEntry | None = None
        best_d = self.radius_m
        for entry in self._entries:
            d = haversine_m(lat, lon, entry.latitude, entry.longitude)
            if d < best_d:
                best, best_d = entry, d
        return best.address if best is not None else None

    def store(self, lat: float, lon: float, address: Address) -> None:
        self._entries.append(GeocodeCacheEntry(lat, lon, address))
        if self._disk is not None:
            self._disk.set(coord_key(lat, lon, self._precision), address.to_dict())

    def flush(self) -> None:
        if self._disk is not None:
            self._disk.flush()


def address_from_nominatim(raw: dict[str, Any]) -> Address:
    """Map a Nominatim jsonv2 payload to an Address."""

    addr = raw.get("address") or {}
    city = addr.get("city") or addr.get("town") or addr.get("village") or addr.get("municipality") or ""
    street = addr.get("road") or addr.get("pedestrian") or addr.get("footway") or ""
    house = addr.get("house_number") or ""
    if street and house:
        street = f"{house} {street}"
    return Address(
        name=str(raw.get("name", "") or ""),
        street=str(street),
        city=str(city),
        state=str(addr.get("state", "") or addr.get("province", "") or ""),
        country=str(addr.get("country", "") or ""),
        postal_code=str(addr.get("postcode", "") or ""),
    )


def nominatim_reverse_raw(lat: float, lon: float, cfg: NominatimConfig) -> dict[str, Any]:
    """Call Nominatim reverse API and return the raw JSON dict.

    This is a pure function (no cache, no throttling state).

    Raises:
        ResolutionError: provider_failure on network/HTTP/JSON errors, no_result when
            Nominatim reports that nothing is at the coordinate.
    """

    params = {
        "format": "jsonv2",
        "lat": f"{lat:.8f}",
        "lon": f"{lon:.8f}",
        "zoom": str(cfg.zoom),
        "addressdetails": str(cfg.addressdetails),
        "accept-language": cfg.accept_language,
    }
    url = f"{cfg.base_url}?{urllib.parse.urlencode(params)}"
    req = urllib.request.Request(
        url,
        headers={
            "User-Agent": cfg.user_agent,
            "Accept": "application/json",
        },
        method="GET",
    )
    try:
        with urllib.request.urlopen(req, timeout=cfg.timeout_seconds) as resp:  # noqa: S310
            body = resp.read().decode("utf-8", errors="replace")
        raw: dict[str, Any] = json.loads(body)
    except (OSError, ValueError) as exc:
        raise ResolutionError(PROVIDER_FAILURE, f"Nominatim 请求失败：{exc}") from exc
    if not isinstance(raw, dict) or "error" in raw:
        raise ResolutionError(NO_RESULT, f"Nominatim 无结果：({lat:.6f}, {lon:.6f})")
    return raw


class NominatimGeocodeProvider:
    """GeocodeProvider backed by OpenStreetMap Nominatim, throttled to min_interval_seconds."""

    def __init__(self, config: NominatimConfig) -> None:
        self._cfg = config
        self._last_request_at = 0.0
        self._throttle = threading.Lock()
        self.requests = 0

    def reverse_geocode(self, latitude: float, longitude: float) -> Address:
        self._sleep_if_needed()
        raw = nominatim_reverse_raw(latitude, longitude, self._cfg)
        address = address_from_nominatim(raw)
        if not address.formatted:
            raise ResolutionError(NO_RESULT, f"地址为空：({latitude:.6f}, {longitude:.6f})")
        return address

    def _sleep_if_needed(self) -> None:
        with self._throttle:
            now = time.time()
            wait = self._cfg.min_interval_seconds - (now - self._last_request_at)
            if wait > 0:
                time.sleep(wait)
            self._last_request_at = time.time()
            self.requests += 1


class ResolveOutcome(str, Enum):
    SKIPPED = "skipped"
    CACHE_HIT = "cache_hit"
    RESOLVED = "resolved"
    FAILED = "failed"


class GeocodeResolver:
    """Fill in address fields of finalized places, out-of-band from sampling.

    `submit` is fire-and-forget from the caller's point of view: it returns a
    Future and never raises for provider failures. Concurrent resolutions for
    coordinates that round to the same key share a single provider call.
    """

    def __init__(
        self,
        provider: GeocodeProvider,
        cache: GeocodeCache,
        config: GeocodeConfig | None = None,
        executor: Executor | None = None,
        on_resolved: Callable[[Place], None] | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._cfg = config or GeocodeConfig()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self._cfg.max_workers), thread_name_prefix="geocode"
        )
        self._lock = threading.Lock()
        self._inflight: dict[str, Future[Address | None]] = {}
        self.on_resolved = on_resolved
        self.provider_calls = 0

    @property
    def cache(self) -> GeocodeCache:
        return self._cache

    def submit(self, place: Place) -> Future[ResolveOutcome]:
        """Resolve a place in the background."""

        return self._executor.submit(self.resolve, place)

    def resolve(self, place: Place) -> ResolveOutcome:
        if place.formatted_address is not None:
            return ResolveOutcome.SKIPPED

        key = coord_key(place.latitude, place.longitude, self._cfg.key_precision)
        owner = False
        with self._lock:
            cached = self._cache.lookup(place.latitude, place.longitude)
            if cached is None:
                pending = self._inflight.get(key)
                if pending is None:
                    pending = Future()
                    self._inflight[key] = pending
                    owner = True

        if cached is not None:
            place.apply_address(cached)
            logger.debug("地址缓存命中：%s -> %s", place.id, cached.formatted)
            self._notify(place)
            return ResolveOutcome.CACHE_HIT

        if not owner:
            # Another worker is already asking the provider about this coordinate.
            shared = pending.result()
            if shared is None:
                return ResolveOutcome.FAILED
            place.apply_address(shared)
            self._notify(place)
            return ResolveOutcome.CACHE_HIT

        address: Address | None = None
        try:
            with self._lock:
                self.provider_calls += 1
            address = self._provider.reverse_geocode(place.latitude, place.longitude)
        except ResolutionError as exc:
            logger.warning(
                "逆地理编码失败（%s）：place=%s (%.6f, %.6f) %s",
                exc.kind,
                place.id,
                place.latitude,
                place.longitude,
                exc,
            )
        finally:
            with self._lock:
                if address is not None:
                    self._cache.store(place.latitude, place.longitude, address)
                self._inflight.pop(key, None)
            pending.set_result(address)

        if address is None:
            return ResolveOutcome.FAILED
        place.apply_address(address)
        logger.info("地址解析完成：%s", place.formatted_address)
        self._notify(place)
        return ResolveOutcome.RESOLVED

    def _notify(self, place: Place) -> None:
        if self.on_resolved is not None:
            self.on_resolved(place)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        with self._lock:
            self._cache.flush()
