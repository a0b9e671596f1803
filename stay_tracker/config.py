"""Tunable thresholds for sampling, clustering and geocoding.

All distances are meters, all intervals seconds. Defaults match the values the
tracker was tuned with on-device; override them with a JSON file:

    {
      "sampling": {"geofence_radius_m": 150},
      "cluster": {"min_place_duration_s": 240},
      "nominatim": {"accept_language": "en"}
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any


@dataclass(frozen=True, slots=True)
class SamplingConfig:
    """Acceptance gate and sampling-mode parameters."""

    max_horizontal_accuracy_m: float = 100.0
    # Tier table: the first tier whose speed OR displacement bound is exceeded wins.
    fast_speed_mps: float = 5.0
    fast_displacement_m: float = 100.0
    fast_interval_s: float = 30.0
    moving_speed_mps: float = 1.5
    moving_displacement_m: float = 30.0
    moving_interval_s: float = 90.0
    stationary_interval_s: float = 300.0
    # Stationary: speed <= stationary_speed_mps and displacement <= stationary_displacement_m
    stationary_speed_mps: float = 1.5
    stationary_displacement_m: float = 30.0
    activity_window_s: float = 30.0
    geofence_radius_m: float = 120.0


@dataclass(frozen=True, slots=True)
class ClusterConfig:
    """Stay clustering parameters."""

    place_distance_threshold_m: float = 30.0
    min_place_duration_s: float = 180.0


@dataclass(frozen=True, slots=True)
class GeocodeConfig:
    """Spatial cache and worker pool for address resolution."""

    cache_radius_m: float = 30.0
    # Rounding precision of the coordinate key used for the on-disk cache and in-flight dedup.
    key_precision: int = 4
    max_workers: int = 2


@dataclass(frozen=True, slots=True)
class NominatimConfig:
    """Configuration for Nominatim reverse API."""

    base_url: str = "https://nominatim.openstreetmap.org/reverse"
    accept_language: str = "zh-CN"
    zoom: int = 18
    addressdetails: int = 1
    timeout_seconds: float = 20.0
    min_interval_seconds: float = 1.0
    user_agent: str = "stay-tracker/0.1.0 (reverse-geocode; please set your own UA)"


@dataclass(frozen=True, slots=True)
class TrackerConfig:
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    geocode: GeocodeConfig = field(default_factory=GeocodeConfig)
    nominatim: NominatimConfig = field(default_factory=NominatimConfig)


def _apply_overrides(section: Any, overrides: dict[str, Any], section_name: str) -> Any:
    known = {f.name: f for f in fields(section)}
    unknown = sorted(set(overrides) - set(known))
    if unknown:
        raise ValueError(f"配置项 [{section_name}] 中存在未知字段：{', '.join(unknown)}")
    values: dict[str, Any] = {}
    for name, value in overrides.items():
        expected = type(getattr(section, name))
        # Float fields take JSON integers too; bool is rejected although it subclasses int.
        accepted = (int, float) if expected is float else expected
        if isinstance(value, bool) or not isinstance(value, accepted):
            raise ValueError(
                f"配置项 [{section_name}].{name} 类型错误：期望 {expected.__name__}，实际 {type(value).__name__}"
            )
        values[name] = expected(value)
    return replace(section, **values)


def config_from_dict(data: dict[str, Any]) -> TrackerConfig:
    """Build a TrackerConfig from nested section -> field overrides."""

    cfg = TrackerConfig()
    sections = {f.name for f in fields(cfg)}
    unknown = sorted(set(data) - sections)
    if unknown:
        raise ValueError(f"未知配置段：{', '.join(unknown)}（可用：{', '.join(sorted(sections))}）")
    updated: dict[str, Any] = {}
    for name, overrides in data.items():
        if not isinstance(overrides, dict):
            raise ValueError(f"配置段 [{name}] 必须是对象（JSON object）")
        updated[name] = _apply_overrides(getattr(cfg, name), overrides, name)
    return replace(cfg, **updated)


def load_config(path: str | Path | None) -> TrackerConfig:
    """Load a JSON config file; None means defaults."""

    if path is None:
        return TrackerConfig()
    p = Path(path)
    text = p.read_text(encoding="utf-8").strip()
    if not text:
        return TrackerConfig()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"配置文件不是合法 JSON：{p}（{exc}）") from exc
    if not isinstance(data, dict):
        raise ValueError(f"配置文件顶层必须是对象：{p}")
    return config_from_dict(data)
