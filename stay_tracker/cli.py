"""Command-line interface for stay_tracker.

Run:
    python -m stay_tracker replay --csv Path.csv --db tracker.duckdb
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date

from stay_tracker.config import TrackerConfig, load_config
from stay_tracker.csv_io import load_samples, write_places_csv
from stay_tracker.models import DEFAULT_TZ, LocationSample, Place
from stay_tracker.replay import replay_track
from stay_tracker.store import DuckDBStore, resolve_pending
from stay_tracker.timeutils import day_range_s, dt_from_epoch_s, format_hhmmss

logger = logging.getLogger(__name__)


def _build_resolver(args: argparse.Namespace, cfg: TrackerConfig):
    from dataclasses import replace

    from stay_tracker.geocode import GeocodeCache, GeocodeResolver, JsonDiskCache, NominatimGeocodeProvider

    nominatim = cfg.nominatim
    if args.geocode_lang is not None:
        nominatim = replace(nominatim, accept_language=args.geocode_lang)
    if args.geocode_user_agent is not None:
        nominatim = replace(nominatim, user_agent=args.geocode_user_agent)
    if args.geocode_min_interval is not None:
        nominatim = replace(nominatim, min_interval_seconds=args.geocode_min_interval)

    disk = JsonDiskCache(args.geocode_cache) if args.geocode_cache else None
    cache = GeocodeCache(radius_m=cfg.geocode.cache_radius_m, disk=disk, precision=cfg.geocode.key_precision)
    print(f"逆地理编码：本地缓存 {len(cache)} 条，缓存半径 {cfg.geocode.cache_radius_m:.0f}m", file=sys.stderr)
    return GeocodeResolver(NominatimGeocodeProvider(nominatim), cache, config=cfg.geocode)


def _cmd_replay(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    samples, summary = load_samples(args.csv)
    print(f"读取样本：total_rows={summary.rows_total}, parsed={summary.rows_parsed}, skipped={summary.rows_skipped}")
    if not samples:
        print("没有可回放的样本。", file=sys.stderr)
        return 1

    resolver = _build_resolver(args, cfg) if args.geocode else None
    store = DuckDBStore.open(args.db)
    try:
        result = replay_track(samples, store, resolver=resolver, config=cfg)
    finally:
        store.close()

    print("### 采样")
    print(
        f"delivered={result.delivered}, suppressed={result.suppressed}, accepted={result.accepted}, "
        f"low_accuracy={result.rejected['low_accuracy']}, rate_limited={result.rejected['rate_limited']}, "
        f"mode_transitions={result.mode_transitions}"
    )
    if result.accepted_interval is not None:
        d = result.accepted_interval
        print(f"接受样本间隔（秒）：min={d.min_s:.0f}, median={d.median_s:.0f}, p95={d.p95_s:.0f}, max={d.max_s:.0f}")
    print()
    print("### 停留点")
    print(f"kept={len(result.places)}, discarded={result.discarded_places}, errors={result.errors}")
    for place in result.places:
        _print_place(place, args.tz)

    n = write_places_csv(result.places, args.out, args.tz)
    print(f"已导出：{args.out}（{n} 个停留点），数据库：{args.db}")
    return 0


def _print_place(place: Place, tz_name: str) -> None:
    start = dt_from_epoch_s(place.start_time, tz_name).strftime("%Y-%m-%d %H:%M")
    end = dt_from_epoch_s(place.end_time, tz_name).strftime("%H:%M")
    print(f"  {start}–{end} ({format_hhmmss(place.duration_seconds)}, {place.sample_count} 样本)  {place.display_address}")


def _print_sample(sample: LocationSample, tz_name: str) -> None:
    t = dt_from_epoch_s(sample.timestamp, tz_name).strftime("%H:%M:%S")
    print(
        f"  {t}  {sample.latitude:.6f}, {sample.longitude:.6f}  "
        f"acc={sample.horizontal_accuracy:.0f}m speed={sample.speed:.1f}m/s"
    )


def _cmd_places(args: argparse.Namespace) -> int:
    day = date.fromisoformat(args.date) if args.date else date.today()
    start, end = day_range_s(day, day, args.tz)
    store = DuckDBStore.open(args.db)
    try:
        places = store.places_overlapping(start, end)[: args.limit]
        samples = store.most_recent(args.limit, "samples", start=start, end=end) if args.raw else []
    finally:
        store.close()

    print(f"### 停留点（{day.isoformat()}，{len(places)} 个）")
    for place in places:
        _print_place(place, args.tz)
    if args.raw:
        print()
        print(f"### 原始样本（{len(samples)} 个）")
        for sample in samples:
            _print_sample(sample, args.tz)
    return 0


def _cmd_resolve_pending(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    resolver = _build_resolver(args, cfg)
    store = DuckDBStore.open(args.db)
    try:
        outcomes = resolve_pending(store, resolver, limit=args.limit, interval_s=args.interval)
    except KeyboardInterrupt:
        # 优雅中断：已解析的地址已逐条保存
        print("\n收到中断信号：停止继续请求。", file=sys.stderr, flush=True)
        return 130
    finally:
        resolver.shutdown()
        store.close()

    total = sum(outcomes.values())
    summary = ", ".join(f"{k}={v}" for k, v in sorted(outcomes.items()))
    print(f"待解析停留点 {total} 个：{summary or '无'}")
    return 0


def _add_geocode_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--geocode-cache", type=str, default="geocode_cache.json", help="地址缓存文件（空字符串表示不落盘）")
    p.add_argument("--geocode-lang", type=str, default=None, help="逆地理编码语言（如 zh-CN/en）")
    p.add_argument(
        "--geocode-min-interval",
        type=float,
        default=None,
        help="请求最小间隔（秒），公共服务建议>=1.0",
    )
    p.add_argument(
        "--geocode-user-agent",
        type=str,
        default=None,
        help="HTTP User-Agent（建议填你自己的标识，避免被服务方屏蔽）",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="stay_tracker")
    p.add_argument("--log-level", type=str, default="INFO", help="日志级别（DEBUG/INFO/WARNING）")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_rep = sub.add_parser("replay", help="把 Path.csv 轨迹回放给采样引擎，提取停留点")
    p_rep.add_argument("--csv", type=str, default="Path.csv", help="输入CSV路径")
    p_rep.add_argument("--db", type=str, default="tracker.duckdb", help="DuckDB 数据库路径")
    p_rep.add_argument("--out", type=str, default="places.csv", help="输出 places.csv 路径")
    p_rep.add_argument("--tz", type=str, default=DEFAULT_TZ, help="时区（IANA），默认 Asia/Shanghai")
    p_rep.add_argument("--config", type=str, default=None, help="JSON 配置文件（覆盖默认阈值）")
    p_rep.add_argument("--geocode", action="store_true", help="启用逆地理编码（停留点 -> 地址）")
    _add_geocode_args(p_rep)
    p_rep.set_defaults(func=_cmd_replay)

    p_pl = sub.add_parser("places", help="列出某天的停留点（可选原始样本）")
    p_pl.add_argument("--db", type=str, default="tracker.duckdb", help="DuckDB 数据库路径")
    p_pl.add_argument("--date", type=str, default=None, help="日期（YYYY-MM-DD），默认今天")
    p_pl.add_argument("--tz", type=str, default=DEFAULT_TZ, help="时区（IANA）")
    p_pl.add_argument("--limit", type=int, default=500, help="最多显示条数")
    p_pl.add_argument("--raw", action="store_true", help="同时列出原始样本")
    p_pl.set_defaults(func=_cmd_places)

    p_rp = sub.add_parser("resolve-pending", help="为尚无地址的停留点补做逆地理编码")
    p_rp.add_argument("--db", type=str, default="tracker.duckdb", help="DuckDB 数据库路径")
    p_rp.add_argument("--config", type=str, default=None, help="JSON 配置文件")
    p_rp.add_argument("--limit", type=int, default=50, help="本次最多处理多少个停留点")
    p_rp.add_argument("--interval", type=float, default=2.0, help="每次请求之间的间隔（秒）")
    _add_geocode_args(p_rp)
    p_rp.set_defaults(func=_cmd_resolve_pending)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
