from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import streamlit as st

from stay_tracker.config import load_config
from stay_tracker.models import DEFAULT_TZ, LocationSample, Place
from stay_tracker.store import DuckDBStore, resolve_pending
from stay_tracker.timeutils import day_range_s, dt_from_epoch_s, format_hhmmss, tzinfo_from_name


def _overlap_seconds(place: Place, start_s: float, end_s_exclusive: float) -> float:
    lo = max(place.start_time, start_s)
    hi = min(place.end_time, end_s_exclusive)
    return max(0.0, hi - lo)


@st.cache_data(show_spinner=False)
def _load(db_path: str, start_s: float, end_s: float, limit: int, mtime: float) -> tuple[list[Place], list[LocationSample]]:
    _ = mtime  # part of cache key so updated databases reload automatically
    store = DuckDBStore.open(db_path)
    try:
        places = store.places_overlapping(start_s, end_s)[:limit]
        samples = store.most_recent(limit, "samples", start=start_s, end=end_s)
    finally:
        store.close()
    return list(places), list(samples)


def main() -> None:
    st.set_page_config(page_title="停留点查看器", layout="wide")
    st.title("停留点与原始样本")

    with st.sidebar:
        st.subheader("数据与时区")
        tz_name = st.text_input("时区（IANA）", value=DEFAULT_TZ)
        db_path = st.text_input("DuckDB 路径", value="tracker.duckdb")
        limit = int(st.number_input("最多读取条数", value=2000, step=500))

        st.subheader("时间范围")
        today = datetime.now(tzinfo_from_name(tz_name)).date()
        start_d = st.date_input("开始日期", value=today - timedelta(days=1))
        end_d = st.date_input("结束日期", value=today)

        st.subheader("补全地址")
        config_path = st.text_input("配置文件（可选）", value="")
        geocode_cache = st.text_input("地址缓存文件", value="geocode_cache.json")
        resolve_clicked = st.button("为未解析的停留点补做逆地理编码", use_container_width=True)

    p = Path(db_path)
    if not p.exists():
        st.error(f"找不到数据库：{db_path!r}。先运行 python -m stay_tracker replay 生成。")
        return
    if start_d > end_d:
        st.error("开始日期不能晚于结束日期。")
        return

    if resolve_clicked:
        from stay_tracker.geocode import GeocodeCache, GeocodeResolver, JsonDiskCache, NominatimGeocodeProvider

        cfg = load_config(config_path or None)
        cache = GeocodeCache(
            radius_m=cfg.geocode.cache_radius_m,
            disk=JsonDiskCache(geocode_cache) if geocode_cache else None,
            precision=cfg.geocode.key_precision,
        )
        resolver = GeocodeResolver(NominatimGeocodeProvider(cfg.nominatim), cache, config=cfg.geocode)
        store = DuckDBStore.open(db_path)
        try:
            with st.spinner("正在请求逆地理编码 ..."):
                outcomes = resolve_pending(store, resolver, limit=50, interval_s=cfg.nominatim.min_interval_seconds)
        finally:
            resolver.shutdown()
            store.close()
        st.success("完成：" + (", ".join(f"{k}={v}" for k, v in sorted(outcomes.items())) or "没有待解析的停留点"))

    start_s, end_s = day_range_s(start_d, end_d, tz_name)
    try:
        places, samples = _load(db_path, start_s, end_s, limit, p.stat().st_mtime)
    except Exception as exc:
        st.exception(exc)
        return

    total_s = sum(_overlap_seconds(pl, start_s, end_s) for pl in places)
    resolved = sum(1 for pl in places if pl.is_resolved)

    st.subheader("汇总")
    c1, c2, c3 = st.columns(3)
    c1.metric("停留总时长", format_hhmmss(total_s))
    c2.metric("停留点数（已解析地址）", f"{len(places)}（{resolved}）")
    c3.metric("原始样本数", str(len(samples)))

    if places or samples:
        points = [{"lat": s.latitude, "lon": s.longitude} for s in samples]
        points += [{"lat": pl.latitude, "lon": pl.longitude} for pl in places]
        st.map(points)

    st.subheader("停留点")
    rows = [
        {
            "start_time": dt_from_epoch_s(pl.start_time, tz_name).isoformat(sep=" "),
            "end_time": dt_from_epoch_s(pl.end_time, tz_name).isoformat(sep=" "),
            "duration": format_hhmmss(pl.duration_seconds),
            "samples": pl.sample_count,
            "address": pl.display_address,
        }
        for pl in sorted(places, key=lambda x: x.start_time, reverse=True)
    ]
    st.dataframe(rows, use_container_width=True, height=360)

    with st.expander("原始样本", expanded=False):
        sample_rows = [
            {
                "time": dt_from_epoch_s(s.timestamp, tz_name).isoformat(sep=" "),
                "latitude": s.latitude,
                "longitude": s.longitude,
                "horizontal_accuracy": s.horizontal_accuracy,
                "speed": s.speed,
            }
            for s in samples
        ]
        st.dataframe(sample_rows, use_container_width=True, height=360)

    st.caption("说明：日期范围按本地时区计算，区间为 [开始日 00:00, 结束日+1 00:00)；停留时长按与区间的重叠部分统计。")


if __name__ == "__main__":
    main()
