# nextbus/services/schedule_builder.py
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, timedelta
from pathlib import Path

from nextbus.config import settings
from nextbus.domain.errors import FeedSourceError
from nextbus.domain.models import (
    FeedRows,
    RebuildReport,
    Route,
    RouteIdMapping,
    ScheduledArrival,
    ServiceCalendar,
    Stop,
    encode_polyline,
    haversine_m,
    initial_bearing_deg,
)
from nextbus.services.arrivals_engine import schedule_cache_key
from nextbus.services.ports import FastCache, FeedSource, ScheduleSink
from nextbus.services.route_names import RouteNameCache
from nextbus.services.spatial_index import StopSpatialIndex
from nextbus.timekit import parse_gtfs_time, parse_yyyymmdd

log = logging.getLogger("schedule_builder")

_DAY_COLUMNS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class TimingRow:
    sequence: int
    stop_id: str
    arrival: timedelta | None
    # stop_times.timepoint: True exact, False approximate, None when the column is blank
    timepoint: bool | None = None


# ---------------- Row parsing ----------------


def parse_calendar(rows: list[dict], report: RebuildReport) -> dict[str, ServiceCalendar]:
    out: dict[str, ServiceCalendar] = {}
    for row in rows:
        sid = row.get("service_id") or ""
        flags = [(row.get(c) or "").strip() for c in _DAY_COLUMNS]
        if not sid or any(f not in ("0", "1") for f in flags):
            report.skip("calendar_malformed")
            continue
        out[sid] = ServiceCalendar(
            days=tuple(f == "1" for f in flags),  # type: ignore[arg-type]
            start=parse_yyyymmdd(row.get("start_date")),
            end=parse_yyyymmdd(row.get("end_date")),
        )
    return out


def parse_timing_rows(
    rows: list[dict], known_trips: set[str], report: RebuildReport
) -> dict[str, list[TimingRow]]:
    by_trip: dict[str, list[TimingRow]] = defaultdict(list)
    for row in rows:
        trip_id = row.get("trip_id") or ""
        stop_id = row.get("stop_id") or ""
        raw_time = row.get("arrival_time") or row.get("departure_time") or ""
        try:
            seq = int(row.get("stop_sequence") or "")
        except ValueError:
            report.skip("stop_time_malformed")
            continue
        arrival = parse_gtfs_time(raw_time)
        if not trip_id or not stop_id or (raw_time and arrival is None):
            report.skip("stop_time_malformed")
            continue
        if trip_id not in known_trips:
            report.skip("stop_time_unknown_trip")
            continue
        flag = (row.get("timepoint") or "").strip()
        timepoint = {"1": True, "0": False}.get(flag)
        by_trip[trip_id].append(TimingRow(sequence=seq, stop_id=stop_id, arrival=arrival, timepoint=timepoint))
    return by_trip


def interpolate(rows: list[TimingRow]) -> list[tuple[TimingRow, timedelta, bool]] | None:
    """Fill blank arrival offsets between known timepoints.

    Rows must already be ordered by sequence. Returns ``(row, offset,
    is_timepoint)`` per row, or None when the first or last row has no time.
    """
    if not rows or rows[0].arrival is None or rows[-1].arrival is None:
        return None

    out: list[tuple[TimingRow, timedelta, bool]] = []
    known = [k for k, r in enumerate(rows) if r.arrival is not None]
    for i, j in zip(known, known[1:], strict=False):
        t_i = rows[i].arrival.total_seconds()
        t_j = rows[j].arrival.total_seconds()
        out.append((rows[i], rows[i].arrival, True))
        for m in range(i + 1, j):
            secs = t_i + (t_j - t_i) * (m - i) / (j - i)
            out.append((rows[m], timedelta(seconds=round(secs)), False))
    out.append((rows[-1], rows[-1].arrival, True))
    return out


def parse_shapes(rows: list[dict] | None, report: RebuildReport) -> dict[str, list[tuple[float, float]]]:
    """shapes.txt points per shape id, ordered by sequence; single-point shapes dropped."""
    by_shape: dict[str, list[tuple[int, float, float]]] = defaultdict(list)
    for row in rows or []:
        shape_id = row.get("shape_id") or ""
        try:
            seq = int(row.get("shape_pt_sequence") or "")
            lat = float((row.get("shape_pt_lat") or "").replace(",", "."))
            lon = float((row.get("shape_pt_lon") or "").replace(",", "."))
        except ValueError:
            report.skip("shape_malformed")
            continue
        if not shape_id:
            report.skip("shape_malformed")
            continue
        by_shape[shape_id].append((seq, lat, lon))

    out: dict[str, list[tuple[float, float]]] = {}
    for shape_id, pts in by_shape.items():
        pts.sort(key=lambda p: p[0])
        if len(pts) >= 2:
            out[shape_id] = [(lat, lon) for _, lat, lon in pts]
    return out


def path_bearings(path: list[int], coords: dict[int, tuple[float, float]]) -> dict[int, float]:
    """Direction of travel at each located stop of an ordered stop path.

    A stop faces the next located stop; the last one keeps the heading it
    arrived with. Stops sharing a position with their neighbour get nothing.
    """
    located = [(sid, coords[sid]) for sid in path if sid in coords]
    out: dict[int, float] = {}
    last: tuple[int, float] | None = None
    for (a, pa), (b, pb) in zip(located, located[1:], strict=False):
        if haversine_m(*pa, *pb) < 1.0:
            continue
        bearing = round(initial_bearing_deg(*pa, *pb), 1)
        out.setdefault(a, bearing)
        last = (b, bearing)
    if last is not None:
        out.setdefault(*last)
    return out


def _map_stop(feed_stop: str, stop_ids: dict[str, int] | None) -> int | None:
    if stop_ids:
        hit = stop_ids.get(feed_stop)
        if hit is not None:
            return hit
    try:
        return int(feed_stop)
    except ValueError:
        return None


def _float_or_none(v: str | None) -> float | None:
    try:
        return float(v) if v else None
    except ValueError:
        return None


# ---------------- Builder ----------------


class ScheduleBuilder:
    """Turns static GTFS rows into per-stop, per-weekday scheduled arrivals.

    Everything is computed in memory first; the arrivals are then committed
    with a single ``replace_scheduled_arrivals`` call so readers never see a
    half written schedule.
    """

    def __init__(
        self,
        sink: ScheduleSink,
        cache: FastCache | None = None,
        route_names: RouteNameCache | None = None,
        index: StopSpatialIndex | None = None,
    ):
        self.sink = sink
        self.cache = cache
        self.route_names = route_names
        self.index = index

    def _feed_stops(
        self, rows: list[dict] | None, stop_ids: dict[str, int] | None, report: RebuildReport
    ) -> dict[int, Stop]:
        out: dict[int, Stop] = {}
        for row in rows or []:
            sid = _map_stop(row.get("stop_id") or "", stop_ids)
            if sid is None:
                report.skip("stop_unmapped")
                continue
            out[sid] = Stop(
                stop_id=sid,
                name=row.get("stop_name") or "",
                lat=_float_or_none(row.get("stop_lat")),
                lon=_float_or_none(row.get("stop_lon")),
                road=row.get("stop_desc") or "",
            )
        return out

    @staticmethod
    def _merge_stop(fresh: Stop, old: Stop | None) -> Stop:
        if old is None:
            return fresh
        return Stop(
            stop_id=old.stop_id,
            name=fresh.name or old.name,
            lat=fresh.lat if fresh.lat is not None else old.lat,
            lon=fresh.lon if fresh.lon is not None else old.lon,
            road=fresh.road or old.road,
            bearing=old.bearing,
            adherence_point=old.adherence_point,
        )

    def rebuild(
        self,
        feed: FeedRows,
        routes: RouteIdMapping,
        stop_ids: dict[str, int] | None = None,
    ) -> RebuildReport:
        report = RebuildReport()

        # 1. service calendar
        calendar = parse_calendar(feed.calendar, report)

        # 2. trip -> route / service
        trip_route: dict[str, str] = {}
        trip_service: dict[str, str] = {}
        trip_headsign: dict[str, str] = {}
        trip_shape: dict[str, str] = {}
        for row in feed.trips:
            trip_id = row.get("trip_id") or ""
            system_route = routes.to_system(row.get("route_id"))
            if not trip_id or system_route is None:
                report.skip("trip_unmapped_route")
                continue
            trip_route[trip_id] = system_route
            trip_service[trip_id] = row.get("service_id") or ""
            trip_headsign[trip_id] = row.get("trip_headsign") or ""
            trip_shape[trip_id] = row.get("shape_id") or ""

        # 3. timing rows per trip
        by_trip = parse_timing_rows(feed.stop_times, set(trip_route), report)

        # stops from stops.txt join the known set before arrivals are filtered
        fresh_stops = self._feed_stops(feed.stops, stop_ids, report)
        known_stops = self.sink.stop_ids() | set(fresh_stops)

        # 4-6. windows, interpolation, records
        windows: dict[str, tuple[date | None, date | None]] = {}
        longest: dict[str, tuple[int, list[int], str, str]] = {}
        served: set[int] = set()
        exact: set[int] = set()
        records: list[ScheduledArrival] = []

        for trip_id in sorted(by_trip):
            route_id = trip_route[trip_id]
            service = calendar.get(trip_service[trip_id])
            if service is None:
                report.skip("trip_unknown_service")
                continue

            start, end = windows.get(route_id, (None, None))
            if service.start and (start is None or service.start < start):
                start = service.start
            if service.end and (end is None or service.end > end):
                end = service.end
            windows[route_id] = (start, end)

            rows = sorted(by_trip[trip_id], key=lambda r: r.sequence)
            timed = interpolate(rows)
            if timed is None:
                report.skip("trip_missing_endpoints")
                continue
            report.trips_processed += 1

            path: list[int] = []
            for row, offset, is_timepoint in timed:
                sid = _map_stop(row.stop_id, stop_ids)
                if sid is None or sid not in known_stops:
                    report.skip("stop_unknown")
                    continue
                path.append(sid)
                served.add(sid)
                if (row.timepoint if row.timepoint is not None else is_timepoint):
                    exact.add(sid)
                records.append(
                    ScheduledArrival(
                        stop_id=sid,
                        route_id=route_id,
                        scheduled=offset,
                        days=service.days,
                        is_timepoint=is_timepoint,
                    )
                )
            if route_id not in longest or len(path) > longest[route_id][0]:
                longest[route_id] = (len(path), path, trip_headsign[trip_id], trip_shape[trip_id])

        # routes.txt metadata, keyed by system route id
        meta: dict[str, dict] = {}
        for row in feed.routes:
            system_route = routes.to_system(row.get("route_id"))
            if system_route is not None:
                meta.setdefault(system_route, row)

        # commit: stops, routes, then the arrivals swap
        touched = sorted(set(fresh_stops) | served)
        existing = {s.stop_id: s for s in self.sink.get_stops(touched)}
        located: dict[int, Stop] = {}
        for sid in touched:
            fresh = fresh_stops.get(sid)
            base = self._merge_stop(fresh, existing.get(sid)) if fresh else existing.get(sid)
            if base is not None:
                located[sid] = base
        coords = {sid: (s.lat, s.lon) for sid, s in located.items() if s.has_location}

        bearings: dict[int, float] = {}
        for route_id in sorted(longest):
            for sid, bearing in path_bearings(longest[route_id][1], coords).items():
                bearings.setdefault(sid, bearing)

        changed_stops: set[int] = set()
        for sid, base in located.items():
            stop = replace(
                base,
                bearing=bearings.get(sid, base.bearing),
                adherence_point=sid in exact if sid in served else base.adherence_point,
            )
            if stop != existing.get(sid):
                self.sink.put_stop(stop)
                changed_stops.add(sid)
        report.stops_updated = len(changed_stops)

        shapes = parse_shapes(feed.shapes, report)
        for route_id in sorted(set(windows) | set(meta)):
            current = self.sink.get_route(route_id) or Route(route_id=route_id)
            row = meta.get(route_id) or {}
            fields = {
                "name": row.get("route_short_name") or current.name,
                "long_name": row.get("route_long_name") or current.long_name,
                "description": row.get("route_desc") or current.description,
                "url": row.get("route_url") or current.url,
                "color": row.get("route_color") or current.color,
            }
            if route_id in windows:
                fields["start"], fields["end"] = windows[route_id]
            if route_id in longest:
                _, path, headsign, shape_id = longest[route_id]
                fields["stops"] = list(path)
                fields["direction"] = headsign or current.direction
                points = shapes.get(shape_id) or [coords[sid] for sid in path if sid in coords]
                if len(points) >= 2:
                    fields["polyline"] = encode_polyline(points)
            self.sink.put_route(replace(current, **fields))
            report.routes_updated += 1

        previous_version = self.sink.schedule_version()
        report.arrivals_written = self.sink.replace_scheduled_arrivals(records)
        self._invalidate(known_stops, previous_version, changed_stops)

        if report.skipped:
            log.info("Schedule rebuild skipped rows: %s", dict(sorted(report.skipped.items())))
        log.info(
            "Schedule rebuilt: %d arrivals from %d trips, %d routes",
            report.arrivals_written,
            report.trips_processed,
            report.routes_updated,
        )
        return report

    def _invalidate(self, stop_ids: set[int], version: str, changed_stops: set[int]) -> None:
        if self.cache is not None:
            for sid in stop_ids:
                for wd in range(7):
                    self.cache.delete(schedule_cache_key(sid, wd, version))
            for sid in changed_stops:
                self.cache.delete(f"stop:{sid}")
        if self.route_names is not None:
            self.route_names.invalidate()
        if self.index is not None and changed_stops:
            self.index.invalidate()

    def run(
        self,
        source: FeedSource,
        routes: RouteIdMapping,
        stop_ids: dict[str, int] | None = None,
    ) -> RebuildReport:
        try:
            feed = source.fetch()
        except FeedSourceError as e:
            log.error("Schedule rebuild aborted, feed unavailable: %s", e)
            return RebuildReport(ok=False, error=str(e))
        return self.rebuild(feed, routes, stop_ids)


_builder: ScheduleBuilder | None = None


def get_builder() -> ScheduleBuilder:
    global _builder
    if _builder is None:
        from nextbus.services.fast_cache import get_cache
        from nextbus.services.route_names import get_route_names
        from nextbus.services.spatial_index import get_index
        from nextbus.services.store import get_store

        _builder = ScheduleBuilder(get_store(), get_cache(), get_route_names(), get_index())
    return _builder


def rebuild_from_settings(source: FeedSource | None = None, store_path: str | None = None) -> RebuildReport:
    """One full rebuild with the configured feed and mappings, then snapshot the store."""
    from nextbus.services.feed_source import default_source
    from nextbus.services.mappings import load_route_mapping, load_stop_id_map
    from nextbus.services.store import get_store

    routes = load_route_mapping()
    if not len(routes):
        log.warning("Route id mapping is empty, every trip will be skipped")
    report = get_builder().run(source or default_source(), routes, load_stop_id_map())

    path = store_path or getattr(settings, "STORE_PATH", None)
    if report.ok and path:
        get_store().save(Path(path))
    return report
