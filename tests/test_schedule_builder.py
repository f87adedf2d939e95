from __future__ import annotations

from datetime import date, timedelta

import pytest
from conftest import hm

from nextbus.domain.errors import FeedSourceError
from nextbus.domain.models import FeedRows, Route, RouteIdMapping, Stop, encode_polyline
from nextbus.services.arrivals_engine import schedule_cache_key
from nextbus.services.fast_cache import MemoryCache
from nextbus.services.route_names import RouteNameCache
from nextbus.services.schedule_builder import ScheduleBuilder, TimingRow, interpolate
from nextbus.services.store import InMemoryStore

WEEKDAY_CAL = {
    "service_id": "WK",
    "monday": "1",
    "tuesday": "1",
    "wednesday": "1",
    "thursday": "1",
    "friday": "1",
    "saturday": "0",
    "sunday": "0",
    "start_date": "20240101",
    "end_date": "20240630",
}


def st(trip, seq, stop, t=""):
    return {"trip_id": trip, "stop_sequence": str(seq), "stop_id": str(stop), "arrival_time": t}


def make_feed() -> FeedRows:
    return FeedRows(
        routes=[
            {
                "route_id": "R1",
                "route_short_name": "10",
                "route_long_name": "Downtown Loop",
                "route_color": "FF0000",
            }
        ],
        trips=[
            {"trip_id": "T1", "route_id": "R1", "service_id": "WK", "trip_headsign": "Downtown"},
            {"trip_id": "T2", "route_id": "R1", "service_id": "WK"},
            {"trip_id": "T3", "route_id": "RX", "service_id": "WK"},
            {"trip_id": "T4", "route_id": "R1", "service_id": "NOSVC"},
            {"trip_id": "T5", "route_id": "R1", "service_id": "SAT"},
        ],
        calendar=[
            WEEKDAY_CAL,
            {**WEEKDAY_CAL, "service_id": "SAT", "monday": "0", "tuesday": "0", "wednesday": "0",
             "thursday": "0", "friday": "0", "saturday": "1", "end_date": "20241231"},
        ],
        stop_times=[
            # out of order on purpose
            st("T1", 5, 105, "08:06:40"),
            st("T1", 1, 101, "08:00:00"),
            st("T1", 2, 102),
            st("T1", 3, 103),
            st("T1", 4, 104),
            # first row without a time
            st("T2", 1, 101),
            st("T2", 2, 102, "09:00:00"),
            st("T3", 1, 101, "09:30:00"),
            st("T4", 1, 101, "09:45:00"),
            # unknown system stop in the middle
            st("T5", 1, 101, "10:00:00"),
            st("T5", 2, 999, "10:05:00"),
            st("T5", 3, 105, "10:10:00"),
            {"trip_id": "T1", "stop_sequence": "x", "stop_id": "101", "arrival_time": ""},
            st("NOPE", 1, 101, "11:00:00"),
        ],
    )


@pytest.fixture
def sink() -> InMemoryStore:
    s = InMemoryStore()
    for sid in range(101, 106):
        s.put_stop(Stop(stop_id=sid, name=f"Stop {sid}", lat=37.0, lon=-122.0))
    return s


@pytest.fixture
def routes() -> RouteIdMapping:
    return RouteIdMapping({"R1": "1"})


def test_interpolation_between_timepoints():
    rows = [TimingRow(i, str(i), None) for i in range(5)]
    rows[0] = TimingRow(0, "0", timedelta(0))
    rows[4] = TimingRow(4, "4", timedelta(seconds=400))
    out = interpolate(rows)
    assert [o.total_seconds() for _, o, _ in out] == [0, 100, 200, 300, 400]
    assert [tp for _, _, tp in out] == [True, False, False, False, True]


def test_interpolation_uses_every_known_timepoint():
    rows = [
        TimingRow(1, "a", timedelta(seconds=0)),
        TimingRow(2, "b", None),
        TimingRow(3, "c", timedelta(seconds=100)),
        TimingRow(4, "d", None),
        TimingRow(5, "e", None),
        TimingRow(6, "f", timedelta(seconds=400)),
    ]
    out = interpolate(rows)
    assert [o.total_seconds() for _, o, _ in out] == [0, 50, 100, 200, 300, 400]


def test_interpolation_needs_both_endpoints():
    assert interpolate([TimingRow(1, "a", None), TimingRow(2, "b", timedelta(0))]) is None
    assert interpolate([TimingRow(1, "a", timedelta(0)), TimingRow(2, "b", None)]) is None
    assert interpolate([]) is None


def test_rebuild_writes_interpolated_schedule(sink, routes):
    report = ScheduleBuilder(sink).rebuild(make_feed(), routes)
    assert report.ok

    monday = 0
    at_102 = sink.get_scheduled_arrivals(102, monday)
    assert len(at_102) == 1
    assert at_102[0].route_id == "1"
    assert at_102[0].scheduled == hm(8, 1, 40)
    assert at_102[0].is_timepoint is False

    assert [a.scheduled for a in sink.get_scheduled_arrivals(103, monday)] == [hm(8, 3, 20)]
    assert [a.scheduled for a in sink.get_scheduled_arrivals(104, monday)] == [hm(8, 5)]
    assert sink.get_scheduled_arrivals(101, monday)[0].is_timepoint is True

    # Saturday only runs T5
    saturday = 5
    assert [a.scheduled for a in sink.get_scheduled_arrivals(101, saturday)] == [hm(10, 0)]
    assert [a.scheduled for a in sink.get_scheduled_arrivals(105, saturday)] == [hm(10, 10)]
    assert sink.get_scheduled_arrivals(102, saturday) == []


def test_rebuild_counts_skips(sink, routes):
    report = ScheduleBuilder(sink).rebuild(make_feed(), routes)
    assert report.trips_processed == 2
    assert report.skipped == {
        "trip_unmapped_route": 1,
        "stop_time_malformed": 1,
        "stop_time_unknown_trip": 2,
        "trip_missing_endpoints": 1,
        "trip_unknown_service": 1,
        "stop_unknown": 1,
    }


def test_rebuild_is_idempotent(sink, routes):
    builder = ScheduleBuilder(sink)
    first = builder.rebuild(make_feed(), routes)
    snapshot = sink.all_scheduled_arrivals()
    second = builder.rebuild(make_feed(), routes)

    assert first.arrivals_written == second.arrivals_written == len(snapshot)
    assert set(sink.all_scheduled_arrivals()) == set(snapshot)
    assert len(sink.all_scheduled_arrivals()) == len(snapshot)


def test_retrieval_is_sorted_for_every_stop_and_day(sink, routes):
    feed = make_feed()
    feed.stop_times += [st("T6", 1, 101, "07:00:00"), st("T6", 2, 105, "07:30:00")]
    feed.trips.append({"trip_id": "T6", "route_id": "R1", "service_id": "WK"})
    ScheduleBuilder(sink).rebuild(feed, routes)

    for sid in sink.stop_ids():
        for wd in range(7):
            offsets = [a.scheduled for a in sink.get_scheduled_arrivals(sid, wd)]
            assert offsets == sorted(offsets)
    assert [a.scheduled for a in sink.get_scheduled_arrivals(101, 0)] == [hm(7, 0), hm(8, 0)]


def test_route_metadata_window_and_path(sink, routes):
    sink.put_route(Route(route_id="1", name="old"))
    report = ScheduleBuilder(sink).rebuild(make_feed(), routes)

    route = sink.get_route("1")
    assert report.routes_updated == 1
    assert route.name == "10"
    assert route.long_name == "Downtown Loop"
    assert route.color == "FF0000"
    assert route.start == date(2024, 1, 1)
    assert route.end == date(2024, 12, 31)
    assert route.stops == [101, 102, 103, 104, 105]
    assert route.direction == "Downtown"


def test_stops_table_adds_and_refreshes_stops(sink, routes):
    feed = make_feed()
    feed.stops = [
        {"stop_id": "106", "stop_name": "Market & 5th", "stop_lat": "37.78", "stop_lon": "-122.40"},
        {"stop_id": "101", "stop_name": "Renamed", "stop_lat": "", "stop_lon": ""},
        {"stop_id": "bad", "stop_name": "no number"},
    ]
    feed.stop_times += [st("T7", 1, 106, "12:00:00"), st("T7", 2, 101, "12:10:00")]
    feed.trips.append({"trip_id": "T7", "route_id": "R1", "service_id": "WK"})

    report = ScheduleBuilder(sink).rebuild(feed, routes)
    # 106 is new, 101 renamed, 101 and 105 become adherence points
    assert report.stops_updated == 3
    assert report.skipped["stop_unmapped"] == 1

    new = sink.get_stops([106])[0]
    assert (new.name, new.lat, new.lon) == ("Market & 5th", 37.78, -122.40)
    refreshed = sink.get_stops([101])[0]
    assert refreshed.name == "Renamed"
    assert refreshed.lat == 37.0
    assert [a.scheduled for a in sink.get_scheduled_arrivals(106, 0)] == [hm(12, 0)]


def test_stop_id_map_translates_feed_ids(sink, routes):
    feed = FeedRows(
        routes=[],
        trips=[{"trip_id": "T1", "route_id": "R1", "service_id": "WK"}],
        calendar=[WEEKDAY_CAL],
        stop_times=[st("T1", 1, "S-A", "06:00:00"), st("T1", 2, "S-B", "06:10:00")],
    )
    ScheduleBuilder(sink).rebuild(feed, routes, stop_ids={"S-A": 101, "S-B": 102})
    assert [a.scheduled for a in sink.get_scheduled_arrivals(102, 2)] == [hm(6, 10)]


def test_rebuild_invalidates_caches(sink, routes):
    cache = MemoryCache()
    names = RouteNameCache(sink)
    names.name_for("1")
    version = sink.schedule_version()
    cache.set(schedule_cache_key(101, 0, version), [{"stale": True}])

    ScheduleBuilder(sink, cache, names).rebuild(make_feed(), routes)
    assert cache.get(schedule_cache_key(101, 0, version)) is None
    assert sink.schedule_version() != version
    assert len(names) == 0


class _FailingSource:
    def fetch(self):
        raise FeedSourceError("GTFS download failed: timeout")


class _StaticSource:
    def __init__(self, feed):
        self.feed = feed

    def fetch(self):
        return self.feed


def test_run_reports_unreachable_feed_and_keeps_data(sink, routes):
    builder = ScheduleBuilder(sink)
    builder.rebuild(make_feed(), routes)
    before = sink.all_scheduled_arrivals()

    report = builder.run(_FailingSource(), routes)
    assert not report.ok
    assert "timeout" in report.error
    assert sink.all_scheduled_arrivals() == before


def test_run_with_source(sink, routes):
    report = ScheduleBuilder(sink).run(_StaticSource(make_feed()), routes)
    assert report.ok
    assert report.to_dict()["arrivals_written"] == report.arrivals_written > 0


def test_encode_polyline_reference_points():
    points = [(38.5, -120.2), (40.7, -120.95), (43.252, -126.453)]
    assert encode_polyline(points) == "_p~iF~ps|U_ulLnnqC_mqNvxq`@"
    assert encode_polyline([]) == ""


def test_route_object_is_not_mutated_in_place(sink, routes):
    sink.put_route(Route(route_id="1", name="old", stops=[9]))
    before = sink.get_route("1")

    ScheduleBuilder(sink).rebuild(make_feed(), routes)

    assert (before.name, before.stops, before.start) == ("old", [9], None)
    after = sink.get_route("1")
    assert after is not before
    assert (after.name, after.stops) == ("10", [101, 102, 103, 104, 105])


# stops laid out north along a street, then one block east
STREET = {101: (37.0, -122.0), 104: (37.005, -122.0), 102: (37.01, -122.0), 103: (37.01, -121.99)}


def _tp(trip, seq, stop, t="", timepoint=""):
    return {**st(trip, seq, stop, t), "timepoint": timepoint}


def street_feed(shapes: list[dict] | None = None) -> FeedRows:
    return FeedRows(
        routes=[{"route_id": "R1", "route_short_name": "10"}],
        trips=[
            {"trip_id": "T1", "route_id": "R1", "service_id": "WK", "shape_id": "SH1"},
            {"trip_id": "T2", "route_id": "R1", "service_id": "WK", "shape_id": "SH1"},
        ],
        calendar=[WEEKDAY_CAL],
        stop_times=[
            _tp("T1", 1, 101, "08:00:00", "1"),
            _tp("T1", 2, 104),
            _tp("T1", 3, 102, "08:05:00", "0"),
            _tp("T1", 4, 103, "08:10:00"),
            _tp("T2", 1, 101, "09:00:00", "1"),
            _tp("T2", 2, 102, "09:05:00", "0"),
        ],
        shapes=shapes,
    )


@pytest.fixture
def street_sink() -> InMemoryStore:
    s = InMemoryStore()
    for sid, (lat, lon) in STREET.items():
        s.put_stop(Stop(stop_id=sid, name=f"Stop {sid}", lat=lat, lon=lon, adherence_point=sid == 104))
    return s


def test_adherence_points_follow_timepoints(street_sink, routes):
    ScheduleBuilder(street_sink).rebuild(street_feed(), routes)

    flags = {s.stop_id: s.adherence_point for s in street_sink.get_stops(sorted(STREET))}
    # explicit timepoint=1, explicit 0, blank column with a time, interpolated
    assert flags == {101: True, 102: False, 103: True, 104: False}


def test_bearing_points_to_next_stop(street_sink, routes):
    ScheduleBuilder(street_sink).rebuild(street_feed(), routes)

    bearings = {s.stop_id: s.bearing for s in street_sink.get_stops(sorted(STREET))}
    # last stop keeps the heading it arrived with
    assert bearings == {101: 0.0, 104: 0.0, 102: 90.0, 103: 90.0}


def test_polyline_from_shape_of_longest_trip(street_sink, routes):
    shapes = [
        {"shape_id": "SH1", "shape_pt_sequence": "3", "shape_pt_lat": "43.252", "shape_pt_lon": "-126.453"},
        {"shape_id": "SH1", "shape_pt_sequence": "1", "shape_pt_lat": "38.5", "shape_pt_lon": "-120.2"},
        {"shape_id": "SH1", "shape_pt_sequence": "2", "shape_pt_lat": "40.7", "shape_pt_lon": "-120.95"},
        {"shape_id": "SH1", "shape_pt_sequence": "x", "shape_pt_lat": "1", "shape_pt_lon": "1"},
    ]
    report = ScheduleBuilder(street_sink).rebuild(street_feed(shapes), routes)

    assert street_sink.get_route("1").polyline == "_p~iF~ps|U_ulLnnqC_mqNvxq`@"
    assert report.skipped["shape_malformed"] == 1


def test_polyline_falls_back_to_stop_positions(street_sink, routes):
    ScheduleBuilder(street_sink).rebuild(street_feed(), routes)

    route = street_sink.get_route("1")
    assert route.stops == [101, 104, 102, 103]
    assert route.polyline == encode_polyline([STREET[sid] for sid in route.stops])
