# nextbus/domain/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from math import asin, atan2, cos, degrees, radians, sin, sqrt
from typing import Any

from nextbus.timekit import format_rfc822z

EARTH_RADIUS_KM = 6371.0088


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(a)) * 1000.0


def initial_bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compass bearing (0 = north, clockwise) to leave point 1 towards point 2."""
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlon = lon2 - lon1
    x = sin(dlon) * cos(lat2)
    y = cos(lat1) * sin(lat2) - sin(lat1) * cos(lat2) * cos(dlon)
    return (degrees(atan2(x, y)) + 360.0) % 360.0


def encode_polyline(points: list[tuple[float, float]]) -> str:
    """Google encoded polyline (precision 1e5) of (lat, lon) points."""
    out: list[str] = []
    prev_lat = prev_lon = 0
    for lat, lon in points:
        ilat, ilon = round(lat * 1e5), round(lon * 1e5)
        for delta in (ilat - prev_lat, ilon - prev_lon):
            value = ~(delta << 1) if delta < 0 else delta << 1
            while value >= 0x20:
                out.append(chr((0x20 | (value & 0x1F)) + 63))
                value >>= 5
            out.append(chr(value + 63))
        prev_lat, prev_lon = ilat, ilon
    return "".join(out)


@dataclass
class Stop:
    stop_id: int
    name: str = ""
    lat: float | None = None
    lon: float | None = None
    road: str = ""
    bearing: float | None = None
    adherence_point: bool = False

    # meters from the query point, only set on radius searches
    distance: float | None = None

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lon is not None

    def distance_m_to(self, lat: float, lon: float) -> float:
        if not self.has_location:
            return float("inf")
        return haversine_m(self.lat, self.lon, lat, lon)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stop_id": self.stop_id,
            "name": self.name,
            "lat": self.lat,
            "lon": self.lon,
            "road": self.road,
            "bearing": self.bearing,
            "adherence_point": self.adherence_point,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Stop:
        return cls(
            stop_id=int(d["stop_id"]),
            name=d.get("name") or "",
            lat=d.get("lat"),
            lon=d.get("lon"),
            road=d.get("road") or "",
            bearing=d.get("bearing"),
            adherence_point=bool(d.get("adherence_point", False)),
        )


@dataclass
class Route:
    route_id: str
    name: str = ""
    long_name: str = ""
    direction: str = ""
    polyline: str = ""
    color: str = ""
    description: str = ""
    url: str = ""
    stops: list[int] = field(default_factory=list)
    start: date | None = None
    end: date | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.route_id

    def to_dict(self, *, only_name: bool = False) -> dict[str, Any]:
        if only_name:
            return {"route_id": self.route_id, "name": self.display_name}
        return {
            "route_id": self.route_id,
            "name": self.display_name,
            "long_name": self.long_name,
            "direction": self.direction,
            "polyline": self.polyline,
            "color": self.color,
            "description": self.description,
            "url": self.url,
            "stops": list(self.stops),
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Route:
        return cls(
            route_id=str(d["route_id"]),
            name=d.get("name") or "",
            long_name=d.get("long_name") or "",
            direction=d.get("direction") or "",
            polyline=d.get("polyline") or "",
            color=d.get("color") or "",
            description=d.get("description") or "",
            url=d.get("url") or "",
            stops=[int(x) for x in d.get("stops") or []],
            start=date.fromisoformat(d["start"]) if d.get("start") else None,
            end=date.fromisoformat(d["end"]) if d.get("end") else None,
        )


@dataclass(frozen=True)
class ScheduledArrival:
    stop_id: int
    route_id: str
    scheduled: timedelta
    days: tuple[bool, bool, bool, bool, bool, bool, bool]
    is_timepoint: bool = True
    route_name: str = ""

    def runs_on(self, weekday: int) -> bool:
        return bool(self.days[weekday % 7])

    def to_dict(self) -> dict[str, Any]:
        return {
            "stop_id": self.stop_id,
            "route_id": self.route_id,
            "scheduled_s": int(self.scheduled.total_seconds()),
            "days": [int(d) for d in self.days],
            "is_timepoint": self.is_timepoint,
            "route_name": self.route_name,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ScheduledArrival:
        return cls(
            stop_id=int(d["stop_id"]),
            route_id=str(d["route_id"]),
            scheduled=timedelta(seconds=int(d["scheduled_s"])),
            days=tuple(bool(x) for x in d["days"]),  # type: ignore[arg-type]
            is_timepoint=bool(d.get("is_timepoint", True)),
            route_name=d.get("route_name") or "",
        )


@dataclass(frozen=True)
class RealtimeEstimate:
    route: str
    # offset since local midnight of the day the estimate was fetched
    expected: timedelta


@dataclass(frozen=True)
class Arrival:
    route: str
    scheduled: datetime
    expected: datetime

    def to_payload(self) -> dict[str, str]:
        return {
            "Route": self.route,
            "Scheduled": format_rfc822z(self.scheduled),
            "Expected": format_rfc822z(self.expected),
        }


@dataclass(frozen=True)
class StopArrivals:
    stop_id: int
    arrivals: list[Arrival] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReconcileResult:
    arrivals: dict[int, list[Arrival]] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)
    incomplete: set[int] = field(default_factory=set)

    @property
    def complete(self) -> bool:
        return not self.incomplete

    def to_payload(self) -> dict[str, Any]:
        return {
            "stops": {
                str(sid): [a.to_payload() for a in items]
                for sid, items in sorted(self.arrivals.items())
            },
            "errors": {str(sid): msg for sid, msg in sorted(self.errors.items())},
            "incomplete": sorted(self.incomplete),
        }


# ---------------- Static feed ----------------


@dataclass(frozen=True)
class ServiceCalendar:
    days: tuple[bool, bool, bool, bool, bool, bool, bool]
    start: date | None = None
    end: date | None = None


@dataclass
class FeedRows:
    routes: list[dict] = field(default_factory=list)
    trips: list[dict] = field(default_factory=list)
    calendar: list[dict] = field(default_factory=list)
    stop_times: list[dict] = field(default_factory=list)
    stops: list[dict] | None = None
    shapes: list[dict] | None = None


class RouteIdMapping:
    """Bidirectional map between feed route ids and system route ids."""

    def __init__(self, feed_to_system: dict[str, str] | None = None):
        self._to_system: dict[str, str] = {}
        self._to_feed: dict[str, list[str]] = {}
        for feed_id, system_id in (feed_to_system or {}).items():
            self.add(feed_id, system_id)

    def add(self, feed_id: str, system_id: str) -> None:
        f = (feed_id or "").strip()
        s = (system_id or "").strip()
        if not f or not s:
            return
        self._to_system[f] = s
        self._to_feed.setdefault(s, [])
        if f not in self._to_feed[s]:
            self._to_feed[s].append(f)

    def to_system(self, feed_id: str | None) -> str | None:
        return self._to_system.get((feed_id or "").strip())

    def to_feed(self, system_id: str | None) -> list[str]:
        return list(self._to_feed.get((system_id or "").strip(), []))

    def system_ids(self) -> list[str]:
        return sorted(self._to_feed)

    def __len__(self) -> int:
        return len(self._to_system)

    def __contains__(self, feed_id: object) -> bool:
        return isinstance(feed_id, str) and feed_id.strip() in self._to_system


@dataclass
class RebuildReport:
    ok: bool = True
    error: str | None = None
    arrivals_written: int = 0
    trips_processed: int = 0
    routes_updated: int = 0
    stops_updated: int = 0
    skipped: dict[str, int] = field(default_factory=dict)

    def skip(self, reason: str, n: int = 1) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + n

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "arrivals_written": self.arrivals_written,
            "trips_processed": self.trips_processed,
            "routes_updated": self.routes_updated,
            "stops_updated": self.stops_updated,
            "skipped": dict(sorted(self.skipped.items())),
        }
