# nextbus/services/live_client.py
from __future__ import annotations

import gzip
import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime

import requests
from google.transit import gtfs_realtime_pb2
from pydantic import BaseModel, ConfigDict, Field

from nextbus.config import settings
from nextbus.domain.errors import UpstreamUnavailable
from nextbus.domain.models import RealtimeEstimate, RouteIdMapping
from nextbus.services.common_fetch import FetchFailed, fetch_first
from nextbus.timekit import ONE_DAY, agency_tz, since_midnight

log = logging.getLogger("live_feed")

FAST_RETRY_ATTEMPTS = 2
FAST_RETRY_DELAY = 0.4

_SKIPPED = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate.SKIPPED


class StopPrediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_id: str
    stop_id: str
    epoch: int = Field(..., description="predicted arrival, epoch seconds")


def _int_or_none(v) -> int | None:
    try:
        i = int(v)
    except (TypeError, ValueError):
        return None
    return i or None


def parse_trip_updates_pb(feed: gtfs_realtime_pb2.FeedMessage) -> list[StopPrediction]:
    out: list[StopPrediction] = []
    for ent in feed.entity:
        if not ent.HasField("trip_update"):
            continue
        tu = ent.trip_update
        route_id = (tu.trip.route_id or "").strip()
        if not route_id:
            continue
        for stu in tu.stop_time_update:
            if stu.schedule_relationship == _SKIPPED:
                continue
            epoch = None
            if stu.HasField("arrival") and stu.arrival.time:
                epoch = int(stu.arrival.time)
            elif stu.HasField("departure") and stu.departure.time:
                epoch = int(stu.departure.time)
            sid = (stu.stop_id or "").strip()
            if epoch and sid:
                out.append(StopPrediction(route_id=route_id, stop_id=sid, epoch=epoch))
    return out


def parse_trip_updates_json(raw: dict) -> list[StopPrediction]:
    out: list[StopPrediction] = []
    for ent in raw.get("entity") or []:
        tu = ent.get("tripUpdate") or ent.get("trip_update")
        if not isinstance(tu, dict):
            continue
        trip = tu.get("trip") or {}
        route_id = str(trip.get("routeId") or trip.get("route_id") or "").strip()
        if not route_id:
            continue
        for stu in tu.get("stopTimeUpdate") or tu.get("stop_time_update") or []:
            rel = stu.get("scheduleRelationship") or stu.get("schedule_relationship")
            if rel == "SKIPPED":
                continue
            arr = stu.get("arrival") or {}
            dep = stu.get("departure") or {}
            epoch = _int_or_none(arr.get("time")) or _int_or_none(dep.get("time"))
            sid = str(stu.get("stopId") or stu.get("stop_id") or "").strip()
            if epoch and sid:
                out.append(StopPrediction(route_id=route_id, stop_id=sid, epoch=epoch))
    return out


class TripUpdatesClient:
    """Live ETA source backed by a GTFS-Realtime TripUpdates feed.

    The whole feed is downloaded at most once per ``ttl_s`` seconds and shared
    by every stop lookup made in that window.
    """

    def __init__(
        self,
        pb_url: str | None = None,
        json_url: str | None = None,
        timeout: float | None = None,
        *,
        routes: RouteIdMapping | None = None,
        stop_ids: dict[str, int] | None = None,
        tz_name: str | None = None,
        ttl_s: int | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.pb_url = (pb_url or getattr(settings, "TRIP_UPDATES_PB_URL", "") or "").strip()
        self.json_url = (json_url or getattr(settings, "TRIP_UPDATES_JSON_URL", "") or "").strip()
        self.timeout = float(timeout or getattr(settings, "HTTP_TIMEOUT", None) or 7.0)
        self.ttl_s = int(ttl_s if ttl_s is not None else getattr(settings, "LIVE_FEED_TTL_S", 20))
        self.tz = agency_tz(tz_name)
        self.routes = routes or RouteIdMapping()
        self._clock = clock

        # system stop id -> feed stop ids
        self._feed_stops: dict[int, set[str]] = {}
        for feed_id, number in (stop_ids or {}).items():
            self._feed_stops.setdefault(int(number), set()).add(str(feed_id))

        self._session = session or requests.Session()
        self._session.headers.update({"Accept-Encoding": "gzip, deflate"})

        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._snapshot: list[StopPrediction] = []
        self._snapshot_at: float = 0.0
        self._last_source: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.pb_url or self.json_url)

    # ---------- transport ----------

    def _fetch_pb(self) -> list[StopPrediction]:
        r = self._session.get(self.pb_url, timeout=self.timeout)
        r.raise_for_status()
        content = r.content
        if r.headers.get("Content-Encoding", "").lower() == "gzip" and content[:2] == b"\x1f\x8b":
            content = gzip.decompress(content)
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.ParseFromString(content)
        return parse_trip_updates_pb(feed)

    def _fetch_json(self) -> list[StopPrediction]:
        r = self._session.get(self.json_url, timeout=self.timeout)
        r.raise_for_status()
        return parse_trip_updates_json(r.json())

    def snapshot(self) -> list[StopPrediction]:
        with self._lock:
            if self._is_fresh():
                return self._snapshot
            if not self.configured:
                raise UpstreamUnavailable("live feed URL not configured")
            stale = self._snapshot if self._snapshot_at else None

        # one refresh at a time; callers holding an older snapshot do not wait for it
        if not self._refresh_lock.acquire(blocking=stale is None):
            return stale
        try:
            with self._lock:
                if self._is_fresh():
                    return self._snapshot
            started = self._clock()
            try:
                preds, source = fetch_first(
                    [
                        ("pb", self._fetch_pb if self.pb_url else None),
                        ("json", self._fetch_json if self.json_url else None),
                    ],
                    attempts=FAST_RETRY_ATTEMPTS,
                    delay=FAST_RETRY_DELAY,
                )
            except FetchFailed as e:
                raise UpstreamUnavailable(f"trip updates unavailable: {e}") from e
            with self._lock:
                self._snapshot = preds
                self._snapshot_at = started
                self._last_source = source
            log.debug("Trip updates refreshed from %s: %d predictions", source, len(preds))
            return preds
        finally:
            self._refresh_lock.release()

    def _is_fresh(self) -> bool:
        return bool(self._snapshot_at) and self._clock() - self._snapshot_at < self.ttl_s

    # ---------- capability ----------

    def feed_stop_ids(self, stop_id: int) -> set[str]:
        return self._feed_stops.get(int(stop_id)) or {str(stop_id)}

    def get_live_estimates(self, stop_id: int) -> list[RealtimeEstimate]:
        wanted = self.feed_stop_ids(stop_id)
        now_epoch = int(self._clock())
        now = datetime.fromtimestamp(now_epoch, self.tz)

        earliest: dict[str, int] = {}
        for p in self.snapshot():
            if p.stop_id not in wanted or p.epoch < now_epoch:
                continue
            route = self.routes.to_system(p.route_id) or p.route_id
            if route not in earliest or p.epoch < earliest[route]:
                earliest[route] = p.epoch

        out = []
        for route, epoch in earliest.items():
            dt = datetime.fromtimestamp(epoch, self.tz)
            offset = since_midnight(dt) + (dt.date() - now.date()).days * ONE_DAY
            out.append(RealtimeEstimate(route=route, expected=offset))
        out.sort(key=lambda e: (e.expected, e.route))
        return out


_client: TripUpdatesClient | None = None


def get_live_client() -> TripUpdatesClient:
    global _client
    if _client is None:
        from nextbus.services.mappings import load_route_mapping, load_stop_id_map

        _client = TripUpdatesClient(routes=load_route_mapping(), stop_ids=load_stop_id_map())
    return _client
