# nextbus/services/store.py
from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

from nextbus.config import settings
from nextbus.domain.models import Route, ScheduledArrival, Stop

log = logging.getLogger("store")


class InMemoryStore:
    """Stops, routes and scheduled arrivals, partitioned by stop.

    Scheduled arrivals are indexed per (stop, weekday) and kept sorted by
    ``scheduled`` so reads never need to sort.
    """

    def __init__(self):
        self._stops: dict[int, Stop] = {}
        self._routes: dict[str, Route] = {}
        self._arrivals: list[ScheduledArrival] = []
        self._by_stop_day: dict[tuple[int, int], list[ScheduledArrival]] = {}
        self._lock = threading.RLock()
        self._schedule_version = uuid.uuid4().hex[:12]

    # ---------- stops ----------

    def put_stop(self, stop: Stop) -> None:
        with self._lock:
            self._stops[int(stop.stop_id)] = stop

    def stop_ids(self) -> set[int]:
        with self._lock:
            return set(self._stops)

    def get_stops(self, ids: Iterable[int]) -> list[Stop]:
        with self._lock:
            return [self._stops[i] for i in ids if i in self._stops]

    def list_stops(self) -> list[Stop]:
        with self._lock:
            return [self._stops[k] for k in sorted(self._stops)]

    def get_all_stop_coordinates(self) -> list[tuple[int, float, float]]:
        with self._lock:
            return [
                (sid, float(s.lat), float(s.lon))
                for sid, s in self._stops.items()
                if s.has_location
            ]

    # ---------- routes ----------

    def put_route(self, route: Route) -> None:
        with self._lock:
            self._routes[route.route_id] = route

    def get_route(self, route_id: str) -> Route | None:
        with self._lock:
            return self._routes.get(route_id)

    def list_routes(self) -> list[Route]:
        with self._lock:
            return sorted(self._routes.values(), key=lambda r: r.display_name)

    # ---------- scheduled arrivals ----------

    def replace_scheduled_arrivals(self, records: Iterable[ScheduledArrival]) -> int:
        items = list(dict.fromkeys(records))
        by_stop_day: dict[tuple[int, int], list[ScheduledArrival]] = defaultdict(list)
        for rec in items:
            for wd in range(7):
                if rec.runs_on(wd):
                    by_stop_day[(rec.stop_id, wd)].append(rec)
        for bucket in by_stop_day.values():
            bucket.sort(key=lambda r: (r.scheduled, r.route_id))

        with self._lock:
            self._arrivals = items
            self._by_stop_day = dict(by_stop_day)
            self._schedule_version = uuid.uuid4().hex[:12]
        return len(items)

    def schedule_version(self) -> str:
        """Token that changes every time the scheduled arrivals are replaced."""
        with self._lock:
            return self._schedule_version

    def get_scheduled_arrivals(self, stop_id: int, weekday: int) -> list[ScheduledArrival]:
        with self._lock:
            return list(self._by_stop_day.get((int(stop_id), weekday % 7), []))

    def all_scheduled_arrivals(self) -> list[ScheduledArrival]:
        with self._lock:
            return list(self._arrivals)

    # ---------- snapshots ----------

    def save(self, path: str | Path) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            data = {
                "stops": [s.to_dict() for s in self.list_stops()],
                "routes": [r.to_dict() for r in self.list_routes()],
                "arrivals": [a.to_dict() for a in self._arrivals],
            }
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(p)
        log.info("Store saved to %s (%d arrivals)", p, len(data["arrivals"]))

    def load(self, path: str | Path) -> None:
        p = Path(path)
        data = json.loads(p.read_text(encoding="utf-8"))
        stops = [Stop.from_dict(d) for d in data.get("stops") or []]
        routes = [Route.from_dict(d) for d in data.get("routes") or []]
        arrivals = [ScheduledArrival.from_dict(d) for d in data.get("arrivals") or []]
        with self._lock:
            self._stops = {s.stop_id: s for s in stops}
            self._routes = {r.route_id: r for r in routes}
            self.replace_scheduled_arrivals(arrivals)
        log.info(
            "Store loaded from %s: %d stops, %d routes, %d arrivals",
            p,
            len(stops),
            len(routes),
            len(arrivals),
        )


_store: InMemoryStore | None = None


def get_store() -> InMemoryStore:
    global _store
    if _store is None:
        _store = InMemoryStore()
        path = getattr(settings, "STORE_PATH", None)
        if path and Path(path).exists():
            try:
                _store.load(path)
            except (OSError, ValueError, KeyError):
                log.exception("Could not load store snapshot %s", path)
    return _store
