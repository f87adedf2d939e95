from __future__ import annotations

import threading
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from nextbus.domain.errors import UpstreamUnavailable
from nextbus.domain.models import RealtimeEstimate, Route, ScheduledArrival, Stop
from nextbus.services.fast_cache import MemoryCache
from nextbus.services.route_names import RouteNameCache
from nextbus.services.store import InMemoryStore

TZ_NAME = "America/Los_Angeles"
TZ = ZoneInfo(TZ_NAME)
WEEKDAYS_ONLY = (True, True, True, True, True, False, False)

# Monday
MONDAY_8AM = datetime(2024, 1, 8, 8, 0, tzinfo=TZ)


def hm(h: int, m: int, s: int = 0) -> timedelta:
    return timedelta(hours=h, minutes=m, seconds=s)


def sched(stop_id: int, route_id: str, offset: timedelta, days=WEEKDAYS_ONLY) -> ScheduledArrival:
    return ScheduledArrival(stop_id=stop_id, route_id=route_id, scheduled=offset, days=days)


class FakeLive:
    """Live feed returning canned estimates, optionally failing or stalling."""

    def __init__(self, estimates: dict[int, list[RealtimeEstimate]] | None = None):
        self.estimates = estimates or {}
        self.calls: list[int] = []
        self.fail = False
        self.stall: threading.Event | None = None

    def get_live_estimates(self, stop_id: int) -> list[RealtimeEstimate]:
        self.calls.append(stop_id)
        if self.stall is not None:
            self.stall.wait(5)
        if self.fail:
            raise UpstreamUnavailable("feed down")
        return list(self.estimates.get(stop_id, []))


class SlowStore:
    """Arrival store that blocks on chosen stops and fails on others."""

    def __init__(self, inner: InMemoryStore, slow: set[int] = frozenset(), broken: set[int] = frozenset()):
        self.inner = inner
        self.slow = set(slow)
        self.broken = set(broken)
        self.release = threading.Event()

    def schedule_version(self) -> str:
        return self.inner.schedule_version()

    def get_scheduled_arrivals(self, stop_id: int, weekday: int) -> list[ScheduledArrival]:
        if stop_id in self.broken:
            raise RuntimeError("partition offline")
        if stop_id in self.slow:
            self.release.wait(5)
        return self.inner.get_scheduled_arrivals(stop_id, weekday)


class FakeResponse:
    def __init__(self, content: bytes = b"", status: int = 200, headers: dict | None = None, json_data=None):
        self.content = content
        self.status_code = status
        self.headers = headers or {}
        self._json = json_data

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            import requests

            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._json


class FakeSession:
    def __init__(self, responses: dict[str, FakeResponse | Exception]):
        self.responses = responses
        self.headers: dict[str, str] = {}
        self.calls: list[str] = []

    def get(self, url, timeout=None, **kw):
        self.calls.append(url)
        r = self.responses[url]
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture
def store() -> InMemoryStore:
    st = InMemoryStore()
    st.put_route(Route(route_id="A", name="Route A"))
    st.put_route(Route(route_id="B", name="Route B"))
    for sid in (1, 2, 3):
        st.put_stop(Stop(stop_id=sid, name=f"Stop {sid}", lat=37.77, lon=-122.41))
    return st


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def route_names(store) -> RouteNameCache:
    return RouteNameCache(store)
