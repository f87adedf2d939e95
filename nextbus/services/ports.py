# nextbus/services/ports.py
from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from nextbus.domain.models import (
    FeedRows,
    RealtimeEstimate,
    Route,
    ScheduledArrival,
    Stop,
)


class ArrivalStore(Protocol):
    def get_scheduled_arrivals(self, stop_id: int, weekday: int) -> list[ScheduledArrival]: ...

    def schedule_version(self) -> str: ...


class RouteStore(Protocol):
    def get_route(self, route_id: str) -> Route | None: ...

    def list_routes(self) -> list[Route]: ...


class StopStore(Protocol):
    def get_stops(self, ids: Iterable[int]) -> list[Stop]: ...

    def get_all_stop_coordinates(self) -> list[tuple[int, float, float]]: ...


class ScheduleSink(Protocol):
    def stop_ids(self) -> set[int]: ...

    def get_stops(self, ids: Iterable[int]) -> list[Stop]: ...

    def put_stop(self, stop: Stop) -> None: ...

    def get_route(self, route_id: str) -> Route | None: ...

    def put_route(self, route: Route) -> None: ...

    def replace_scheduled_arrivals(self, records: Iterable[ScheduledArrival]) -> int: ...

    def schedule_version(self) -> str: ...


class LiveFeedClient(Protocol):
    def get_live_estimates(self, stop_id: int) -> list[RealtimeEstimate]: ...


class FastCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool: ...

    def delete(self, key: str) -> bool: ...


class FeedSource(Protocol):
    def fetch(self) -> FeedRows: ...
