# nextbus/services/route_names.py
from __future__ import annotations

import logging
import threading

from nextbus.services.ports import RouteStore

log = logging.getLogger("route_names")


class RouteNameCache:
    """Lazily resolved route display names, keyed by route id.

    Call ``invalidate()`` whenever route data is rewritten.
    """

    def __init__(self, routes: RouteStore):
        self._routes = routes
        self._names: dict[str, str] = {}
        self._lock = threading.Lock()

    def name_for(self, route_id: str) -> str:
        with self._lock:
            hit = self._names.get(route_id)
        if hit is not None:
            return hit

        route = self._routes.get_route(route_id)
        name = route.display_name if route else route_id
        if route is None:
            log.debug("Unknown route %s, using its id as name", route_id)
        with self._lock:
            self._names[route_id] = name
        return name

    def invalidate(self, route_id: str | None = None) -> None:
        with self._lock:
            if route_id is None:
                self._names.clear()
            else:
                self._names.pop(route_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


_names: RouteNameCache | None = None


def get_route_names() -> RouteNameCache:
    global _names
    if _names is None:
        from nextbus.services.store import get_store

        _names = RouteNameCache(get_store())
    return _names
