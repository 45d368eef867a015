"""Registry of route polylines behind the opaque preferred-route ids."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from safety_engine.errors import UnknownRouteError
from safety_engine.geo import LatLng
from safety_engine.models import Route

log = logging.getLogger(__name__)


class RouteRegistry:
    def __init__(self, routes: Iterable[Route] = ()) -> None:
        self._routes: dict[str, Route] = {}
        self._lock = threading.Lock()
        for route in routes:
            self.register(route)

    def register(self, route: Route) -> Route:
        with self._lock:
            self._routes[route.id] = route
        log.info("Registered route %s (%d vertices)", route.id, len(route.points))
        return route

    def remove(self, route_id: str) -> Route:
        with self._lock:
            route = self._routes.pop(route_id, None)
        if route is None:
            raise UnknownRouteError(route_id)
        log.info("Removed route %s", route_id)
        return route

    def get(self, route_id: str) -> Route:
        with self._lock:
            route = self._routes.get(route_id)
        if route is None:
            raise UnknownRouteError(route_id)
        return route

    def list(self) -> list[Route]:
        with self._lock:
            return sorted(self._routes.values(), key=lambda r: r.id)

    def polylines(self, route_ids: Iterable[str]) -> list[list[LatLng]]:
        """Vertex lists for the given ids; ids without geometry are skipped."""
        with self._lock:
            routes = [self._routes[rid] for rid in sorted(route_ids) if rid in self._routes]
        return [[(p.lat, p.lng) for p in route.points] for route in routes]

    def __len__(self) -> int:
        return len(self._routes)
