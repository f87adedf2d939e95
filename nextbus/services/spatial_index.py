# nextbus/services/spatial_index.py
from __future__ import annotations

import bisect
import dataclasses
import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor

from nextbus.config import settings
from nextbus.domain.errors import InputError
from nextbus.domain.models import Stop, haversine_m
from nextbus.services.ports import FastCache, StopStore

log = logging.getLogger("spatial_index")

INDEX_CACHE_KEY = "spatial:geohash-index"

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_DECODE = {c: i for i, c in enumerate(_BASE32)}


# ---------------- Geohash ----------------


def geohash_encode(lat: float, lon: float, precision: int = 12) -> str:
    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    out: list[str] = []
    bits = 0
    ch = 0
    even = True
    while len(out) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2
            if lon >= mid:
                ch = (ch << 1) | 1
                lon_lo = mid
            else:
                ch <<= 1
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if lat >= mid:
                ch = (ch << 1) | 1
                lat_lo = mid
            else:
                ch <<= 1
                lat_hi = mid
        even = not even
        bits += 1
        if bits == 5:
            out.append(_BASE32[ch])
            bits = 0
            ch = 0
    return "".join(out)


def geohash_bounds(hash_: str) -> tuple[float, float, float, float]:
    """(lat_lo, lat_hi, lon_lo, lon_hi) of the geohash cell."""
    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    even = True
    for c in hash_:
        try:
            val = _DECODE[c]
        except KeyError:
            raise ValueError(f"invalid geohash character {c!r}") from None
        for shift in range(4, -1, -1):
            bit = (val >> shift) & 1
            if even:
                mid = (lon_lo + lon_hi) / 2
                if bit:
                    lon_lo = mid
                else:
                    lon_hi = mid
            else:
                mid = (lat_lo + lat_hi) / 2
                if bit:
                    lat_lo = mid
                else:
                    lat_hi = mid
            even = not even
    return lat_lo, lat_hi, lon_lo, lon_hi


def geohash_center(hash_: str) -> tuple[float, float]:
    lat_lo, lat_hi, lon_lo, lon_hi = geohash_bounds(hash_)
    return (lat_lo + lat_hi) / 2, (lon_lo + lon_hi) / 2


def prefix_len_for_radius(radius_m: float) -> int:
    fine_radius = getattr(settings, "FINE_RADIUS_M", 2000)
    if radius_m <= fine_radius:
        return int(getattr(settings, "FINE_PREFIX_LEN", 5))
    return int(getattr(settings, "COARSE_PREFIX_LEN", 3))


def validate_point(lat: float, lon: float, radius_m: float | None = None) -> None:
    if lat is None or lon is None or lat != lat or lon != lon:
        raise InputError("latitude and longitude are required")
    if not (-90.0 <= lat <= 90.0):
        raise InputError(f"latitude out of range: {lat}")
    if not (-180.0 <= lon <= 180.0):
        raise InputError(f"longitude out of range: {lon}")
    if radius_m is not None and not radius_m > 0:
        raise InputError(f"radius must be positive: {radius_m}")


# ---------------- Index ----------------


class StopSpatialIndex:
    """Radius search over stops through a sorted array of geohashes.

    Candidates come from the contiguous run of hashes sharing the query's
    prefix; stops just across a cell boundary are not considered.
    """

    def __init__(
        self,
        stops: StopStore,
        cache: FastCache,
        *,
        precision: int | None = None,
        lookup_workers: int | None = None,
    ):
        self.stops = stops
        self.cache = cache
        self.precision = int(precision or getattr(settings, "GEOHASH_PRECISION", 12))
        n = int(lookup_workers or getattr(settings, "STOP_LOOKUP_WORKERS", 8) or 8)
        self._lookup_pool = ThreadPoolExecutor(max_workers=n, thread_name_prefix="stop-lookup")
        self._build_lock = threading.Lock()

    # ---------- build ----------

    def _build(self) -> list[tuple[str, int]]:
        coords = self.stops.get_all_stop_coordinates()
        entries = sorted(
            (geohash_encode(lat, lon, self.precision), int(sid)) for sid, lat, lon in coords
        )
        log.info("Spatial index built: %d stops", len(entries))
        return entries

    def _decode_cached(self, raw) -> list[tuple[str, int]] | None:
        # an empty list is a valid index for a store without located stops
        if raw is None:
            return None
        try:
            return [(str(h), int(sid)) for h, sid in raw]
        except (TypeError, ValueError):
            log.warning("Discarding malformed cached spatial index")
            return None

    def entries(self) -> list[tuple[str, int]]:
        entries = self._decode_cached(self.cache.get(INDEX_CACHE_KEY))
        if entries is not None:
            return entries
        with self._build_lock:
            entries = self._decode_cached(self.cache.get(INDEX_CACHE_KEY))
            if entries is not None:
                return entries
            entries = self._build()
            self.cache.set(INDEX_CACHE_KEY, [[h, sid] for h, sid in entries])
            return entries

    def rebuild(self) -> int:
        with self._build_lock:
            entries = self._build()
            self.cache.set(INDEX_CACHE_KEY, [[h, sid] for h, sid in entries])
        return len(entries)

    def invalidate(self) -> None:
        self.cache.delete(INDEX_CACHE_KEY)

    # ---------- query ----------

    def candidates(self, lat: float, lon: float, radius_m: float) -> list[tuple[int, float]]:
        entries = self.entries()
        if not entries:
            return []
        query = geohash_encode(lat, lon, self.precision)
        prefix = query[: prefix_len_for_radius(radius_m)]

        hashes = [h for h, _ in entries]
        start = bisect.bisect_left(hashes, prefix)
        out: list[tuple[int, float]] = []
        for h, sid in entries[start:]:
            if not h.startswith(prefix):
                break
            c_lat, c_lon = geohash_center(h)
            dist = haversine_m(c_lat, c_lon, lat, lon)
            if dist <= radius_m:
                out.append((sid, dist))
        return out

    def _resolve_one(self, stop_id: int) -> Stop | None:
        key = f"stop:{stop_id}"
        hit = self.cache.get(key)
        if hit is not None:
            try:
                return Stop.from_dict(hit)
            except (KeyError, TypeError, ValueError):
                log.debug("Bad cached stop %s", stop_id)
        found = self.stops.get_stops([stop_id])
        if not found:
            log.debug("Stop %s in index but not in store", stop_id)
            return None
        stop = found[0]
        self.cache.set(key, stop.to_dict())
        return stop

    def resolve(self, stop_ids: Iterable[int]) -> dict[int, Stop]:
        ids = list(dict.fromkeys(stop_ids))
        out: dict[int, Stop] = {}
        for sid, stop in zip(ids, self._lookup_pool.map(self._resolve_one, ids), strict=True):
            if stop is not None:
                out[sid] = stop
        return out

    def nearby(self, lat: float, lon: float, radius_m: float) -> list[Stop]:
        validate_point(lat, lon, radius_m)
        cands = self.candidates(lat, lon, radius_m)
        resolved = self.resolve(sid for sid, _ in cands)
        out = [
            dataclasses.replace(resolved[sid], distance=dist)
            for sid, dist in cands
            if sid in resolved
        ]
        out.sort(key=lambda s: (s.distance, s.stop_id))
        return out


_index: StopSpatialIndex | None = None


def get_index() -> StopSpatialIndex:
    global _index
    if _index is None:
        from nextbus.services.fast_cache import get_cache
        from nextbus.services.store import get_store

        _index = StopSpatialIndex(get_store(), get_cache())
    return _index
