# nextbus/services/mappings.py
from __future__ import annotations

import csv
import logging
import os

from nextbus.config import settings
from nextbus.domain.models import RouteIdMapping

log = logging.getLogger("mappings")


def _read_csv_rows(path: str) -> list[dict]:
    enc = getattr(settings, "GTFS_ENCODING", None) or "utf-8"
    with open(path, encoding=enc, newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames:
            reader.fieldnames = [(h or "").strip().lstrip("\ufeff").lower() for h in reader.fieldnames]
        return [
            {k: (v.strip() if isinstance(v, str) else v) for k, v in row.items() if k}
            for row in reader
        ]


def load_route_mapping(path: str | None = None) -> RouteIdMapping:
    """Feed route ids -> system route ids.

    Entries from ``ROUTE_ID_MAP`` come first, then rows of the CSV
    (``feed_route_id,route_id``), which win on conflicts.
    """
    mapping = RouteIdMapping(getattr(settings, "ROUTE_ID_MAP", None) or {})
    path = path or getattr(settings, "ROUTE_ID_MAP_CSV", None)
    if path and os.path.exists(path):
        for row in _read_csv_rows(path):
            mapping.add(row.get("feed_route_id") or "", row.get("route_id") or "")
    elif path:
        log.warning("Route id map %s not found", path)
    return mapping


def load_stop_id_map(path: str | None = None) -> dict[str, int]:
    """Feed stop ids -> system stop numbers (``stop_id,stop_number``)."""
    path = path or getattr(settings, "STOP_ID_MAP_CSV", None)
    if not path:
        return {}
    if not os.path.exists(path):
        log.warning("Stop id map %s not found", path)
        return {}
    out: dict[str, int] = {}
    for row in _read_csv_rows(path):
        feed_id = row.get("stop_id") or ""
        number = row.get("stop_number") or ""
        if not feed_id or not number:
            continue
        try:
            out[feed_id] = int(number)
        except ValueError:
            log.debug("Bad stop number %r for %s", number, feed_id)
    return out
