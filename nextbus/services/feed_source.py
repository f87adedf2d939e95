# nextbus/services/feed_source.py
from __future__ import annotations

import csv
import io
import logging
import zipfile
from collections.abc import Iterable
from pathlib import Path

import requests

from nextbus.config import settings
from nextbus.domain.errors import FeedSourceError
from nextbus.domain.models import FeedRows

log = logging.getLogger("schedule_builder")

REQUIRED_TABLES = ("routes", "trips", "calendar", "stop_times")
OPTIONAL_TABLES = ("stops", "shapes")


def normalize_rows(reader: csv.DictReader) -> list[dict]:
    """Lower-cased keys without BOM, stripped string values."""
    if reader.fieldnames:
        reader.fieldnames = [(h or "").strip().lstrip("\ufeff").lower() for h in reader.fieldnames]
    return [
        {k: (v.strip() if isinstance(v, str) else "") for k, v in row.items() if k}
        for row in reader
    ]


def _rows_to_feed(tables: dict[str, list[dict] | None]) -> FeedRows:
    missing = [t for t in REQUIRED_TABLES if tables.get(t) is None]
    if missing:
        raise FeedSourceError(f"GTFS feed is missing {', '.join(f'{t}.txt' for t in missing)}")
    return FeedRows(
        routes=tables["routes"] or [],
        trips=tables["trips"] or [],
        calendar=tables["calendar"] or [],
        stop_times=tables["stop_times"] or [],
        stops=tables.get("stops"),
        shapes=tables.get("shapes"),
    )


def _tables() -> Iterable[str]:
    return (*REQUIRED_TABLES, *OPTIONAL_TABLES)


class GtfsDirectorySource:
    """Reads an unpacked GTFS feed from disk."""

    def __init__(self, path: str | Path | None = None, *, encoding: str | None = None):
        self.path = Path(path or getattr(settings, "GTFS_RAW_DIR", "app_data/gtfs"))
        self.encoding = encoding or getattr(settings, "GTFS_ENCODING", None) or "utf-8"

    def _read(self, name: str) -> list[dict] | None:
        p = self.path / f"{name}.txt"
        if not p.exists():
            return None
        try:
            with p.open(encoding=self.encoding, errors="replace", newline="") as f:
                return normalize_rows(csv.DictReader(f))
        except OSError as e:
            raise FeedSourceError(f"cannot read {p}: {e}") from e

    def fetch(self) -> FeedRows:
        if not self.path.is_dir():
            raise FeedSourceError(f"GTFS directory not found: {self.path}")
        feed = _rows_to_feed({t: self._read(t) for t in _tables()})
        log.info("GTFS read from %s: %d trips, %d stop_times", self.path, len(feed.trips), len(feed.stop_times))
        return feed


class GtfsZipSource:
    """Downloads a GTFS zip over HTTP and reads it in memory."""

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        encoding: str | None = None,
        session: requests.Session | None = None,
    ):
        self.url = (url or getattr(settings, "GTFS_URL", "") or "").strip()
        self.timeout = float(timeout or 60.0)
        self.encoding = encoding or getattr(settings, "GTFS_ENCODING", None) or "utf-8"
        self._session = session or requests.Session()

    def download(self) -> bytes:
        if not self.url:
            raise FeedSourceError("GTFS_URL not configured")
        try:
            r = self._session.get(self.url, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise FeedSourceError(f"GTFS download failed: {e}") from e
        return r.content

    @staticmethod
    def _read_member(z: zipfile.ZipFile, name: str, encoding: str) -> list[dict] | None:
        # feeds are sometimes zipped with a top-level folder
        member = next(
            (n for n in z.namelist() if n == f"{name}.txt" or n.endswith(f"/{name}.txt")),
            None,
        )
        if member is None:
            return None
        with z.open(member) as f:
            text = io.TextIOWrapper(f, encoding=encoding, errors="replace", newline="")
            return normalize_rows(csv.DictReader(text))

    def fetch(self) -> FeedRows:
        content = self.download()
        try:
            with zipfile.ZipFile(io.BytesIO(content)) as z:
                tables = {t: self._read_member(z, t, self.encoding) for t in _tables()}
        except zipfile.BadZipFile as e:
            raise FeedSourceError(f"GTFS download is not a zip: {e}") from e
        feed = _rows_to_feed(tables)
        log.info("GTFS downloaded from %s: %d trips, %d stop_times", self.url, len(feed.trips), len(feed.stop_times))
        return feed


def default_source() -> GtfsZipSource | GtfsDirectorySource:
    if getattr(settings, "GTFS_URL", None):
        return GtfsZipSource()
    return GtfsDirectorySource()
