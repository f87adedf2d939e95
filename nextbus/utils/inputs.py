# nextbus/utils/inputs.py
from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from nextbus.domain.errors import InputError
from nextbus.timekit import RFC822Z, parse_rfc822z

__all__ = ["parse_stop_ids", "parse_route_names", "parse_target_time", "parse_bool"]


def parse_stop_ids(raw: str | None, *, required: bool = True) -> list[int]:
    """Comma separated stop numbers, de-duplicated in request order."""
    parts = [p.strip() for p in (raw or "").split(",") if p.strip()]
    if not parts:
        if required:
            raise InputError("at least one stop id is required")
        return []
    out: list[int] = []
    for p in parts:
        try:
            sid = int(p)
        except ValueError:
            raise InputError(f"malformed stop id: {p!r}") from None
        if sid < 0:
            raise InputError(f"malformed stop id: {p!r}")
        if sid not in out:
            out.append(sid)
    return out


def parse_route_names(raw: str | None) -> list[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


def parse_target_time(raw: str | None, tz: ZoneInfo) -> datetime | None:
    if not raw or not raw.strip():
        return None
    try:
        return parse_rfc822z(raw, tz)
    except ValueError:
        raise InputError(f"date must look like {RFC822Z!r}: {raw!r}") from None


def parse_bool(raw: str | None) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")
