# nextbus/routers/stops_api.py
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from nextbus.config import settings
from nextbus.domain.errors import InputError
from nextbus.domain.models import Stop
from nextbus.services.spatial_index import get_index
from nextbus.services.store import get_store
from nextbus.utils.inputs import parse_stop_ids

router = APIRouter(tags=["api:stops"])


def _stop_payload(s: Stop) -> dict:
    d = s.to_dict()
    if s.distance is not None:
        d["distance"] = round(s.distance, 1)
    return d


@router.get("/stops")
def stops(
    ids: str | None = Query(None),
    lat: float | None = Query(None),
    lng: float | None = Query(None),
    radius: float | None = Query(None, description="meters"),
    limit: int | None = Query(None, ge=1),
):
    try:
        if lat is not None or lng is not None:
            if lat is None or lng is None:
                raise InputError("both lat and lng are required")
            r = radius if radius is not None else float(settings.DEFAULT_RADIUS_M)
            found = get_index().nearby(lat, lng, r)
        elif ids:
            wanted = parse_stop_ids(ids)
            found = sorted(get_store().get_stops(wanted), key=lambda s: s.stop_id)
        else:
            found = get_store().list_stops()
    except InputError as e:
        raise HTTPException(400, str(e)) from e

    if limit:
        found = found[:limit]
    return JSONResponse({"stops": [_stop_payload(s) for s in found]})
