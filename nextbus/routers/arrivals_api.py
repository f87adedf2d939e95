# nextbus/routers/arrivals_api.py
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from nextbus.domain.errors import InputError
from nextbus.services.arrivals_engine import get_engine
from nextbus.utils.inputs import parse_stop_ids, parse_target_time

router = APIRouter(tags=["api:arrivals"])


@router.get("/arrivals")
def arrivals(
    stops: str | None = Query(None, description="comma separated stop numbers"),
    date: str | None = Query(None, description="target time, e.g. '02 Jan 06 15:04 -0700'"),
):
    engine = get_engine()
    try:
        stop_ids = parse_stop_ids(stops)
        at = parse_target_time(date, engine.tz)
    except InputError as e:
        raise HTTPException(400, str(e)) from e

    result = engine.reconcile(stop_ids, at)
    return JSONResponse(result.to_payload())
