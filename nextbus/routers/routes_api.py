# nextbus/routers/routes_api.py
from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from nextbus.services.store import get_store
from nextbus.utils.inputs import parse_bool, parse_route_names

router = APIRouter(tags=["api:routes"])


@router.get("/routes")
def routes(
    names: str | None = Query(None, description="comma separated route names or ids"),
    stops: str | None = Query(None, description="include the stop path"),
    onlyNames: str | None = Query(None),  # noqa: N803
):
    wanted = {n.lower() for n in parse_route_names(names)}
    only_name = parse_bool(onlyNames)
    with_stops = parse_bool(stops)

    items = []
    for r in get_store().list_routes():
        if wanted and r.display_name.lower() not in wanted and r.route_id.lower() not in wanted:
            continue
        d = r.to_dict(only_name=only_name)
        if not only_name and not with_stops:
            d.pop("stops", None)
        items.append(d)
    return JSONResponse({"routes": items})


@router.get("/_health")
def health():
    store = get_store()
    return {
        "ok": True,
        "stops": len(store.stop_ids()),
        "routes": len(store.list_routes()),
        "scheduled_arrivals": len(store.all_scheduled_arrivals()),
    }
