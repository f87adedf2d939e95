from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI

from nextbus.config import settings
from nextbus.routers.arrivals_api import router as arrivals_router
from nextbus.routers.routes_api import router as routes_router
from nextbus.routers.stops_api import router as stops_router

scheduler: BackgroundScheduler | None = None

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def build_scheduler() -> BackgroundScheduler:
    s = BackgroundScheduler(timezone=settings.TIMEZONE)
    log = logging.getLogger("scheduler")

    def job_rebuild_schedule():
        from nextbus.services.schedule_builder import rebuild_from_settings

        try:
            report = rebuild_from_settings()
        except Exception:
            log.exception("Scheduled schedule rebuild crashed")
            return
        if report.ok:
            log.info("Scheduled schedule rebuild done: %s", report.to_dict())
        else:
            log.warning("Scheduled schedule rebuild failed: %s", report.error)

    if settings.ENABLE_SCHEDULE_REBUILD_JOB:
        s.add_job(
            job_rebuild_schedule,
            CronTrigger(hour=settings.SCHEDULE_REBUILD_CRON_HOUR, minute=0),
            id="rebuild_schedule",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    return s


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    global scheduler
    scheduler = build_scheduler()
    scheduler.start()
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
        from nextbus.services.arrivals_engine import shutdown_engine

        shutdown_engine()


app = FastAPI(title="nextbus", lifespan=lifespan)

app.include_router(arrivals_router)
app.include_router(stops_router)
app.include_router(routes_router)
