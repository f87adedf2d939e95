# nextbus/services/arrivals_engine.py
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta

from nextbus.config import settings
from nextbus.domain.errors import StopLookupError, UpstreamUnavailable
from nextbus.domain.models import (
    Arrival,
    RealtimeEstimate,
    ReconcileResult,
    ScheduledArrival,
    StopArrivals,
)
from nextbus.services.ports import ArrivalStore, FastCache, LiveFeedClient
from nextbus.services.route_names import RouteNameCache
from nextbus.timekit import ONE_DAY, agency_tz, instant_at, since_midnight, weekday_name

log = logging.getLogger("arrivals")


def schedule_cache_key(stop_id: int, weekday: int, version: str) -> str:
    """Cache key of one stop/weekday slice, scoped to a schedule version.

    Slices read before a rebuild land under the old version and are never
    served once the store moved on.
    """
    return f"arrivals:{stop_id}:{weekday_name(weekday)}:{version}"


# ---------------- Pure steps ----------------


@dataclass(frozen=True)
class MergedSlot:
    route: str
    scheduled: timedelta
    expected: timedelta


def window_from_cutoff(
    scheduled: Sequence[ScheduledArrival], cutoff: timedelta
) -> list[ScheduledArrival]:
    """Entries at or after ``cutoff`` plus the one immediately before it."""
    for i, item in enumerate(scheduled):
        if item.scheduled >= cutoff:
            return list(scheduled[i - 1 :] if i > 0 else scheduled)
    return list(scheduled[-1:])


def align_first_slot(
    scheduled: Sequence[ScheduledArrival], etas: Sequence[RealtimeEstimate]
) -> list[ScheduledArrival]:
    """Decide whether the bus of the first scheduled slot has already left.

    With live data the first slot stays while the first ETA is earlier than the
    second slot (or when it is the only slot). Without live data it is dropped.
    """
    if not scheduled:
        return []
    if etas and (len(scheduled) == 1 or etas[0].expected < scheduled[1].scheduled):
        return list(scheduled)
    return list(scheduled[1:])


def merge_slots(
    scheduled: Sequence[ScheduledArrival],
    etas: Sequence[RealtimeEstimate],
    name_for: Callable[[str], str],
) -> list[MergedSlot]:
    out: list[MergedSlot] = []
    for i, item in enumerate(scheduled):
        expected = etas[i].expected if i < len(etas) else item.scheduled
        out.append(
            MergedSlot(
                route=item.route_name or name_for(item.route_id),
                scheduled=item.scheduled,
                expected=expected,
            )
        )
    for eta in etas[len(scheduled) :]:
        out.append(MergedSlot(route=name_for(eta.route), scheduled=eta.expected, expected=eta.expected))
    return out


def rebase_estimates(
    etas: Iterable[RealtimeEstimate], fetched_on: datetime, target: datetime
) -> list[RealtimeEstimate]:
    """Express ETA offsets against the target day's midnight, sorted by time."""
    shift = (target.date() - fetched_on.date()).days * ONE_DAY
    out = [RealtimeEstimate(route=e.route, expected=e.expected - shift) for e in etas]
    out.sort(key=lambda e: (e.expected, e.route))
    return out


# ---------------- Engine ----------------


class ArrivalsEngine:
    def __init__(
        self,
        arrivals: ArrivalStore,
        live: LiveFeedClient | None,
        route_names: RouteNameCache,
        cache: FastCache | None = None,
        *,
        tz_name: str | None = None,
        horizon_minutes: int | None = None,
        live_timeout_s: float | None = None,
        workers: int | None = None,
        deadline_s: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.arrivals = arrivals
        self.live = live
        self.route_names = route_names
        self.cache = cache
        self.tz = agency_tz(tz_name)
        self.horizon = timedelta(
            minutes=horizon_minutes
            if horizon_minutes is not None
            else getattr(settings, "LIVE_HORIZON_MINUTES", 30)
        )
        self.live_timeout_s = float(
            live_timeout_s if live_timeout_s is not None else getattr(settings, "LIVE_TIMEOUT_S", 4.0)
        )
        self.deadline_s = float(
            deadline_s if deadline_s is not None else getattr(settings, "REQUEST_DEADLINE_S", 10.0)
        )
        self.workers = int(workers or getattr(settings, "RECONCILE_WORKERS", 8) or 8)
        self._live_pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="live-eta")
        self._clock = clock or (lambda: datetime.now(self.tz))

    def close(self) -> None:
        self._live_pool.shutdown(wait=False, cancel_futures=True)

    # ---------- helpers ----------

    def live_eligible(self, target: datetime, now: datetime) -> bool:
        diff = target - now
        return timedelta(0) <= diff < self.horizon

    def scheduled_for(self, stop_id: int, weekday: int) -> list[ScheduledArrival]:
        version = self.arrivals.schedule_version()
        key = schedule_cache_key(stop_id, weekday, version)
        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                return [ScheduledArrival.from_dict(d) for d in hit]

        items = self.arrivals.get_scheduled_arrivals(stop_id, weekday)
        if self.cache is not None and self.arrivals.schedule_version() == version:
            self.cache.set(key, [a.to_dict() for a in items])
        return items

    def _collect_live(
        self, stop_id: int, fut: Future | None, now: datetime, target: datetime
    ) -> list[RealtimeEstimate]:
        if fut is None:
            return []
        try:
            etas = fut.result(timeout=self.live_timeout_s)
        except FutureTimeout:
            fut.cancel()
            log.warning("Live ETA for stop %s timed out, using schedule only", stop_id)
            return []
        except UpstreamUnavailable as e:
            log.warning("Live ETA for stop %s unavailable: %s", stop_id, e)
            return []
        except Exception:
            log.exception("Live ETA for stop %s failed", stop_id)
            return []
        return rebase_estimates(etas or [], now, target)

    # ---------- public ----------

    def arrivals_for_stop(
        self, stop_id: int, at: datetime | None = None, *, now: datetime | None = None
    ) -> list[Arrival]:
        now = (now or self._clock()).astimezone(self.tz)
        target = at.astimezone(self.tz) if at else now
        cutoff = since_midnight(target)

        live_fut = None
        if self.live is not None and self.live_eligible(target, now):
            live_fut = self._live_pool.submit(self.live.get_live_estimates, stop_id)

        try:
            schedule = self.scheduled_for(stop_id, target.weekday())
        except Exception as e:
            if live_fut is not None:
                live_fut.cancel()
            raise StopLookupError(stop_id, str(e) or type(e).__name__) from e

        if not schedule:
            if live_fut is not None:
                live_fut.cancel()
            return []

        window = window_from_cutoff(schedule, cutoff)
        etas = self._collect_live(stop_id, live_fut, now, target)
        trimmed = align_first_slot(window, etas)
        if len(etas) > len(trimmed):
            log.info("Added %d etas to stop %s", len(etas) - len(trimmed), stop_id)

        return [
            Arrival(
                route=slot.route,
                scheduled=instant_at(target, slot.scheduled, self.tz),
                expected=instant_at(target, slot.expected, self.tz),
            )
            for slot in merge_slots(trimmed, etas, self.route_names.name_for)
        ]

    def _stop_task(self, stop_id: int, at: datetime | None, now: datetime) -> StopArrivals:
        try:
            return StopArrivals(stop_id=stop_id, arrivals=self.arrivals_for_stop(stop_id, at, now=now))
        except StopLookupError as e:
            log.warning("Arrivals for stop %s failed: %s", stop_id, e.reason)
            return StopArrivals(stop_id=stop_id, error=e.reason)
        except Exception as e:
            log.exception("Unexpected error building arrivals for stop %s", stop_id)
            return StopArrivals(stop_id=stop_id, error=repr(e))

    def reconcile(
        self,
        stop_ids: Iterable[int],
        at: datetime | None = None,
        *,
        deadline_s: float | None = None,
    ) -> ReconcileResult:
        now = self._clock().astimezone(self.tz)
        ids = sorted({int(s) for s in stop_ids})
        result = ReconcileResult()
        if not ids:
            return result

        # Per-call pool: a task stuck past the deadline only holds its own request's worker.
        pool = ThreadPoolExecutor(max_workers=min(len(ids), self.workers), thread_name_prefix="reconcile")
        try:
            futures = {pool.submit(self._stop_task, sid, at, now): sid for sid in ids}
            done, pending = wait(futures, timeout=deadline_s if deadline_s is not None else self.deadline_s)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for fut in done:
            res: StopArrivals = fut.result()
            if res.ok:
                result.arrivals[res.stop_id] = res.arrivals
            else:
                result.errors[res.stop_id] = res.error or "error"
        for fut in pending:
            fut.cancel()
            result.incomplete.add(futures[fut])
        if result.incomplete:
            log.warning("Deadline hit, %d stops incomplete", len(result.incomplete))
        return result


_engine: ArrivalsEngine | None = None


def get_engine() -> ArrivalsEngine:
    global _engine
    if _engine is None:
        from nextbus.services.fast_cache import get_cache
        from nextbus.services.live_client import get_live_client
        from nextbus.services.route_names import get_route_names
        from nextbus.services.store import get_store

        client = get_live_client()
        live = client if client.configured else None
        _engine = ArrivalsEngine(get_store(), live, get_route_names(), get_cache())
    return _engine


def shutdown_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.close()
        _engine = None
