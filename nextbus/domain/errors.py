# nextbus/domain/errors.py
from __future__ import annotations


class NextBusError(Exception):
    """Base class for errors raised by the arrivals core."""


class InputError(NextBusError, ValueError):
    """Malformed request input (stop id, coordinates, date). Rejected before any lookup."""


class UpstreamUnavailable(NextBusError):
    """The live ETA feed could not be reached or decoded."""


class FeedSourceError(NextBusError):
    """The static feed could not be fetched or is missing a required table."""


class StopLookupError(NextBusError):
    def __init__(self, stop_id: int, reason: str):
        super().__init__(f"stop {stop_id}: {reason}")
        self.stop_id = stop_id
        self.reason = reason
