# nextbus/services/common_fetch.py
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
FetchFn = Callable[[], T]

log = logging.getLogger("fetch")


class FetchFailed(Exception):
    def __init__(self, errors: list[tuple[str, str]]):
        self.errors = errors
        summary = "; ".join(f"{label}: {err}" for label, err in errors) or "no sources"
        super().__init__(summary)


def fetch_first(
    sources: Sequence[tuple[str, FetchFn[T] | None]],
    *,
    attempts: int = 1,
    delay: float = 0.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> tuple[T, str]:
    """Try each labelled source in order, retrying each up to ``attempts`` times.

    Returns ``(data, label)`` from the first source that succeeds, or raises
    ``FetchFailed`` carrying every error seen.
    """
    errors: list[tuple[str, str]] = []
    for label, fn in sources:
        if fn is None:
            continue
        for i in range(max(1, attempts)):
            try:
                return fn(), label
            except retry_on as e:
                errors.append((label, repr(e)))
                log.debug("fetch %s attempt %d failed: %r", label, i + 1, e)
                if i < attempts - 1 and delay > 0:
                    time.sleep(delay)
    raise FetchFailed(errors)
