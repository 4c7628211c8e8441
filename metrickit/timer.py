"""Timing helper that reports elapsed seconds to an observer."""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Callable


class Timer:
    """Measures time since creation and reports it in seconds.

    The observer may be an object with an ``observe`` method, a plain callable
    taking the seconds, or None to only measure.
    """

    def __init__(self, observer: Any = None) -> None:
        self._observe: Callable[[float], Any] | None
        if observer is None:
            self._observe = None
        elif hasattr(observer, "observe"):
            self._observe = observer.observe
        elif callable(observer):
            self._observe = observer
        else:
            raise TypeError("observer must have an observe method or be callable")
        self._begin = time.perf_counter()

    def observe_duration(self) -> timedelta:
        """Observe and return the time passed since the timer was created."""
        elapsed = time.perf_counter() - self._begin
        if self._observe is not None:
            self._observe(elapsed)
        return timedelta(seconds=elapsed)

    def __enter__(self) -> Timer:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.observe_duration()