from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

ESTIMATE_CEILING = 0.95


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One progress update on a 0-100 scale.

    ``estimated`` marks interpolated values published while waiting on work
    whose real progress cannot be observed.
    """

    percent: float
    stage: str
    estimated: bool = False


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True, slots=True)
class ProgressSegment:
    """A closed sub-range of the overall 0-100 progress scale."""

    start: float
    end: float

    @classmethod
    def for_item(cls, index: int, total: int, *, start: float = 0.0, end: float = 100.0) -> ProgressSegment:
        span = (end - start) / max(total, 1)
        return cls(start + span * index, start + span * (index + 1))

    def at(self, fraction: float) -> float:
        clamped = max(0.0, min(1.0, fraction))
        return self.start + (self.end - self.start) * clamped

    def split(self, *weights: float) -> list[ProgressSegment]:
        total = sum(weights)
        segments: list[ProgressSegment] = []
        cursor = self.start
        for position, weight in enumerate(weights):
            upper = self.end if position == len(weights) - 1 else cursor + (self.end - self.start) * weight / total
            segments.append(ProgressSegment(cursor, upper))
            cursor = upper
        return segments


class ProgressReporter:
    """Publishes monotonic progress to an optional callback.

    Measured progress never moves backwards, and a segment's upper bound is
    published once, when the owning stage completes. Estimates are emitted
    tagged and do not advance the measured value. The callback runs outside
    the reporter's lock, so it may call back into the reporter.
    """

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._percent = 0.0
        self._stage = ""
        self._completed: set[ProgressSegment] = set()

    @property
    def percent(self) -> float:
        return self._percent

    def stage(self, label: str) -> None:
        with self._lock:
            self._stage = label
            event = ProgressEvent(self._percent, label)
        self._emit(event)

    def report(self, percent: float) -> None:
        with self._lock:
            if percent <= self._percent:
                return
            self._percent = min(percent, 100.0)
            event = ProgressEvent(self._percent, self._stage)
        self._emit(event)

    def complete(self, segment: ProgressSegment) -> None:
        with self._lock:
            if segment in self._completed:
                return
            self._completed.add(segment)
        self.report(segment.end)

    def fraction_callback(self, segment: ProgressSegment) -> Callable[[float], None]:
        return lambda fraction: self.report(segment.at(fraction))

    def estimate(self, percent: float) -> None:
        with self._lock:
            if percent <= self._percent:
                return
            event = ProgressEvent(percent, self._stage, estimated=True)
        self._emit(event)

    @contextmanager
    def simulate(
        self,
        segment: ProgressSegment,
        *,
        expected_seconds: float = 180.0,
        interval_seconds: float = 0.3,
    ) -> Iterator[None]:
        """Ease estimates toward ``segment.end`` while the body runs, then publish the end."""

        ticker = _EstimateTicker(self, segment, expected_seconds=expected_seconds, interval_seconds=interval_seconds)
        ticker.start()
        try:
            yield
        finally:
            ticker.stop()
        self.complete(segment)

    def _emit(self, event: ProgressEvent) -> None:
        if self._callback is not None:
            self._callback(event)


class _EstimateTicker(threading.Thread):
    def __init__(
        self,
        reporter: ProgressReporter,
        segment: ProgressSegment,
        *,
        expected_seconds: float,
        interval_seconds: float,
    ) -> None:
        super().__init__(name="progress-estimate", daemon=True)
        self._reporter = reporter
        self._segment = segment
        self._expected_seconds = max(expected_seconds, 0.001)
        self._interval_seconds = interval_seconds
        self._stopped = threading.Event()

    def run(self) -> None:
        started_at = time.monotonic()
        while not self._stopped.wait(self._interval_seconds):
            ratio = min((time.monotonic() - started_at) / self._expected_seconds, 1.0)
            eased = 1 - (1 - ratio) ** 3
            self._reporter.estimate(self._segment.at(eased * ESTIMATE_CEILING))

    def stop(self) -> None:
        self._stopped.set()
        self.join()
