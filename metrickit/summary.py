"""Summaries: sum, count and streaming rank estimations of observations."""

from __future__ import annotations

import math
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Callable, Iterator, Mapping, Sequence

from metrickit.value import (
    Desc,
    InconsistentCardinalityError,
    Metric,
    MetricData,
    Quantile,
    SummaryData,
    build_fq_name,
    make_label_pairs,
    new_desc,
)

QUANTILE_LABEL = "quantile"
"""Label name reserved for the rank of a summary quantile."""

DEF_MAX_AGE = timedelta(minutes=10)
"""Default duration for which observations stay relevant."""

DEF_AGE_BUCKETS = 5
"""Default number of buckets used to age out observations."""

DEF_BUF_CAP = 500
"""Default size of the observation buffer."""

_STREAM_BUFFER_SIZE = 500


@dataclass
class SummaryOpts:
    """Options for a summary; only ``name`` is mandatory.

    ``objectives`` maps quantile ranks to their allowed absolute error. Zero
    values of ``max_age``, ``age_buckets`` and ``buf_cap`` select the defaults.
    """

    namespace: str = ""
    subsystem: str = ""
    name: str = ""
    help: str = ""
    const_labels: dict[str, str] = field(default_factory=dict)
    objectives: dict[float, float] | None = None
    max_age: timedelta = timedelta(0)
    age_buckets: int = 0
    buf_cap: int = 0


def _ieee_div(numerator: float, denominator: float) -> float:
    if denominator != 0:
        return numerator / denominator
    if numerator == 0 or math.isnan(numerator):
        return math.nan
    return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)


@dataclass(slots=True)
class _Sample:
    value: float
    width: float
    delta: float


class QuantileStream:
    """Biased streaming quantile estimator for a set of targeted ranks.

    ``targets`` maps each rank to the absolute error allowed for it.
    Values are buffered and merged into a compressed sample list in batches.
    """

    def __init__(self, targets: Mapping[float, float]) -> None:
        self._targets = sorted(targets.items())
        self._buffer: list[float] = []
        self._samples: list[_Sample] = []
        self._n = 0.0

    def insert(self, value: float) -> None:
        """Add one value to the stream."""
        self._buffer.append(value)
        if len(self._buffer) >= _STREAM_BUFFER_SIZE:
            self._flush()

    def query(self, q: float) -> float:
        """Return the estimated value at rank ``q``; 0 for an empty stream."""
        if not self._samples:
            if not self._buffer:
                return 0.0
            index = math.ceil(len(self._buffer) * q)
            if index > 0:
                index -= 1
            self._buffer.sort()
            return self._buffer[index]
        self._flush()
        return self._query_samples(q)

    def reset(self) -> None:
        """Forget every value seen so far."""
        self._samples.clear()
        self._buffer.clear()
        self._n = 0.0

    def count(self) -> int:
        """Return the number of values in the stream."""
        return len(self._buffer) + int(self._n)

    def _invariant(self, rank: float) -> float:
        n = self._n
        smallest = sys.float_info.max
        for q, epsilon in self._targets:
            if q * n <= rank:
                bound = _ieee_div(2 * epsilon * rank, q)
            else:
                bound = _ieee_div(2 * epsilon * (n - rank), 1 - q)
            if bound < smallest:
                smallest = bound
        return smallest

    def _flush(self) -> None:
        self._buffer.sort()
        self._merge(self._buffer)
        self._buffer.clear()

    def _merge(self, values: Sequence[float]) -> None:
        samples = self._samples
        rank = 0.0
        i = 0
        for value in values:
            while i < len(samples) and samples[i].value <= value:
                rank += samples[i].width
                i += 1
            if i < len(samples):
                bound = self._invariant(rank)
                delta = math.floor(bound) - 1 if math.isfinite(bound) else bound
                samples.insert(i, _Sample(value, 1.0, max(0.0, delta)))
            else:
                samples.append(_Sample(value, 1.0, 0.0))
            i += 1
            self._n += 1
            rank += 1
        self._compress()

    def _compress(self) -> None:
        samples = self._samples
        if len(samples) < 2:
            return
        x = samples[-1]
        rank = self._n - 1 - x.width
        for i in range(len(samples) - 2, -1, -1):
            current = samples[i]
            if current.width + x.width + x.delta <= self._invariant(rank):
                x.width += current.width
                del samples[i]
            else:
                x = current
            rank -= current.width

    def _query_samples(self, q: float) -> float:
        target = math.ceil(q * self._n)
        target += math.ceil(self._invariant(target) / 2)
        previous = self._samples[0]
        rank = 0.0
        for current in self._samples[1:]:
            rank += previous.width
            if rank + current.width + current.delta > target:
                return previous.value
            previous = current
        return previous.value


def _normalize(opts: SummaryOpts) -> SummaryOpts:
    if opts.max_age < timedelta(0):
        raise ValueError(f"illegal max age MaxAge={opts.max_age}")
    return replace(
        opts,
        objectives=dict(opts.objectives or {}),
        max_age=opts.max_age or DEF_MAX_AGE,
        age_buckets=opts.age_buckets or DEF_AGE_BUCKETS,
        buf_cap=opts.buf_cap or DEF_BUF_CAP,
    )


class Summary(Metric):
    """Summary with rank estimations over a sliding time window.

    Every observation is added to each age bucket's stream; the head stream
    answers queries and is emptied when the window moves past it. Sum and
    count cover all observations ever made.
    """

    def __init__(
        self,
        desc: Desc,
        opts: SummaryOpts,
        label_values: Sequence[str] = (),
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        opts = _normalize(opts)
        self.desc = desc
        self._objectives = dict(opts.objectives or {})
        self._sorted_objectives = sorted(self._objectives)
        self._label_pairs = make_label_pairs(desc, label_values)
        self._buf_cap = opts.buf_cap
        self._clock = clock
        self._lock = threading.Lock()
        self._sum = 0.0
        self._count = 0
        self._hot_buf: list[float] = []
        self._streams = [
            QuantileStream(self._objectives) for _ in range(opts.age_buckets)
        ]
        self._head_index = 0
        self._stream_duration = opts.max_age.total_seconds() / opts.age_buckets
        self._start = clock()
        self._hot_epoch = 1
        self._head_epoch = 1

    def _expiry(self, epoch: int) -> float:
        return self._start + epoch * self._stream_duration

    def observe(self, value: float) -> None:
        """Add one observation."""
        with self._lock:
            now = self._clock()
            if now > self._expiry(self._hot_epoch):
                self._flush(now)
            self._hot_buf.append(value)
            if len(self._hot_buf) >= self._buf_cap:
                self._flush(now)

    def write(self) -> MetricData:
        with self._lock:
            self._flush(self._clock())
            head = self._streams[self._head_index]
            empty = head.count() == 0
            quantiles = [
                Quantile(rank, math.nan if empty else head.query(rank))
                for rank in self._sorted_objectives
            ]
            data = SummaryData(self._count, self._sum, quantiles)
        return MetricData(labels=list(self._label_pairs), summary=data)

    def describe(self) -> Iterator[Desc]:
        yield self.desc

    def collect(self) -> Iterator[Metric]:
        yield self

    def _flush(self, now: float) -> None:
        pending, self._hot_buf = self._hot_buf, []
        if now > self._expiry(self._hot_epoch) and self._stream_duration > 0:
            epoch = max(
                self._hot_epoch, math.ceil((now - self._start) / self._stream_duration)
            )
            while now > self._expiry(epoch):
                epoch += 1
            self._hot_epoch = epoch
        for value in pending:
            for stream in self._streams:
                stream.insert(value)
            self._count += 1
            self._sum += value
        self._rotate_streams()

    def _rotate_streams(self) -> None:
        steps = self._hot_epoch - self._head_epoch
        if steps <= 0:
            return
        total = len(self._streams)
        for offset in range(min(steps, total)):
            self._streams[(self._head_index + offset) % total].reset()
        self._head_index = (self._head_index + steps) % total
        self._head_epoch = self._hot_epoch


class NoObjectivesSummary(Metric):
    """Summary without rank estimations: only sum and count."""

    def __init__(self, desc: Desc, label_values: Sequence[str] = ()) -> None:
        self.desc = desc
        self._label_pairs = make_label_pairs(desc, label_values)
        self._lock = threading.Lock()
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        """Add one observation."""
        with self._lock:
            self._sum += value
            self._count += 1

    def write(self) -> MetricData:
        with self._lock:
            data = SummaryData(self._count, self._sum, [])
        return MetricData(labels=list(self._label_pairs), summary=data)

    def describe(self) -> Iterator[Desc]:
        yield self.desc

    def collect(self) -> Iterator[Metric]:
        yield self


def make_summary(
    desc: Desc, opts: SummaryOpts, label_values: Sequence[str] = ()
) -> Summary | NoObjectivesSummary:
    """Create a summary for a descriptor and its variable label values."""
    label_values = tuple(label_values)
    if len(desc.variable_labels) != len(label_values):
        raise InconsistentCardinalityError(
            f"{desc.fq_name}: {len(desc.variable_labels)} label names "
            f"{list(desc.variable_labels)!r} but {len(label_values)} label values "
            f"{list(label_values)!r}"
        )
    names = [*desc.variable_labels, *(pair.name for pair in desc.const_label_pairs)]
    if QUANTILE_LABEL in names:
        raise ValueError(f'"{QUANTILE_LABEL}" is not allowed as label name in summaries')
    opts = _normalize(opts)
    if not opts.objectives:
        return NoObjectivesSummary(desc, label_values)
    return Summary(desc, opts, label_values)


def new_summary(opts: SummaryOpts) -> Summary | NoObjectivesSummary:
    """Create a summary without variable labels from its options."""
    desc = new_desc(
        build_fq_name(opts.namespace, opts.subsystem, opts.name),
        opts.help,
        None,
        opts.const_labels,
    )
    return make_summary(desc, opts, ())