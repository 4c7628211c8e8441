"""Metric descriptors, exported metric records and simple value metrics."""

from __future__ import annotations

import enum
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, Mapping, Sequence

EXEMPLAR_MAX_RUNES = 64
"""Maximum total number of characters allowed in exemplar label names and values."""

RESERVED_LABEL_PREFIX = "__"

_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


class ValueType(enum.IntEnum):
    """Kinds of metric that carry one simple value."""

    COUNTER = 1
    GAUGE = 2
    UNTYPED = 3


class MetricType(enum.IntEnum):
    """Type of a metric family in the exposition model."""

    COUNTER = 0
    GAUGE = 1
    SUMMARY = 2
    UNTYPED = 3
    HISTOGRAM = 4


class InconsistentCardinalityError(ValueError):
    """The number of label values does not match the number of labels."""


@dataclass(frozen=True, order=True)
class LabelPair:
    """A label name with its value."""

    name: str
    value: str


@dataclass
class Exemplar:
    """A sample value with labels and a timestamp attached to a counter."""

    value: float
    timestamp: datetime
    labels: list[LabelPair] = field(default_factory=list)


@dataclass
class CounterData:
    """Exported state of a counter."""

    value: float
    exemplar: Exemplar | None = None


@dataclass
class ValueData:
    """Exported state of a gauge or untyped metric."""

    value: float


@dataclass
class Quantile:
    """One rank estimation of a summary."""

    quantile: float
    value: float


@dataclass
class SummaryData:
    """Exported state of a summary."""

    sample_count: int
    sample_sum: float
    quantiles: list[Quantile] = field(default_factory=list)


@dataclass
class MetricData:
    """One exported metric: its labels and exactly one kind of payload."""

    labels: list[LabelPair] = field(default_factory=list)
    counter: CounterData | None = None
    gauge: ValueData | None = None
    untyped: ValueData | None = None
    summary: SummaryData | None = None


@dataclass
class MetricFamily:
    """All exported metrics that share one name."""

    name: str
    help: str | None
    type: MetricType
    metrics: list[MetricData] = field(default_factory=list)


@dataclass(frozen=True)
class Desc:
    """Immutable description of a metric: name, help and label dimensions.

    A descriptor built from invalid input keeps the problem in ``err``
    instead of raising, so it can be reported when the metric is used.
    """

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()
    const_label_pairs: tuple[LabelPair, ...] = ()
    err: Exception | None = field(default=None, compare=False)


class Metric(ABC):
    """A single sample value with its labels, exported through ``write``."""

    desc: Desc

    @abstractmethod
    def write(self) -> MetricData:
        """Return the current state of the metric."""


def _is_valid_utf8(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _check_label_name(name: str) -> bool:
    return bool(_LABEL_NAME_RE.fullmatch(name)) and not name.startswith(
        RESERVED_LABEL_PREFIX
    )


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with underscores; an empty name yields ''."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


def validate_label_values(values: Sequence[str], expected_count: int) -> None:
    """Raise if the count of values is wrong or a value is not valid UTF-8."""
    if len(values) != expected_count:
        raise InconsistentCardinalityError(
            f"inconsistent label cardinality: expected {expected_count} "
            f"label values but got {len(values)} in {list(values)!r}"
        )
    for value in values:
        if not _is_valid_utf8(value):
            raise ValueError(f"label value {value!r} is not valid UTF-8")


def _desc_error(
    fq_name: str,
    const_labels: Mapping[str, str],
    variable_labels: Sequence[str],
) -> Exception | None:
    if not _METRIC_NAME_RE.fullmatch(fq_name):
        return ValueError(f"{fq_name!r} is not a valid metric name")
    for name in const_labels:
        if not _check_label_name(name):
            return ValueError(
                f"{name!r} is not a valid label name for metric {fq_name!r}"
            )
    try:
        validate_label_values(list(const_labels.values()), len(const_labels))
    except ValueError as exc:
        return exc
    for name in variable_labels:
        if not _check_label_name(name):
            return ValueError(
                f"{name!r} is not a valid label name for metric {fq_name!r}"
            )
    all_names = [*const_labels, *variable_labels]
    if len(all_names) != len(set(all_names)):
        return ValueError("duplicate label names")
    return None


def new_desc(
    fq_name: str,
    help: str,
    variable_labels: Sequence[str] | None = None,
    const_labels: Mapping[str, str] | None = None,
) -> Desc:
    """Build a descriptor; validation problems are stored in ``Desc.err``."""
    variable = tuple(variable_labels or ())
    const = dict(const_labels or {})
    pairs = tuple(sorted(LabelPair(name, value) for name, value in const.items()))
    return Desc(
        fq_name=fq_name,
        help=help,
        variable_labels=variable,
        const_label_pairs=pairs,
        err=_desc_error(fq_name, const, variable),
    )


def make_label_pairs(desc: Desc, label_values: Sequence[str]) -> list[LabelPair]:
    """Combine variable label values with the constant labels, sorted by name."""
    if not desc.variable_labels:
        return list(desc.const_label_pairs)
    pairs = [
        LabelPair(name, value)
        for name, value in zip(desc.variable_labels, label_values, strict=True)
    ]
    pairs.extend(desc.const_label_pairs)
    pairs.sort(key=lambda pair: pair.name)
    return pairs


def populate_metric(
    value_type: ValueType,
    value: float,
    label_pairs: Sequence[LabelPair],
    exemplar: Exemplar | None = None,
) -> MetricData:
    """Build the exported record for a simple value of the given type."""
    labels = list(label_pairs)
    if value_type == ValueType.COUNTER:
        return MetricData(labels=labels, counter=CounterData(value, exemplar))
    if value_type == ValueType.GAUGE:
        return MetricData(labels=labels, gauge=ValueData(value))
    if value_type == ValueType.UNTYPED:
        return MetricData(labels=labels, untyped=ValueData(value))
    raise ValueError(f"encountered unknown type {value_type!r}")


def new_exemplar(value: float, ts: datetime, labels: Mapping[str, str]) -> Exemplar:
    """Build an exemplar, checking label names, encoding and total length."""
    pairs = []
    runes = 0
    for name, label_value in labels.items():
        if not _check_label_name(name):
            raise ValueError(f"exemplar label name {name!r} is invalid")
        runes += len(name)
        if not _is_valid_utf8(label_value):
            raise ValueError(f"exemplar label value {label_value!r} is not valid UTF-8")
        runes += len(label_value)
        pairs.append(LabelPair(name, label_value))
    if runes > EXEMPLAR_MAX_RUNES:
        raise ValueError(
            f"exemplar labels have {runes} runes, "
            f"exceeding the limit of {EXEMPLAR_MAX_RUNES}"
        )
    return Exemplar(value=value, timestamp=ts, labels=pairs)


class ValueFunc(Metric):
    """A metric whose value is read from a function each time it is written."""

    def __init__(
        self, desc: Desc, value_type: ValueType, function: Callable[[], float]
    ) -> None:
        self.desc = desc
        self.value_type = value_type
        self.function = function
        self._label_pairs = make_label_pairs(desc, ())

    def write(self) -> MetricData:
        return populate_metric(self.value_type, self.function(), self._label_pairs)

    def describe(self) -> Iterator[Desc]:
        yield self.desc

    def collect(self) -> Iterator[Metric]:
        yield self


@dataclass
class ConstMetric(Metric):
    """A metric with one fixed value."""

    desc: Desc
    value_type: ValueType
    value: float
    label_pairs: list[LabelPair] = field(default_factory=list)

    def write(self) -> MetricData:
        return populate_metric(self.value_type, self.value, self.label_pairs)


def new_const_metric(
    desc: Desc, value_type: ValueType, value: float, *label_values: str
) -> ConstMetric:
    """Create a fixed-value metric; raises if the descriptor or labels are invalid."""
    if desc.err is not None:
        raise desc.err
    validate_label_values(label_values, len(desc.variable_labels))
    return ConstMetric(
        desc=desc,
        value_type=value_type,
        value=value,
        label_pairs=make_label_pairs(desc, label_values),
    )