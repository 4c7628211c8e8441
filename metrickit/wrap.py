"""Registerers that add a name prefix or fixed labels to registered collectors."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterator, Mapping, Protocol

from metrickit.value import Desc, LabelPair, Metric, MetricData, new_desc


class _Collector(Protocol):
    def describe(self) -> Iterator[Desc]: ...

    def collect(self) -> Iterator[Metric]: ...


class _Registerer(Protocol):
    def register(self, collector: _Collector) -> None: ...

    def unregister(self, collector: _Collector) -> bool: ...


def wrap_desc(desc: Desc, prefix: str, labels: Mapping[str, str] | None) -> Desc:
    """Return a descriptor with the prefix prepended and labels added as constants.

    Errors are stored in the returned descriptor; an error already present in
    ``desc`` takes precedence.
    """
    const_labels = {pair.name: pair.value for pair in desc.const_label_pairs}
    for name, value in (labels or {}).items():
        if name in const_labels:
            return Desc(
                fq_name=desc.fq_name,
                help=desc.help,
                variable_labels=desc.variable_labels,
                const_label_pairs=desc.const_label_pairs,
                err=ValueError(
                    f'attempted wrapping with already existing label name "{name}"'
                ),
            )
        const_labels[name] = value
    wrapped = new_desc(prefix + desc.fq_name, desc.help, desc.variable_labels, const_labels)
    if desc.err is not None:
        wrapped = replace(wrapped, err=desc.err)
    return wrapped


@dataclass(eq=False)
class WrappingMetric(Metric):
    """A metric reported with a prefixed name and extra constant labels."""

    wrapped_metric: Metric
    prefix: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def desc(self) -> Desc:  # type: ignore[override]
        return wrap_desc(self.wrapped_metric.desc, self.prefix, self.labels)

    def write(self) -> MetricData:
        data = self.wrapped_metric.write()
        if not self.labels:
            return data
        labels = [*data.labels, *(LabelPair(n, v) for n, v in self.labels.items())]
        labels.sort(key=lambda pair: pair.name)
        return replace(data, labels=labels)


@dataclass(eq=False)
class WrappingCollector:
    """A collector whose descriptors and metrics are wrapped on the way out."""

    wrapped_collector: _Collector
    prefix: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def collect(self) -> Iterator[Metric]:
        for metric in self.wrapped_collector.collect():
            yield WrappingMetric(metric, self.prefix, self.labels)

    def describe(self) -> Iterator[Desc]:
        for desc in self.wrapped_collector.describe():
            yield wrap_desc(desc, self.prefix, self.labels)

    def unwrap_recursively(self) -> _Collector:
        """Return the innermost collector that is not itself a wrapper."""
        inner = self.wrapped_collector
        while isinstance(inner, WrappingCollector):
            inner = inner.wrapped_collector
        return inner


@dataclass(eq=False)
class WrappingRegisterer:
    """Registers collectors with another registerer in wrapped form.

    Wrapping None gives a registerer that does nothing.
    """

    wrapped_registerer: _Registerer | None
    prefix: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def _wrap(self, collector: _Collector) -> WrappingCollector:
        return WrappingCollector(collector, self.prefix, self.labels)

    def register(self, collector: _Collector) -> None:
        """Register the wrapped collector; errors of the target propagate."""
        if self.wrapped_registerer is None:
            return
        self.wrapped_registerer.register(self._wrap(collector))

    def must_register(self, *collectors: _Collector) -> None:
        """Register every collector, raising on the first failure."""
        if self.wrapped_registerer is None:
            return
        for collector in collectors:
            self.register(collector)

    def unregister(self, collector: _Collector) -> bool:
        """Unregister the wrapped form of the collector; True if it was found."""
        if self.wrapped_registerer is None:
            return False
        return self.wrapped_registerer.unregister(self._wrap(collector))


def wrap_registerer_with(
    labels: Mapping[str, str] | None, reg: _Registerer | None
) -> WrappingRegisterer:
    """Return a registerer adding ``labels`` to everything registered through it."""
    return WrappingRegisterer(reg, labels=dict(labels or {}))


def wrap_registerer_with_prefix(prefix: str, reg: _Registerer | None) -> WrappingRegisterer:
    """Return a registerer prefixing the names of everything registered through it."""
    return WrappingRegisterer(reg, prefix=prefix)