"""Collections of metrics that share a descriptor and differ in label values."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Mapping, NamedTuple, Sequence

from metrickit.value import (
    Desc,
    InconsistentCardinalityError,
    Metric,
    validate_label_values,
)

SEPARATOR_BYTE = 255
"""Byte mixed into the hash between label values."""

_FNV_OFFSET_64 = 14695981039346656037
_FNV_PRIME_64 = 1099511628211
_MASK_64 = (1 << 64) - 1

HashAdd = Callable[[int, str], int]
HashAddByte = Callable[[int, int], int]
MetricFactory = Callable[..., Metric]


def hash_new() -> int:
    """Return the initial FNV-1a 64-bit hash value."""
    return _FNV_OFFSET_64


def hash_add(h: int, s: str) -> int:
    """Mix the UTF-8 bytes of ``s`` into the FNV-1a hash ``h``."""
    for byte in s.encode("utf-8", "surrogatepass"):
        h = ((h ^ byte) * _FNV_PRIME_64) & _MASK_64
    return h


def hash_add_byte(h: int, b: int) -> int:
    """Mix one byte into the FNV-1a hash ``h``."""
    return ((h ^ b) * _FNV_PRIME_64) & _MASK_64


class _CurriedLabelValue(NamedTuple):
    index: int
    value: str


@dataclass
class _Entry:
    values: tuple[str, ...]
    metric: Metric


def _validate_values_in_labels(labels: Mapping[str, str], expected_count: int) -> None:
    if len(labels) != expected_count:
        raise InconsistentCardinalityError(
            f"inconsistent label cardinality: expected {expected_count} "
            f"label values but got {len(labels)} in {dict(labels)!r}"
        )
    validate_label_values(list(labels.values()), len(labels))


def _inline_label_values(
    lvs: Sequence[str], curry: Sequence[_CurriedLabelValue]
) -> tuple[str, ...]:
    curried = dict(curry)
    remaining = iter(lvs)
    return tuple(
        curried[i] if i in curried else next(remaining)
        for i in range(len(lvs) + len(curry))
    )


def _extract_label_values(
    desc: Desc, labels: Mapping[str, str], curry: Sequence[_CurriedLabelValue]
) -> tuple[str, ...]:
    curried = dict(curry)
    return tuple(
        curried[i] if i in curried else labels.get(name, "")
        for i, name in enumerate(desc.variable_labels)
    )


def _match_label_values(
    values: tuple[str, ...], lvs: Sequence[str], curry: Sequence[_CurriedLabelValue]
) -> bool:
    if len(values) != len(lvs) + len(curry):
        return False
    return values == _inline_label_values(lvs, curry)


def _match_labels(
    desc: Desc,
    values: tuple[str, ...],
    labels: Mapping[str, str],
    curry: Sequence[_CurriedLabelValue],
) -> bool:
    if len(values) != len(labels) + len(curry):
        return False
    return values == _extract_label_values(desc, labels, curry)


class _MetricMap:
    """Hash-bucketed storage shared between differently curried vectors."""

    def __init__(self, desc: Desc, new_metric: MetricFactory) -> None:
        self.desc = desc
        self.new_metric = new_metric
        self.metrics: dict[int, list[_Entry]] = {}
        self.lock = threading.Lock()

    def snapshot(self) -> list[Metric]:
        with self.lock:
            return [entry.metric for bucket in self.metrics.values() for entry in bucket]

    def count(self) -> int:
        with self.lock:
            return sum(len(bucket) for bucket in self.metrics.values())

    def reset(self) -> None:
        with self.lock:
            self.metrics.clear()

    def _remove(self, h: int, match: Callable[[_Entry], bool]) -> bool:
        with self.lock:
            bucket = self.metrics.get(h)
            if not bucket:
                return False
            for position, entry in enumerate(bucket):
                if match(entry):
                    del bucket[position]
                    if not bucket:
                        del self.metrics[h]
                    return True
            return False

    def _find(self, h: int, match: Callable[[_Entry], bool]) -> Metric | None:
        for entry in self.metrics.get(h, ()):
            if match(entry):
                return entry.metric
        return None

    def delete_by_label_values(
        self, h: int, lvs: Sequence[str], curry: Sequence[_CurriedLabelValue]
    ) -> bool:
        return self._remove(h, lambda e: _match_label_values(e.values, lvs, curry))

    def delete_by_labels(
        self, h: int, labels: Mapping[str, str], curry: Sequence[_CurriedLabelValue]
    ) -> bool:
        return self._remove(
            h, lambda e: _match_labels(self.desc, e.values, labels, curry)
        )

    def get_or_create_with_label_values(
        self, h: int, lvs: Sequence[str], curry: Sequence[_CurriedLabelValue]
    ) -> Metric:
        with self.lock:
            found = self._find(h, lambda e: _match_label_values(e.values, lvs, curry))
            if found is not None:
                return found
            values = _inline_label_values(lvs, curry)
            metric = self.new_metric(*values)
            self.metrics.setdefault(h, []).append(_Entry(values, metric))
            return metric

    def get_or_create_with_labels(
        self, h: int, labels: Mapping[str, str], curry: Sequence[_CurriedLabelValue]
    ) -> Metric:
        with self.lock:
            found = self._find(
                h, lambda e: _match_labels(self.desc, e.values, labels, curry)
            )
            if found is not None:
                return found
            values = _extract_label_values(self.desc, labels, curry)
            metric = self.new_metric(*values)
            self.metrics.setdefault(h, []).append(_Entry(values, metric))
            return metric


class MetricVec:
    """Bundle of metrics with one descriptor, keyed by their label values.

    Metrics are created on first access through ``new_metric``, which is
    called with the full list of label values. Curried vectors created with
    ``curry_with`` share the stored metrics with the vector they came from.
    """

    def __init__(
        self,
        desc: Desc,
        new_metric: MetricFactory,
        hash_add: HashAdd | None = None,
        hash_add_byte: HashAddByte | None = None,
    ) -> None:
        self.desc = desc
        self._map = _MetricMap(desc, new_metric)
        self._curry: tuple[_CurriedLabelValue, ...] = ()
        self._hash_add: HashAdd = hash_add or globals_hash_add
        self._hash_add_byte: HashAddByte = hash_add_byte or globals_hash_add_byte

    def __len__(self) -> int:
        return self._map.count()

    def delete_label_values(self, *label_values: str) -> bool:
        """Remove the metric with these label values; True if one was removed."""
        try:
            h = self._hash_label_values(label_values)
        except ValueError:
            return False
        return self._map.delete_by_label_values(h, label_values, self._curry)

    def delete(self, labels: Mapping[str, str] | None) -> bool:
        """Remove the metric with these labels; True if one was removed."""
        labels = dict(labels or {})
        try:
            h = self._hash_labels(labels)
        except ValueError:
            return False
        return self._map.delete_by_labels(h, labels, self._curry)

    def describe(self) -> Iterator[Desc]:
        yield self.desc

    def collect(self) -> Iterator[Metric]:
        yield from self._map.snapshot()

    def reset(self) -> None:
        """Delete all metrics, including those reached through curried vectors."""
        self._map.reset()

    def curry_with(self, labels: Mapping[str, str] | None) -> MetricVec:
        """Return a vector with the given labels preset for all operations."""
        labels = dict(labels or {})
        old_curry = self._curry
        new_curry: list[_CurriedLabelValue] = []
        i_curry = 0
        for i, label in enumerate(self.desc.variable_labels):
            if i_curry < len(old_curry) and old_curry[i_curry].index == i:
                if label in labels:
                    raise ValueError(f'label name "{label}" is already curried')
                new_curry.append(old_curry[i_curry])
                i_curry += 1
            elif label in labels:
                new_curry.append(_CurriedLabelValue(i, labels[label]))
        unknown = len(old_curry) + len(labels) - len(new_curry)
        if unknown > 0:
            raise ValueError(f"{unknown} unknown label(s) found during currying")
        curried = copy.copy(self)
        curried._curry = tuple(new_curry)
        return curried

    def get_metric_with_label_values(self, *label_values: str) -> Metric:
        """Return the metric for these label values, creating it if needed."""
        h = self._hash_label_values(label_values)
        return self._map.get_or_create_with_label_values(h, label_values, self._curry)

    def get_metric_with(self, labels: Mapping[str, str] | None) -> Metric:
        """Return the metric for these labels, creating it if needed."""
        labels = dict(labels or {})
        h = self._hash_labels(labels)
        return self._map.get_or_create_with_labels(h, labels, self._curry)

    def with_label_values(self, *label_values: str) -> Metric:
        """Shortcut for ``get_metric_with_label_values``."""
        return self.get_metric_with_label_values(*label_values)

    def with_labels(self, labels: Mapping[str, str] | None) -> Metric:
        """Shortcut for ``get_metric_with``."""
        return self.get_metric_with(labels)

    def _hash_label_values(self, values: Sequence[str]) -> int:
        validate_label_values(values, len(self.desc.variable_labels) - len(self._curry))
        curried = dict(self._curry)
        remaining = iter(values)
        h = hash_new()
        for i in range(len(self.desc.variable_labels)):
            value = curried[i] if i in curried else next(remaining)
            h = self._hash_add(h, value)
            h = self._hash_add_byte(h, SEPARATOR_BYTE)
        return h

    def _hash_labels(self, labels: Mapping[str, str]) -> int:
        _validate_values_in_labels(
            labels, len(self.desc.variable_labels) - len(self._curry)
        )
        curried = dict(self._curry)
        h = hash_new()
        for i, label in enumerate(self.desc.variable_labels):
            if i in curried:
                if label in labels:
                    raise ValueError(f'label name "{label}" is already curried')
                value = curried[i]
            else:
                if label not in labels:
                    raise ValueError(f'label name "{label}" missing in label map')
                value = labels[label]
            h = self._hash_add(h, value)
            h = self._hash_add_byte(h, SEPARATOR_BYTE)
        return h


globals_hash_add = hash_add
globals_hash_add_byte = hash_add_byte