"""Helpers for testing collectors: reading values, counting, comparing and linting."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import IO, Any, Iterable, Sequence

from metrickit.promlint import Linter, Problem, parse_text
from metrickit.value import LabelPair, MetricData, MetricFamily, MetricType


class MetricMismatchError(AssertionError):
    """Gathered metrics differ from the expected exposition text."""


def to_float64(collector: Any) -> float:
    """Return the value of the single gauge, counter or untyped metric collected.

    Raises ValueError unless exactly one metric is collected, and TypeError if
    that metric is of another kind.
    """
    metrics = list(collector.collect())
    if len(metrics) != 1:
        raise ValueError(f"collected {len(metrics)} metrics instead of exactly 1")
    data = metrics[0].write()
    if data.gauge is not None:
        return data.gauge.value
    if data.counter is not None:
        return data.counter.value
    if data.untyped is not None:
        return data.untyped.value
    raise TypeError(f"collected a non-gauge/counter/untyped metric: {data!r}")


def _gather(gatherer: Any, metric_names: Sequence[str]) -> list[MetricFamily]:
    """Gather families from an object with ``gather()`` or from an iterable of them."""
    gather = getattr(gatherer, "gather", None)
    if gather is None:
        families = list(gatherer)
    else:
        try:
            families = list(gather())
        except Exception as exc:
            raise RuntimeError(f"gathering metrics failed: {exc}") from exc
    if metric_names:
        wanted = set(metric_names)
        families = [mf for mf in families if mf.name in wanted]
    return families


def gather_and_count(gatherer: Any, *metric_names: str) -> int:
    """Count the metrics in all gathered families, optionally only those named."""
    return sum(len(mf.metrics) for mf in _gather(gatherer, metric_names))


def gather_and_lint(gatherer: Any, *metric_names: str) -> list[Problem]:
    """Lint the gathered families, optionally only those named."""
    families = _gather(gatherer, metric_names)
    return Linter(metric_families=families).lint()


def _normalize(families: Iterable[MetricFamily]) -> list[MetricFamily]:
    result = [mf for mf in families if mf.metrics]
    for mf in result:
        mf.metrics.sort(key=lambda data: [pair.value for pair in data.labels])
    result.sort(key=lambda mf: mf.name)
    return result


def gather_and_compare(
    gatherer: Any, expected: str | IO[str], *metric_names: str
) -> None:
    """Compare gathered metrics with expected text in the exposition format.

    Only the named families are compared if names are given. Raises
    MetricMismatchError with both encodings if the outputs differ.
    """
    got = _gather(gatherer, metric_names)
    text = expected if isinstance(expected, str) else expected.read()
    try:
        want = _normalize(parse_text(text))
    except ValueError as exc:
        raise ValueError(f"parsing expected metrics failed: {exc}") from exc
    try:
        got_text = encode_text(got)
    except ValueError as exc:
        raise ValueError(f"encoding gathered metrics failed: {exc}") from exc
    try:
        want_text = encode_text(want)
    except ValueError as exc:
        raise ValueError(f"encoding expected metrics failed: {exc}") from exc
    if want_text != got_text:
        raise MetricMismatchError(
            "\nmetric output does not match expectation; want:\n\n"
            f"{want_text}\ngot:\n\n{got_text}"
        )


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign = "-" if math.copysign(1.0, value) < 0 else ""
    if value == 0:
        return sign + "0"
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    raw = "".join(str(digit) for digit in digit_tuple)
    digits = raw.rstrip("0")
    exponent += len(raw) - len(digits)
    count = len(digits)
    point = count + exponent
    exp10 = point - 1
    if exp10 < -4 or exp10 >= 6:
        mantissa = digits[0] + ("." + digits[1:] if count > 1 else "")
        exp_sign = "+" if exp10 >= 0 else "-"
        return f"{sign}{mantissa}e{exp_sign}{abs(exp10):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= count:
        return sign + digits + "0" * (point - count)
    return f"{sign}{digits[:point]}.{digits[point:]}"


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _render_labels(pairs: Sequence[LabelPair], extra: LabelPair | None = None) -> str:
    items = [f'{pair.name}="{_escape_label(pair.value)}"' for pair in pairs]
    if extra is not None:
        items.append(f'{extra.name}="{_escape_label(extra.value)}"')
    return "{" + ",".join(items) + "}" if items else ""


def _metric_lines(mf: MetricFamily, data: MetricData) -> list[str]:
    name = mf.name
    labels = _render_labels(data.labels)
    if mf.type == MetricType.COUNTER and data.counter is not None:
        return [f"{name}{labels} {_format_float(data.counter.value)}"]
    if mf.type == MetricType.GAUGE and data.gauge is not None:
        return [f"{name}{labels} {_format_float(data.gauge.value)}"]
    if mf.type == MetricType.UNTYPED and data.untyped is not None:
        return [f"{name}{labels} {_format_float(data.untyped.value)}"]
    if mf.type == MetricType.SUMMARY and data.summary is not None:
        summary = data.summary
        lines = [
            f"{name}"
            f"{_render_labels(data.labels, LabelPair('quantile', _format_float(q.quantile)))}"
            f" {_format_float(q.value)}"
            for q in summary.quantiles
        ]
        lines.append(f"{name}_sum{labels} {_format_float(summary.sample_sum)}")
        lines.append(f"{name}_count{labels} {int(summary.sample_count)}")
        return lines
    raise ValueError(
        f"expected {mf.type.name.lower()} in metric {name} {data.labels!r}"
    )


def encode_text(families: Iterable[MetricFamily]) -> str:
    """Encode metric families in the text exposition format."""
    lines: list[str] = []
    for mf in families:
        if not mf.metrics:
            raise ValueError(f"MetricFamily {mf.name!r} has no metrics")
        if mf.help is not None:
            lines.append(f"# HELP {mf.name} {_escape_help(mf.help)}")
        lines.append(f"# TYPE {mf.name} {mf.type.name.lower()}")
        for data in mf.metrics:
            lines.extend(_metric_lines(mf, data))
    return "".join(line + "\n" for line in lines)