# metrickit

Building blocks for describing, collecting and checking metrics in the
Prometheus data model and text exposition format.

## Modules

- `metrickit.value` – the data model and simple metrics:
  - `Desc` and `new_desc(fq_name, help, variable_labels, const_labels)`;
    `build_fq_name(namespace, subsystem, name)` joins the non-empty parts with
    `_`. `new_desc` does not raise: a problem with the name or labels is kept
    in `Desc.err`.
  - Exported records: `MetricData`, `MetricFamily`, `LabelPair`,
    `CounterData`, `ValueData`, `SummaryData`, `Quantile`, `Exemplar`, and the
    enums `ValueType` (`COUNTER`, `GAUGE`, `UNTYPED`) and `MetricType`.
  - `new_const_metric(desc, value_type, value, *label_values)` returns a
    `ConstMetric`; it raises `Desc.err` if set, and `ValueError`
    (`InconsistentCardinalityError` for a wrong number of values) for bad label
    values.
  - `ValueFunc`, a metric whose value is read from a function on every
    `write()`.
  - `make_label_pairs`, `populate_metric`, `validate_label_values` and
    `new_exemplar` (which limits exemplar labels to 64 characters in total).
- `metrickit.untyped` – `UntypedOpts` and `new_untyped_func(opts, function)`.
- `metrickit.timer` – `Timer(observer)`. The observer may be an object with an
  `observe` method, a plain callable, or `None`. `observe_duration()` reports
  the elapsed seconds to the observer and returns them as a `timedelta`; used
  as a context manager it observes on exit.
- `metrickit.vec` – `MetricVec(desc, new_metric)`, metrics sharing one
  descriptor and keyed by label values: `with_label_values`, `with_labels`,
  `get_metric_with_label_values`, `get_metric_with`, `delete_label_values`,
  `delete`, `reset`, `curry_with`, `collect`, `describe` and `len()`. Curried
  vectors share their metrics with the vector they came from.
- `metrickit.summary` – `SummaryOpts`, `new_summary(opts)` and
  `make_summary(desc, opts, label_values)`. With `objectives` set the result is
  a `Summary` that estimates the requested quantiles over a sliding window of
  `max_age` (default 10 minutes) split into `age_buckets` (default 5); without
  objectives it is a `NoObjectivesSummary` that keeps only sum and count.
  `QuantileStream` is the underlying streaming estimator. The label name
  `quantile` is rejected.
- `metrickit.summary_vec` – `SummaryVec(opts, label_names)`, and
  `new_const_summary(desc, count, sum, quantiles, *label_values)` returning a
  `ConstSummary`.
- `metrickit.wrap` – `wrap_registerer_with(labels, reg)` and
  `wrap_registerer_with_prefix(prefix, reg)` return a `WrappingRegisterer`
  that hands each collector to `reg` as a `WrappingCollector`, whose
  descriptors and metrics (`WrappingMetric`) carry the prefix and extra
  constant labels. `wrap_desc` does the descriptor rewriting. Wrapping `None`
  gives a registerer that does nothing.
- `metrickit.promlint` – `Linter(text, metric_families).lint()` returns
  `Problem(metric, text)` entries sorted by metric name and text. It checks
  help text, units, `_total` on counters, names and labels reserved for
  histograms and summaries, type names in metric names, colons, camelCase and
  abbreviated units. `parse_text` reads the text exposition format into
  `MetricFamily` objects; `lint_metric_family` lints one family.
- `metrickit.testutil` – `to_float64(collector)`, `gather_and_count`,
  `gather_and_compare` (raises `MetricMismatchError`), `gather_and_lint` and
  `encode_text(families)`.

## Installation

```
pip install .
```

## Examples

Timing work into a summary:

```python
from metrickit.summary import SummaryOpts, new_summary
from metrickit.timer import Timer

latency = new_summary(SummaryOpts(
    name="request_duration_seconds",
    help="Request latency.",
    objectives={0.5: 0.05, 0.9: 0.01, 0.99: 0.001},
))

with Timer(latency):
    sum(range(100_000))

data = latency.write()
print(data.summary.sample_count, [(q.quantile, q.value) for q in data.summary.quantiles])
```

A labelled vector of summaries:

```python
from metrickit.summary import SummaryOpts
from metrickit.summary_vec import SummaryVec

by_code = SummaryVec(SummaryOpts(name="rpc_seconds", help="RPC latency."), ["code"])
by_code.with_label_values("200").observe(0.12)
by_code.with_labels({"code": "500"}).observe(1.4)
ok_only = by_code.curry_with({"code": "200"})
ok_only.with_label_values().observe(0.3)
print(len(by_code))  # 2
```

Reading a single value in a test:

```python
from metrickit.testutil import to_float64
from metrickit.untyped import UntypedOpts, new_untyped_func

temperature = new_untyped_func(UntypedOpts(name="room_celsius"), lambda: 21.5)
assert to_float64(temperature) == 21.5
```

Linting and comparing metrics in the text format:

```python
from metrickit.promlint import Linter, parse_text
from metrickit.testutil import gather_and_compare, gather_and_count

text = """
# HELP x_milliseconds Test metric.
# TYPE x_milliseconds gauge
x_milliseconds 10
"""
for problem in Linter(text).lint():
    print(problem.metric, problem.text)  # use base unit "seconds" instead of "milliseconds"

families = parse_text(text)
print(gather_and_count(families))  # 1
gather_and_compare(families, text)  # raises MetricMismatchError on a difference
```

The `gather_and_*` functions accept either an object with a `gather()` method
returning `MetricFamily` objects, or an iterable of `MetricFamily` objects.

## What the package does not do

- There is no registry: nothing in the package gathers registered collectors
  into `MetricFamily` objects, so `WrappingRegisterer` needs a registerer
  object (with `register` and `unregister`) supplied by the caller, and the
  `gather_and_*` helpers need families supplied by the caller.
- There are no counter, gauge or histogram metric types beyond constant and
  function-backed values.
- There is no HTTP endpoint or other exposition server; `encode_text` only
  produces the text format as a string.

## Running the tests

```
pip install .[test]
pytest
```