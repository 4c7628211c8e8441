import math
import random
import threading
from datetime import timedelta

import pytest

from metrickit.summary import (
    NoObjectivesSummary,
    QuantileStream,
    Summary,
    SummaryOpts,
    make_summary,
    new_summary,
)
from metrickit.value import InconsistentCardinalityError, LabelPair, new_desc

OBJECTIVES = {0.5: 0.05, 0.9: 0.01, 0.99: 0.001}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def get_bounds(values, q, eps):
    n = len(values)
    lower = int((q - 2 * eps) * n)
    upper = math.ceil((q + 2 * eps) * n)
    low = values[lower - 1] if lower > 1 else values[0]
    high = values[upper - 1] if upper < n else values[-1]
    return low, high


def test_summary_with_default_objectives_has_no_quantiles():
    summary = new_summary(SummaryOpts(name="default_objectives", help="Test help."))
    data = summary.write()
    assert data.summary.quantiles == []
    assert isinstance(summary, NoObjectivesSummary)


def test_summary_without_objectives():
    summary = new_summary(
        SummaryOpts(name="empty_objectives", help="Test help.", objectives={})
    )
    summary.observe(3)
    summary.observe(0.14)
    data = summary.write()
    assert data.summary.sample_sum == pytest.approx(3.14)
    assert data.summary.sample_count == 2
    assert data.summary.quantiles == []


def test_no_objectives_write_does_not_reset():
    summary = new_summary(SummaryOpts(name="s", help="h"))
    summary.observe(2)
    summary.write()
    summary.observe(5)
    data = summary.write()
    assert data.summary.sample_count == 2
    assert data.summary.sample_sum == 7


def test_summary_with_quantile_const_label_raises():
    with pytest.raises(ValueError, match="quantile"):
        new_summary(
            SummaryOpts(name="test_summary", help="less", const_labels={"quantile": "test"})
        )


def test_summary_with_quantile_variable_label_raises():
    desc = new_desc("test_summary", "less", ["quantile"], None)
    with pytest.raises(ValueError, match="not allowed"):
        make_summary(desc, SummaryOpts(name="test_summary"), ["x"])


def test_make_summary_cardinality_mismatch():
    desc = new_desc("test_summary", "help", ["a", "b"], None)
    with pytest.raises(InconsistentCardinalityError):
        make_summary(desc, SummaryOpts(), ["only_one"])


def test_negative_max_age_raises():
    with pytest.raises(ValueError, match="illegal max age"):
        new_summary(
            SummaryOpts(name="s", objectives={0.5: 0.05}, max_age=timedelta(seconds=-1))
        )


def test_make_summary_labels_are_sorted():
    desc = new_desc("s", "help", ["zeta", "alpha"], {"mid": "m"})
    summary = make_summary(desc, SummaryOpts(objectives={0.5: 0.05}), ["z", "a"])
    assert summary.write().labels == [
        LabelPair("alpha", "a"),
        LabelPair("mid", "m"),
        LabelPair("zeta", "z"),
    ]


def test_empty_objective_summary_reports_nan_quantiles_in_rank_order():
    summary = new_summary(
        SummaryOpts(name="s", objectives={0.99: 0.001, 0.5: 0.05, 0.9: 0.01})
    )
    data = summary.write()
    assert [q.quantile for q in data.summary.quantiles] == [0.5, 0.9, 0.99]
    assert all(math.isnan(q.value) for q in data.summary.quantiles)
    assert data.summary.sample_count == 0


def test_summary_small_sample_median_is_exact():
    summary = new_summary(SummaryOpts(name="s", objectives={0.5: 0.05}))
    for value in range(1, 101):
        summary.observe(float(value))
    data = summary.write()
    assert data.summary.quantiles[0].value == 50.0
    assert data.summary.sample_count == 100
    assert data.summary.sample_sum == 5050.0


def test_describe_and_collect_yield_self():
    summary = new_summary(SummaryOpts(name="s", objectives={0.5: 0.05}))
    assert list(summary.describe()) == [summary.desc]
    assert list(summary.collect()) == [summary]


def test_summary_concurrency():
    rng = random.Random(42)
    mutations, conc_level = 2500, 4
    summary = new_summary(
        SummaryOpts(name="test_summary", help="helpless", objectives=OBJECTIVES)
    )
    chunks = [[rng.gauss(0, 1) for _ in range(mutations)] for _ in range(conc_level)]
    all_values = sorted(v for chunk in chunks for v in chunk)
    start = threading.Event()

    def work(values):
        start.wait()
        for value in values:
            summary.observe(value)

    threads = [threading.Thread(target=work, args=(chunk,)) for chunk in chunks]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join()

    data = summary.write()
    assert data.summary.sample_count == mutations * conc_level
    assert data.summary.sample_sum == pytest.approx(sum(all_values), rel=1e-9, abs=1e-6)
    for got, want_q in zip(data.summary.quantiles, sorted(OBJECTIVES)):
        assert got.quantile == want_q
        low, high = get_bounds(all_values, want_q, OBJECTIVES[want_q])
        assert low <= got.value <= high


def test_summary_decay():
    clock = FakeClock()
    desc = new_desc("test_summary", "helpless", None, None)
    summary = Summary(
        desc,
        SummaryOpts(
            objectives={0.1: 0.001},
            max_age=timedelta(milliseconds=100),
            age_buckets=10,
        ),
        clock=clock,
    )
    for i in range(1, 1001):
        clock.now = i / 1000
        summary.observe(float(i))
        if i % 10 == 0:
            got = summary.write().summary.quantiles[0].value
            want = max(i / 10, i - 90)
            assert abs(got - want) <= 20, (i, got, want)
    clock.now = 1.2
    data = summary.write()
    assert math.isnan(data.summary.quantiles[0].value)
    assert data.summary.sample_count == 1000


def test_quantile_stream_small_exact():
    stream = QuantileStream({0.5: 0.05})
    for value in range(100, 0, -1):
        stream.insert(float(value))
    assert stream.count() == 100
    assert stream.query(0.5) == 50.0
    assert stream.query(0.0) == 1.0


def test_quantile_stream_empty_query_is_zero():
    assert QuantileStream({0.5: 0.05}).query(0.5) == 0.0


def test_quantile_stream_reset():
    stream = QuantileStream(OBJECTIVES)
    for value in range(2000):
        stream.insert(float(value))
    assert stream.count() == 2000
    stream.reset()
    assert stream.count() == 0
    assert stream.query(0.5) == 0.0


def test_quantile_stream_large_within_bounds():
    rng = random.Random(7)
    values = [float(v) for v in range(1, 10001)]
    shuffled = values[:]
    rng.shuffle(shuffled)
    stream = QuantileStream(OBJECTIVES)
    for value in shuffled:
        stream.insert(value)
    assert stream.count() == 10000
    for q, eps in OBJECTIVES.items():
        low, high = get_bounds(values, q, eps)
        assert low <= stream.query(q) <= high