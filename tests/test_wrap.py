import pytest

from metrickit.value import (
    ConstMetric,
    LabelPair,
    ValueFunc,
    ValueType,
    new_desc,
)
from metrickit.wrap import (
    WrappingCollector,
    WrappingMetric,
    wrap_desc,
    wrap_registerer_with,
    wrap_registerer_with_prefix,
)


class _Registry:
    """Minimal registry checking descriptors and collected metrics."""

    def __init__(self):
        self._collectors = []
        self._ids = set()
        self._label_names = {}

    def register(self, collector):
        descs = list(collector.describe())
        keys = set()
        for desc in descs:
            if desc.err is not None:
                raise desc.err
            names = frozenset(desc.variable_labels) | {
                p.name for p in desc.const_label_pairs
            }
            known = self._label_names.get(desc.fq_name)
            if known is not None and known != names:
                raise ValueError("inconsistent label names")
            key = (desc.fq_name, desc.const_label_pairs)
            if key in self._ids:
                raise ValueError("duplicate descriptor")
            keys.add(key)
        for desc in descs:
            self._label_names[desc.fq_name] = frozenset(desc.variable_labels) | {
                p.name for p in desc.const_label_pairs
            }
        self._ids |= keys
        self._collectors.append((collector, keys))

    def unregister(self, collector):
        keys = {(d.fq_name, d.const_label_pairs) for d in collector.describe()}
        for entry in self._collectors:
            if entry[1] == keys:
                self._collectors.remove(entry)
                self._ids -= keys
                return True
        return False

    def gather(self):
        seen = set()
        out = []
        for collector, _ in self._collectors:
            for metric in collector.collect():
                desc = metric.desc
                if desc.err is not None:
                    raise desc.err
                data = metric.write()
                labels = tuple((p.name, p.value) for p in data.labels)
                key = (desc.fq_name, labels)
                if key in seen:
                    raise ValueError("duplicate metric")
                seen.add(key)
                payload = data.counter or data.gauge
                out.append((desc.fq_name, labels, payload.value))
        return sorted(out)


class _Unchecked:
    def __init__(self, inner):
        self.inner = inner

    def describe(self):
        return iter(())

    def collect(self):
        return self.inner.collect()


def _counter(name, const_labels=None):
    return ValueFunc(
        new_desc(name, "helpSimpleCnt", None, const_labels or {}),
        ValueType.COUNTER,
        lambda: 1.0,
    )


def _make(kind):
    return {
        "gge": lambda: ValueFunc(
            new_desc("simpleGge", "helpSimpleGge"), ValueType.GAUGE, lambda: 3.14
        ),
        "cnt": lambda: _counter("simpleCnt"),
        "bar_cnt": lambda: _counter("simpleCnt", {"foo": "bar"}),
        "twice": lambda: _counter("pre_simpleCnt", {"foo": "bar", "dings": "bums"}),
        "unchecked_bar": lambda: _Unchecked(_counter("simpleCnt", {"foo": "bar"})),
    }[kind]()


GGE = ("simpleGge", (), 3.14)
PRE_CNT = ("pre_simpleCnt", (), 1.0)
CNT = ("simpleCnt", (), 1.0)
BAR_CNT = ("simpleCnt", (("foo", "bar"),), 1.0)
BAZ_CNT = ("simpleCnt", (("foo", "baz"),), 1.0)
LABELED_PRE = ("pre_simpleCnt", (("foo", "bar"),), 1.0)
TWICE = ("pre_simpleCnt", (("dings", "bums"), ("foo", "bar")), 1.0)

SCENARIOS = {
    "wrap nothing": ("pre_", {"foo": "bar"}, {}, [], [], False, []),
    "wrap with nothing": ("", {}, {}, ["gge"], [("cnt", False)], False, [GGE, CNT]),
    "wrap counter with prefix": (
        "pre_", {}, {}, ["gge"], [("cnt", False)], False, [GGE, PRE_CNT]
    ),
    "wrap counter with label pair": (
        "", {"foo": "bar"}, {}, ["gge"], [("cnt", False)], False, [GGE, BAR_CNT]
    ),
    "wrap counter with label pair and prefix": (
        "pre_", {"foo": "bar"}, {}, ["gge"], [("cnt", False)], False,
        [GGE, LABELED_PRE],
    ),
    "wrap counter with invalid prefix": (
        "1+1", {}, {}, ["gge"], [("cnt", True)], False, [GGE]
    ),
    "wrap counter with invalid label": (
        "", {"42": "bar"}, {}, ["gge"], [("cnt", True)], False, [GGE]
    ),
    "counter registered twice with different label values": (
        "", {"foo": "bar"}, {"foo": "baz"}, [], [("cnt", False), ("cnt", False)],
        False, [BAR_CNT, BAZ_CNT],
    ),
    "counter registered twice with inconsistent label names": (
        "", {"foo": "bar"}, {"bar": "baz"}, [], [("cnt", False), ("cnt", True)],
        False, [BAR_CNT],
    ),
    "wrap counter with prefix and two labels": (
        "pre_", {"foo": "bar", "dings": "bums"}, {}, ["gge"], [("cnt", False)],
        False, [GGE, TWICE],
    ),
    "wrap labeled counter with prefix and another label": (
        "pre_", {"dings": "bums"}, {}, ["gge"], [("bar_cnt", False)], False,
        [GGE, TWICE],
    ),
    "wrap labeled counter with prefix and inconsistent label": (
        "pre_", {"foo": "bums"}, {}, ["gge"], [("bar_cnt", True)], False, [GGE]
    ),
    "wrap labeled counter with prefix and the same label again": (
        "pre_", {"foo": "bar"}, {}, ["gge"], [("bar_cnt", True)], False, [GGE]
    ),
    "wrap unchecked collector with prefix and another label": (
        "pre_", {"dings": "bums"}, {}, ["gge"], [("unchecked_bar", False)], False,
        [GGE, TWICE],
    ),
    "wrap unchecked collector with prefix and inconsistent label": (
        "pre_", {"foo": "bums"}, {}, ["gge"], [("unchecked_bar", False)], True, None
    ),
    "wrap unchecked collector with prefix and the same label again": (
        "pre_", {"foo": "bar"}, {}, ["gge"], [("unchecked_bar", False)], True, None
    ),
    "wrap unchecked collector colliding with pre-registered counter": (
        "pre_", {"dings": "bums"}, {}, ["twice"], [("unchecked_bar", False)], True,
        None,
    ),
}


@pytest.mark.parametrize("name", list(SCENARIOS))
def test_wrap_scenarios(name):
    prefix, labels, labels2, pre, to_register, gather_fails, output = SCENARIOS[name]
    reg = _Registry()
    for kind in pre:
        reg.register(_make(kind))
    pre_reg = wrap_registerer_with_prefix(prefix, reg)
    l_reg = wrap_registerer_with(labels, pre_reg)
    l2_reg = wrap_registerer_with(labels2, pre_reg)
    built = {}
    for i, (kind, fails) in enumerate(to_register):
        collector = built.setdefault(kind, _make(kind))
        target = l2_reg if i % 2 and labels2 else l_reg
        if fails:
            with pytest.raises(ValueError):
                target.register(collector)
        else:
            target.register(collector)
    if gather_fails:
        with pytest.raises(ValueError):
            reg.gather()
    else:
        assert reg.gather() == sorted(output)


def test_nil_registerer_is_noop():
    wrapped = wrap_registerer_with({"foo": "bar"}, None)
    assert wrapped.register(_counter("test")) is None
    assert wrapped.unregister(_counter("test")) is False
    wrapped.must_register(_counter("a"), _counter("b"))
    assert wrapped.wrapped_registerer is None


def test_unregister_through_wrapper():
    reg = _Registry()
    wrapped = wrap_registerer_with_prefix("pre_", reg)
    counter = _counter("simpleCnt")
    wrapped.must_register(counter)
    assert reg.gather() == [PRE_CNT]
    assert wrapped.unregister(counter) is True
    assert reg.gather() == []
    assert wrapped.unregister(counter) is False


def test_must_register_raises_on_failure():
    reg = _Registry()
    wrapped = wrap_registerer_with_prefix("1+1", reg)
    with pytest.raises(ValueError, match="not a valid metric name"):
        wrapped.must_register(_counter("simpleCnt"))


def test_wrap_desc_adds_prefix_and_labels():
    desc = new_desc("name", "help", ["var"], {"b": "2"})
    wrapped = wrap_desc(desc, "pre_", {"a": "1"})
    assert wrapped.fq_name == "pre_name"
    assert wrapped.variable_labels == ("var",)
    assert wrapped.const_label_pairs == (LabelPair("a", "1"), LabelPair("b", "2"))
    assert wrapped.err is None


def test_wrap_desc_conflicting_label():
    desc = new_desc("name", "help", None, {"foo": "bar"})
    wrapped = wrap_desc(desc, "pre_", {"foo": "baz"})
    assert wrapped.fq_name == "name"
    assert str(wrapped.err) == 'attempted wrapping with already existing label name "foo"'


def test_wrap_desc_keeps_earlier_error():
    desc = new_desc("name", "help", None, {"__reserved": "x"})
    wrapped = wrap_desc(desc, "1+1", None)
    assert wrapped.err is desc.err


def test_wrapping_metric_sorts_labels():
    desc = new_desc("name", "help", ["m"], None)
    inner = ConstMetric(desc, ValueType.GAUGE, 2.0, [LabelPair("m", "x")])
    metric = WrappingMetric(inner, "pre_", {"z": "1", "a": "2"})
    data = metric.write()
    assert data.labels == [LabelPair("a", "2"), LabelPair("m", "x"), LabelPair("z", "1")]
    assert data.gauge.value == 2.0
    assert metric.desc.fq_name == "pre_name"
    assert inner.write().labels == [LabelPair("m", "x")]


def test_unwrap_recursively():
    inner = _counter("simpleCnt")
    nested = WrappingCollector(WrappingCollector(inner, "a_"), "b_")
    assert nested.unwrap_recursively() is inner
    assert [d.fq_name for d in nested.describe()] == ["b_a_simpleCnt"]
    assert [m.desc.fq_name for m in nested.collect()] == ["b_a_simpleCnt"]