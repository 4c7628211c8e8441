"""Linter for metric names, types and metadata in the text exposition format."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import IO, Iterable, Sequence

from metrickit.value import (
    CounterData,
    LabelPair,
    MetricData,
    MetricFamily,
    MetricType,
    Quantile,
    SummaryData,
    ValueData,
)

_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_SAMPLE_NAME_RE = re.compile(r"[ \t]*([a-zA-Z_:][a-zA-Z0-9_:]*)")
_TOKEN_RE = re.compile(r"([^ \t]*)(.*)", re.DOTALL)
_LABEL_RE = re.compile(
    r'[ \t]*([a-zA-Z_][a-zA-Z0-9_]*)[ \t]*=[ \t]*"((?:[^"\\]|\\.)*)"[ \t]*(,|\})'
)
_EMPTY_LABELS_RE = re.compile(r"[ \t]*\}")
_CAMEL_CASE_RE = re.compile(r"[a-z][A-Z]")

_TYPE_NAMES = {
    "COUNTER": MetricType.COUNTER,
    "GAUGE": MetricType.GAUGE,
    "SUMMARY": MetricType.SUMMARY,
    "UNTYPED": MetricType.UNTYPED,
    "HISTOGRAM": MetricType.HISTOGRAM,
}

# Each recognised unit mapped to the base unit it should be expressed in.
_UNITS = {
    "amperes": "amperes",
    "bytes": "bytes",
    "celsius": "celsius",
    "grams": "grams",
    "joules": "joules",
    "kelvin": "kelvin",
    "meters": "meters",
    "metres": "metres",
    "seconds": "seconds",
    "volts": "volts",
    "minutes": "seconds",
    "hours": "seconds",
    "days": "seconds",
    "weeks": "seconds",
    "kelvins": "kelvin",
    "fahrenheit": "celsius",
    "rankine": "celsius",
    "inches": "meters",
    "yards": "meters",
    "miles": "meters",
    "bits": "bytes",
    "calories": "joules",
    "pounds": "grams",
    "ounces": "grams",
}

_UNIT_PREFIXES = (
    "pico", "nano", "micro", "milli", "centi", "deci", "deca", "hecto", "kilo",
    "kibi", "mega", "mibi", "giga", "gibi", "tera", "tebi", "peta", "pebi",
)

_UNIT_ABBREVIATIONS = (
    "s", "ms", "us", "ns", "sec", "b", "kb", "mb", "gb", "tb", "pb", "m", "h", "d",
)


@dataclass(frozen=True, order=True)
class Problem:
    """An issue found by the linter for one metric name."""

    metric: str
    text: str


# --------------------------------------------------------------------------
# Text format parsing
# --------------------------------------------------------------------------


def _unescape(text: str, allowed: dict[str, str], lineno: int) -> str:
    out = []
    chars = iter(text)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        escaped = next(chars, "")
        if escaped not in allowed:
            raise ValueError(f"line {lineno}: invalid escape sequence '\\{escaped}'")
        out.append(allowed[escaped])
    return "".join(out)


_HELP_ESCAPES = {"\\": "\\", "n": "\n"}
_LABEL_ESCAPES = {"\\": "\\", "n": "\n", '"': '"'}


def _parse_float(token: str, lineno: int) -> float:
    if "_" in token:
        raise ValueError(f"line {lineno}: expected float as value, got {token!r}")
    try:
        return float(token)
    except ValueError:
        raise ValueError(
            f"line {lineno}: expected float as value, got {token!r}"
        ) from None


@dataclass
class _FamilyState:
    family: MetricFamily
    type_set: bool = False
    groups: dict[frozenset, MetricData] = field(default_factory=dict)


class _TextParser:
    def __init__(self) -> None:
        self.families: dict[str, _FamilyState] = {}

    def _state(self, name: str) -> _FamilyState:
        state = self.families.get(name)
        if state is None:
            state = _FamilyState(MetricFamily(name, None, MetricType.UNTYPED))
            self.families[name] = state
        return state

    def feed(self, lineno: int, line: str) -> None:
        line = line.lstrip(" \t")
        if not line:
            return
        if line.startswith("#"):
            self._comment(lineno, line[1:])
        else:
            self._sample(lineno, line)

    def _comment(self, lineno: int, body: str) -> None:
        keyword, rest = _TOKEN_RE.match(body.lstrip(" \t")).groups()
        if keyword not in ("HELP", "TYPE"):
            return
        name, remainder = _TOKEN_RE.match(rest.lstrip(" \t")).groups()
        if not _METRIC_NAME_RE.fullmatch(name):
            raise ValueError(f"line {lineno}: invalid metric name in comment")
        remainder = remainder.lstrip(" \t")
        state = self._state(name)
        if keyword == "HELP":
            if state.family.help is not None:
                raise ValueError(f"line {lineno}: second HELP line for metric name {name!r}")
            if remainder.strip(" \t"):
                state.family.help = _unescape(remainder, _HELP_ESCAPES, lineno)
            return
        if state.type_set or state.family.metrics:
            raise ValueError(
                f"line {lineno}: second TYPE line for metric name {name!r}, "
                "or TYPE reported after samples"
            )
        type_name = remainder.strip(" \t").upper()
        if type_name not in _TYPE_NAMES:
            raise ValueError(f"line {lineno}: unknown metric type {remainder.strip()!r}")
        state.family.type = _TYPE_NAMES[type_name]
        state.type_set = True

    def _resolve(self, name: str) -> tuple[_FamilyState, str]:
        for suffix, kinds in (
            ("_sum", (MetricType.SUMMARY, MetricType.HISTOGRAM)),
            ("_count", (MetricType.SUMMARY, MetricType.HISTOGRAM)),
            ("_bucket", (MetricType.HISTOGRAM,)),
        ):
            if name.endswith(suffix):
                state = self.families.get(name[: -len(suffix)])
                if state is not None and state.family.type in kinds:
                    return state, suffix
        return self._state(name), ""

    def _labels(self, lineno: int, text: str) -> tuple[list[tuple[str, str]], str]:
        if not text.startswith("{"):
            return [], text
        pos = 1
        labels: list[tuple[str, str]] = []
        empty = _EMPTY_LABELS_RE.match(text, pos)
        if empty:
            return labels, text[empty.end():]
        while True:
            match = _LABEL_RE.match(text, pos)
            if match is None:
                raise ValueError(f"line {lineno}: invalid label set")
            name, raw, terminator = match.groups()
            if any(existing == name for existing, _ in labels):
                raise ValueError(f"line {lineno}: duplicate label name {name!r}")
            labels.append((name, _unescape(raw, _LABEL_ESCAPES, lineno)))
            pos = match.end()
            if terminator == "}":
                return labels, text[pos:]
            empty = _EMPTY_LABELS_RE.match(text, pos)
            if empty:
                return labels, text[empty.end():]

    def _sample(self, lineno: int, line: str) -> None:
        match = _SAMPLE_NAME_RE.match(line)
        if match is None:
            raise ValueError(f"line {lineno}: invalid metric name")
        name = match.group(1)
        rest = line[match.end():].lstrip(" \t")
        labels, rest = self._labels(lineno, rest)
        tokens = rest.split()
        if not tokens or len(tokens) > 2:
            raise ValueError(f"line {lineno}: expected value and optional timestamp")
        value = _parse_float(tokens[0], lineno)
        if len(tokens) == 2:
            try:
                int(tokens[1])
            except ValueError:
                raise ValueError(f"line {lineno}: expected integer timestamp") from None

        state, suffix = self._resolve(name)
        family = state.family
        special = {
            MetricType.SUMMARY: "quantile",
            MetricType.HISTOGRAM: "le",
        }.get(family.type)
        special_value: float | None = None
        kept: list[LabelPair] = []
        for label_name, label_value in labels:
            if label_name == special:
                special_value = _parse_float(label_value, lineno)
            else:
                kept.append(LabelPair(label_name, label_value))

        if family.type == MetricType.COUNTER:
            family.metrics.append(MetricData(labels=kept, counter=CounterData(value)))
        elif family.type == MetricType.GAUGE:
            family.metrics.append(MetricData(labels=kept, gauge=ValueData(value)))
        elif family.type == MetricType.UNTYPED:
            family.metrics.append(MetricData(labels=kept, untyped=ValueData(value)))
        else:
            key = frozenset(kept)
            metric = state.groups.get(key)
            if metric is None:
                metric = MetricData(labels=kept)
                if family.type == MetricType.SUMMARY:
                    metric.summary = SummaryData(0, 0.0, [])
                state.groups[key] = metric
                family.metrics.append(metric)
            if metric.summary is not None:
                if suffix == "_sum":
                    metric.summary.sample_sum = value
                elif suffix == "_count":
                    metric.summary.sample_count = int(value)
                elif special_value is not None:
                    metric.summary.quantiles.append(Quantile(special_value, value))


def parse_text(text: str) -> list[MetricFamily]:
    """Parse the text exposition format into families that hold samples."""
    parser = _TextParser()
    for lineno, line in enumerate(text.splitlines(), start=1):
        parser.feed(lineno, line)
    return [state.family for state in parser.families.values() if state.family.metrics]


# --------------------------------------------------------------------------
# Lint rules
# --------------------------------------------------------------------------


def _label_names(mf: MetricFamily) -> Iterable[str]:
    for metric in mf.metrics:
        for pair in metric.labels:
            yield pair.name


def _lint_help(mf: MetricFamily) -> list[Problem]:
    if mf.help is None:
        return [Problem(mf.name, "no help text")]
    return []


def _metric_units(name: str) -> tuple[str, str] | None:
    words = name.split("_")
    for unit, base in _UNITS.items():
        for prefix in (*_UNIT_PREFIXES, ""):
            if prefix + unit in words:
                return prefix + unit, base
    return None


def _lint_metric_units(mf: MetricFamily) -> list[Problem]:
    found = _metric_units(mf.name)
    if found is None:
        return []
    unit, base = found
    if unit == base:
        return []
    return [Problem(mf.name, f'use base unit "{base}" instead of "{unit}"')]


def _lint_counter(mf: MetricFamily) -> list[Problem]:
    is_counter = mf.type == MetricType.COUNTER
    is_untyped = mf.type == MetricType.UNTYPED
    has_total = mf.name.endswith("_total")
    if is_counter and not has_total:
        return [Problem(mf.name, 'counter metrics should have "_total" suffix')]
    if not is_untyped and not is_counter and has_total:
        return [Problem(mf.name, 'non-counter metrics should not have "_total" suffix')]
    return []


def _lint_histogram_summary_reserved(mf: MetricFamily) -> list[Problem]:
    if mf.type == MetricType.UNTYPED:
        return []
    is_histogram = mf.type == MetricType.HISTOGRAM
    is_summary = mf.type == MetricType.SUMMARY
    name = mf.name
    problems = []
    if not is_histogram and name.endswith("_bucket"):
        problems.append(
            Problem(name, 'non-histogram metrics should not have "_bucket" suffix')
        )
    if not is_histogram and not is_summary and name.endswith("_count"):
        problems.append(Problem(
            name, 'non-histogram and non-summary metrics should not have "_count" suffix'
        ))
    if not is_histogram and not is_summary and name.endswith("_sum"):
        problems.append(Problem(
            name, 'non-histogram and non-summary metrics should not have "_sum" suffix'
        ))
    for label in _label_names(mf):
        if not is_histogram and label == "le":
            problems.append(
                Problem(name, 'non-histogram metrics should not have "le" label')
            )
        if not is_summary and label == "quantile":
            problems.append(
                Problem(name, 'non-summary metrics should not have "quantile" label')
            )
    return problems


def _lint_metric_type_in_name(mf: MetricFamily) -> list[Problem]:
    lowered = mf.name.lower()
    problems = []
    for metric_type in MetricType:
        if metric_type == MetricType.UNTYPED:
            continue
        type_name = metric_type.name.lower()
        if f"_{type_name}_" in lowered or lowered.endswith(f"_{type_name}"):
            problems.append(
                Problem(mf.name, f"metric name should not include type '{type_name}'")
            )
    return problems


def _lint_reserved_chars(mf: MetricFamily) -> list[Problem]:
    if ":" in mf.name:
        return [Problem(mf.name, "metric names should not contain ':'")]
    return []


def _lint_camel_case(mf: MetricFamily) -> list[Problem]:
    problems = []
    if _CAMEL_CASE_RE.search(mf.name):
        problems.append(Problem(
            mf.name, "metric names should be written in 'snake_case' not 'camelCase'"
        ))
    problems.extend(
        Problem(mf.name, "label names should be written in 'snake_case' not 'camelCase'")
        for label in _label_names(mf)
        if _CAMEL_CASE_RE.search(label)
    )
    return problems


def _lint_unit_abbreviations(mf: MetricFamily) -> list[Problem]:
    lowered = mf.name.lower()
    return [
        Problem(mf.name, "metric names should not contain abbreviated units")
        for abbreviation in _UNIT_ABBREVIATIONS
        if f"_{abbreviation}_" in lowered or lowered.endswith(f"_{abbreviation}")
    ]


_RULES = (
    _lint_help,
    _lint_metric_units,
    _lint_counter,
    _lint_histogram_summary_reserved,
    _lint_metric_type_in_name,
    _lint_reserved_chars,
    _lint_camel_case,
    _lint_unit_abbreviations,
)


def lint_metric_family(mf: MetricFamily) -> list[Problem]:
    """Run every lint rule on one metric family, in rule order."""
    return [problem for rule in _RULES for problem in rule(mf)]


class Linter:
    """Lints metrics given as exposition text and/or as metric families."""

    def __init__(
        self,
        text: str | IO[str] | None = None,
        metric_families: Sequence[MetricFamily] | None = None,
    ) -> None:
        self._text = text
        self._metric_families = list(metric_families or ())

    def lint(self) -> list[Problem]:
        """Return all problems, sorted by metric name and then by description.

        Raises ValueError if the text input cannot be parsed.
        """
        families: list[MetricFamily] = []
        if self._text is not None:
            text = self._text if isinstance(self._text, str) else self._text.read()
            families.extend(parse_text(text))
        families.extend(self._metric_families)
        problems = [problem for mf in families for problem in lint_metric_family(mf)]
        return sorted(problems)