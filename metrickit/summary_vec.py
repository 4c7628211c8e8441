"""Vectors of summaries partitioned by label values, and constant summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from metrickit.summary import QUANTILE_LABEL, SummaryOpts, make_summary
from metrickit.value import (
    Desc,
    LabelPair,
    Metric,
    MetricData,
    Quantile,
    SummaryData,
    build_fq_name,
    make_label_pairs,
    new_desc,
    validate_label_values,
)
from metrickit.vec import MetricVec


class SummaryVec(MetricVec):
    """Summaries sharing one descriptor, keyed by their variable label values.

    The label name "quantile" is reserved and rejected.
    """

    def __init__(self, opts: SummaryOpts, label_names: Sequence[str] | None) -> None:
        names = tuple(label_names or ())
        if QUANTILE_LABEL in names:
            raise ValueError(
                f'"{QUANTILE_LABEL}" is not allowed as label name in summaries'
            )
        desc = new_desc(
            build_fq_name(opts.namespace, opts.subsystem, opts.name),
            opts.help,
            names,
            opts.const_labels,
        )
        self.opts = opts
        super().__init__(desc, lambda *lvs: make_summary(desc, opts, lvs))

    def curry_with(self, labels: Mapping[str, str] | None) -> SummaryVec:
        """Return a summary vector with the given labels preset."""
        return super().curry_with(labels)


@dataclass
class ConstSummary(Metric):
    """A summary with fixed count, sum and quantiles."""

    desc: Desc
    count: int
    sum: float
    quantiles: dict[float, float] = field(default_factory=dict)
    label_pairs: list[LabelPair] = field(default_factory=list)

    def write(self) -> MetricData:
        quantiles = [Quantile(rank, value) for rank, value in sorted(self.quantiles.items())]
        return MetricData(
            labels=list(self.label_pairs),
            summary=SummaryData(self.count, self.sum, quantiles),
        )


def new_const_summary(
    desc: Desc,
    count: int,
    sum: float,
    quantiles: Mapping[float, float] | None,
    *label_values: str,
) -> ConstSummary:
    """Create a fixed summary; raises if the descriptor or label values are invalid."""
    if desc.err is not None:
        raise desc.err
    validate_label_values(label_values, len(desc.variable_labels))
    return ConstSummary(
        desc=desc,
        count=count,
        sum=sum,
        quantiles=dict(quantiles or {}),
        label_pairs=make_label_pairs(desc, label_values),
    )