"""Metrics of unknown type whose value comes from a function."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from metrickit.value import ValueFunc, ValueType, build_fq_name, new_desc


@dataclass
class UntypedOpts:
    """Options for an untyped metric; only ``name`` is mandatory."""

    namespace: str = ""
    subsystem: str = ""
    name: str = ""
    help: str = ""
    const_labels: dict[str, str] = field(default_factory=dict)


def new_untyped_func(opts: UntypedOpts, function: Callable[[], float]) -> ValueFunc:
    """Create an untyped metric reporting ``function()`` on every write."""
    desc = new_desc(
        build_fq_name(opts.namespace, opts.subsystem, opts.name),
        opts.help,
        None,
        opts.const_labels,
    )
    return ValueFunc(desc, ValueType.UNTYPED, function)