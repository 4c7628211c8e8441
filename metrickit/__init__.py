"""Metric descriptors, label vectors, summaries, registerer wrappers and a metrics linter."""

__version__ = "0.1.0"